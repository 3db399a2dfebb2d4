"""
Matching Rules Module
"""

from .signals import MatchSignals, calculate_signals, explain_signals
from .scoring import SignalWeights, confidence_score, classify, grade_match_type, MANUAL_MATCH_FLOOR

__all__ = [
    "MatchSignals", "calculate_signals", "explain_signals",
    "SignalWeights", "confidence_score", "classify", "grade_match_type", "MANUAL_MATCH_FLOOR",
]
