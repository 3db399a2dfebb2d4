"""
Matching Thresholds Module
"""

from .models import MatchingThresholds, FeedbackItem, DEFAULT_THRESHOLDS
from .learner import apply_feedback

__all__ = ["MatchingThresholds", "FeedbackItem", "DEFAULT_THRESHOLDS", "apply_feedback"]
