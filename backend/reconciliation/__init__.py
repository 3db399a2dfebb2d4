"""
Reconciliation Engine Module

Provides transaction matching and reconciliation capabilities:
- Bank transaction matching against documents and ledger entries
- Weighted signal scoring with per-tenant thresholds
- Auto-matching for high confidence, review routing for the rest
- Exception triage with remediation playbooks
- Anomaly detection (duplicates, unusual spend, missing documents)
- Threshold learning from reviewer feedback
- Audit trail for all operations
"""

from reconciliation.domain import (
    MatchTier,
    MatchType,
    MatchStatus,
    ExceptionType,
    ExceptionSeverity,
    ExceptionStatus,
    BankTransaction,
    MatchableRecord
)
from reconciliation.matching_rules import (
    MatchSignals,
    SignalWeights,
    calculate_signals,
    confidence_score,
    classify
)
from reconciliation.thresholds import MatchingThresholds, FeedbackItem, apply_feedback
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Domain
    'MatchTier',
    'MatchType',
    'MatchStatus',
    'ExceptionType',
    'ExceptionSeverity',
    'ExceptionStatus',
    'BankTransaction',
    'MatchableRecord',
    # Matching Rules
    'MatchSignals',
    'SignalWeights',
    'calculate_signals',
    'confidence_score',
    'classify',
    # Thresholds
    'MatchingThresholds',
    'FeedbackItem',
    'apply_feedback',
    # Service
    'ReconciliationService',
    # Router
    'reconciliation_router'
]
