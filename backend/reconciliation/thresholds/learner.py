"""
Threshold Learner

Bounded heuristic update of a tenant's thresholds from reviewer feedback.
Each call moves auto_match by at most one step and blends weights 80/20
towards the signals that accepted matches relied on.
"""

import logging
from typing import Sequence

from reconciliation.matching_rules.scoring import SignalWeights
from reconciliation.matching_rules.signals import SIGNAL_NAMES
from reconciliation.thresholds.models import MatchingThresholds, FeedbackItem

logger = logging.getLogger(__name__)

AUTO_MATCH_STEP = 0.05
AUTO_MATCH_BOUNDS = (0.5, 0.95)
SUGGEST_MATCH_BOUNDS = (0.3, 0.8)
WEIGHT_RETENTION = 0.8


def _clamp(value: float, bounds) -> float:
    low, high = bounds
    return max(low, min(high, value))


def _adjust_auto_match(current: MatchingThresholds, feedback: Sequence[FeedbackItem]) -> float:
    adjustment = 0.0

    # Rejections at or above the cutoff: auto-matching was too permissive
    if any(not f.accepted and f.confidence_score >= current.auto_match for f in feedback):
        adjustment = -AUTO_MATCH_STEP

    # Acceptances below the cutoff: too strict. Takes precedence over the above.
    if any(f.accepted and f.confidence_score < current.auto_match for f in feedback):
        adjustment = AUTO_MATCH_STEP

    return current.auto_match + adjustment


def _blend_weights(current: SignalWeights, feedback: Sequence[FeedbackItem]) -> SignalWeights:
    reliability = {name: 0.0 for name in SIGNAL_NAMES}
    for item in feedback:
        if item.accepted:
            for name in SIGNAL_NAMES:
                reliability[name] += getattr(item.signals, name)

    total_reliability = sum(reliability.values())
    if total_reliability <= 0:
        return current.normalized()

    blended = SignalWeights(**{
        name: getattr(current, name) * WEIGHT_RETENTION
        + (reliability[name] / total_reliability) * (1 - WEIGHT_RETENTION)
        for name in SIGNAL_NAMES
    })
    return blended.normalized()


def apply_feedback(current: MatchingThresholds, feedback: Sequence[FeedbackItem]) -> MatchingThresholds:
    """
    Return the thresholds that result from one batch of feedback.

    After the update auto_match is within [0.5, 0.95], suggest_match within
    [0.3, 0.8] and never above auto_match, and the weights sum to 1.
    An empty batch returns current unchanged.
    """
    if not feedback:
        return current

    auto_match = round(_clamp(_adjust_auto_match(current, feedback), AUTO_MATCH_BOUNDS), 4)
    suggest_match = _clamp(current.suggest_match, SUGGEST_MATCH_BOUNDS)
    suggest_match = min(suggest_match, auto_match)

    updated = MatchingThresholds(
        auto_match=auto_match,
        suggest_match=suggest_match,
        signal_weights=_blend_weights(current.signal_weights, feedback),
        learned_from_samples=current.learned_from_samples + len(feedback),
    )

    logger.info(
        f"Thresholds learned from {len(feedback)} feedback items: "
        f"auto_match {current.auto_match} -> {updated.auto_match}",
        extra={
            "accepted": sum(1 for f in feedback if f.accepted),
            "rejected": sum(1 for f in feedback if not f.accepted),
        }
    )
    return updated
