"""
Confidence Scorer and Match Classifier

Scoring is a weight-normalized average of the signals, so tenant weights
need not sum to exactly 1. Classification maps a score to a tier:

- score >= auto_match            -> auto
- suggest_match <= score < auto  -> suggest
- 0.3 <= score < suggest_match   -> manual
- below 0.3                      -> none
"""

from dataclasses import dataclass, asdict, fields
from typing import Dict

from reconciliation.domain import MatchTier, MatchType
from reconciliation.errors import ThresholdConfigurationError
from reconciliation.matching_rules.signals import MatchSignals, SIGNAL_NAMES

# Fixed floor, independent of tenant configuration
MANUAL_MATCH_FLOOR = 0.3

EXACT_MATCH_SCORE = 0.9
PARTIAL_MATCH_SCORE = 0.75


@dataclass(frozen=True)
class SignalWeights:
    """Weight per signal; same field names as MatchSignals."""
    amount: float = 0.35
    date: float = 0.25
    vendor: float = 0.15
    ocr_confidence: float = 0.10
    description: float = 0.15

    @property
    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def validate(self) -> None:
        for name in SIGNAL_NAMES:
            value = getattr(self, name)
            if value < 0:
                raise ThresholdConfigurationError(f"Signal weight '{name}' is negative: {value}")
        if self.total <= 0:
            raise ThresholdConfigurationError("Signal weights sum to zero")

    def normalized(self) -> "SignalWeights":
        self.validate()
        total = self.total
        return SignalWeights(**{name: getattr(self, name) / total for name in SIGNAL_NAMES})

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "SignalWeights":
        unknown = set(data) - set(SIGNAL_NAMES)
        if unknown:
            raise ThresholdConfigurationError(f"Unknown signal weights: {sorted(unknown)}")
        missing = set(SIGNAL_NAMES) - set(data)
        if missing:
            raise ThresholdConfigurationError(f"Missing signal weights: {sorted(missing)}")
        return cls(**{name: float(data[name]) for name in SIGNAL_NAMES})


def confidence_score(signals: MatchSignals, weights: SignalWeights) -> float:
    """
    Weighted sum of signals divided by the total weight.

    Raises:
        ThresholdConfigurationError: weights are negative or sum to zero
    """
    weights.validate()
    weighted = sum(getattr(signals, name) * getattr(weights, name) for name in SIGNAL_NAMES)
    return max(0.0, min(1.0, weighted / weights.total))


def classify(score: float, auto_match: float, suggest_match: float) -> MatchTier:
    """Boundaries are inclusive on the lower edge of each tier."""
    if score >= auto_match:
        return MatchTier.AUTO
    if score >= suggest_match:
        return MatchTier.SUGGEST
    if score >= MANUAL_MATCH_FLOOR:
        return MatchTier.MANUAL
    return MatchTier.NONE


def grade_match_type(score: float) -> MatchType:
    if score >= EXACT_MATCH_SCORE:
        return MatchType.EXACT
    if score >= PARTIAL_MATCH_SCORE:
        return MatchType.PARTIAL
    return MatchType.FUZZY
