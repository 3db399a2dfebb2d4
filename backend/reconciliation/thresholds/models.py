"""
Matching threshold configuration.

Per-tenant cutoffs and signal weights. Created lazily with DEFAULT_THRESHOLDS
on first access, changed by the learner or an explicit admin override.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from reconciliation.errors import ThresholdConfigurationError
from reconciliation.matching_rules.scoring import SignalWeights
from reconciliation.matching_rules.signals import MatchSignals

CUTOFF_MIN = 0.3
CUTOFF_MAX = 0.95


@dataclass(frozen=True)
class MatchingThresholds:
    auto_match: float = 0.85
    suggest_match: float = 0.60
    signal_weights: SignalWeights = field(default_factory=SignalWeights)
    learned_from_samples: int = 0

    def validate(self) -> "MatchingThresholds":
        for name in ("auto_match", "suggest_match"):
            value = getattr(self, name)
            if not CUTOFF_MIN <= value <= CUTOFF_MAX:
                raise ThresholdConfigurationError(
                    f"{name} must be within [{CUTOFF_MIN}, {CUTOFF_MAX}], got {value}"
                )
        if self.auto_match < self.suggest_match:
            raise ThresholdConfigurationError(
                f"auto_match ({self.auto_match}) must be >= suggest_match ({self.suggest_match})"
            )
        self.signal_weights.validate()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_match": round(self.auto_match, 4),
            "suggest_match": round(self.suggest_match, 4),
            "signal_weights": {k: round(v, 6) for k, v in self.signal_weights.to_dict().items()},
            "learned_from_samples": self.learned_from_samples,
        }


DEFAULT_THRESHOLDS = MatchingThresholds()


@dataclass(frozen=True)
class FeedbackItem:
    """One reviewer decision on a scored match."""
    match_id: str
    accepted: bool
    confidence_score: float
    signals: MatchSignals

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackItem":
        return cls(
            match_id=str(data["match_id"]),
            accepted=bool(data["accepted"]),
            confidence_score=float(data["confidence_score"]),
            signals=MatchSignals.from_dict(data.get("signals") or {}),
        )


def thresholds_from_row(row: Optional[Any]) -> MatchingThresholds:
    if row is None:
        return DEFAULT_THRESHOLDS
    return MatchingThresholds(
        auto_match=float(row.auto_match),
        suggest_match=float(row.suggest_match),
        signal_weights=SignalWeights.from_dict(row.signal_weights),
        learned_from_samples=int(row.learned_from_samples or 0),
    )
