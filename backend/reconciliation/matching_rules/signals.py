"""
Signal Calculator

Derives the five independent similarity signals between a bank
transaction and one candidate record:

- amount: closeness of magnitudes (linear decay, 0 beyond 10% relative difference)
- date: step function of the day difference
- vendor: token-set Jaccard of transaction description vs candidate vendor
- ocr_confidence: the candidate's own extraction confidence (1.0 for ledger entries)
- description: token-set Jaccard of the two descriptions

All functions here are pure.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, Optional, FrozenSet

from reconciliation.domain import BankTransaction, MatchableRecord, MatchTier, CandidateSource

SIGNAL_NAMES = ("amount", "date", "vendor", "ocr_confidence", "description")

EXACT_AMOUNT_TOLERANCE = Decimal("0.01")
DEFAULT_DOCUMENT_CONFIDENCE = 0.5
MIN_TOKEN_LENGTH = 3


@dataclass(frozen=True)
class MatchSignals:
    """Five scalars in [0, 1] for one (transaction, candidate) pair."""
    amount: float
    date: float
    vendor: float
    ocr_confidence: float
    description: float

    def to_dict(self) -> Dict[str, float]:
        return {name: round(value, 4) for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "MatchSignals":
        return cls(**{name: float(data.get(name, 0.0)) for name in SIGNAL_NAMES})


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def amount_signal(transaction_amount: Decimal, candidate_amount: Decimal) -> float:
    """Both sides are compared by magnitude; bank debits are negative."""
    tx = abs(Decimal(transaction_amount))
    diff = abs(abs(Decimal(candidate_amount)) - tx)
    if diff < EXACT_AMOUNT_TOLERANCE:
        return 1.0
    relative = float(diff) / max(float(tx), 1.0)
    return _clamp(1.0 - relative * 10)


def date_signal(days_diff: Optional[int]) -> float:
    if days_diff is None:
        return 0.0
    days = abs(days_diff)
    if days == 0:
        return 1.0
    if days <= 1:
        return 0.9
    if days <= 3:
        return 0.7
    if days <= 7:
        return 0.5
    return _clamp(0.5 - (days - 7) * 0.05)


def _tokens(text: str) -> FrozenSet[str]:
    return frozenset(w for w in text.split() if len(w) >= MIN_TOKEN_LENGTH)


def text_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Token-set Jaccard over lower-cased words of length >= 3."""
    a = (left or "").strip().lower()
    b = (right or "").strip().lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    tokens_a = _tokens(a)
    tokens_b = _tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def days_between(transaction: BankTransaction, record: MatchableRecord) -> Optional[int]:
    if record.date is None:
        return None
    return (record.date - transaction.date).days


def calculate_signals(transaction: BankTransaction, record: MatchableRecord) -> MatchSignals:
    """Compute the signal vector for one transaction/candidate pair."""
    description = transaction.description or ""

    if record.source == CandidateSource.LEDGER_ENTRY:
        vendor = 0.0
        source_confidence = 1.0
    else:
        vendor = text_similarity(description, record.vendor)
        confidence = record.source_confidence
        source_confidence = _clamp(DEFAULT_DOCUMENT_CONFIDENCE if confidence is None else float(confidence))

    return MatchSignals(
        amount=amount_signal(transaction.amount, record.amount),
        date=date_signal(days_between(transaction, record)),
        vendor=vendor,
        ocr_confidence=source_confidence,
        description=text_similarity(description, record.description),
    )


def explain_signals(signals: MatchSignals, tier: MatchTier) -> str:
    """Human-readable reason attached to a scored candidate."""
    reasons = []

    if signals.amount >= 0.95:
        reasons.append("exact amount match")
    elif signals.amount >= 0.8:
        reasons.append("near amount match")

    if signals.date >= 0.9:
        reasons.append("same date")
    elif signals.date >= 0.7:
        reasons.append("date within 3 days")

    if signals.vendor >= 0.8:
        reasons.append("vendor match")
    if signals.description >= 0.7:
        reasons.append("description similarity")

    detail = ", ".join(reasons) or "weak signals only"
    if tier == MatchTier.AUTO:
        return f"Auto-match: {detail}"
    if tier == MatchTier.SUGGEST:
        return f"Suggested match: {detail}"
    return f"Possible match: {detail}"
