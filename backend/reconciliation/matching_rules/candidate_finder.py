"""
Candidate Finder

Finds documents and ledger entries that may pair with a bank transaction.
The store query pre-filters to a date window and an absolute amount band;
every record that survives is scored precisely and classified. Records
classified 'none' are dropped and the rest are returned best-first.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from reconciliation.domain import BankTransaction, MatchableRecord, MatchTier, MatchType, CandidateSource
from reconciliation.matching_rules.signals import (
    MatchSignals,
    calculate_signals,
    days_between,
    explain_signals,
)
from reconciliation.matching_rules.scoring import confidence_score, classify, grade_match_type
from reconciliation.thresholds.models import MatchingThresholds

DEFAULT_DATE_WINDOW_DAYS = 7
DEFAULT_AMOUNT_BAND = 100.0


@dataclass(frozen=True)
class ScoredCandidate:
    """A classified candidate for one bank transaction."""
    record: MatchableRecord
    signals: MatchSignals
    confidence_score: float
    tier: MatchTier
    match_type: MatchType
    reason: str
    amount_difference: Decimal
    date_difference_days: Optional[int]

    @property
    def document_id(self) -> Optional[str]:
        return self.record.id if self.record.source == CandidateSource.DOCUMENT else None

    @property
    def ledger_entry_id(self) -> Optional[str]:
        return self.record.id if self.record.source == CandidateSource.LEDGER_ENTRY else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.record.to_dict(),
            "document_id": self.document_id,
            "ledger_entry_id": self.ledger_entry_id,
            "confidence_score": round(self.confidence_score, 4),
            "tier": self.tier.value,
            "match_type": self.match_type.value,
            "reason": self.reason,
            "signals": self.signals.to_dict(),
            "amount_difference": float(self.amount_difference),
            "date_difference_days": self.date_difference_days,
        }


def score_candidate(
    transaction: BankTransaction,
    record: MatchableRecord,
    thresholds: MatchingThresholds,
) -> ScoredCandidate:
    signals = calculate_signals(transaction, record)
    score = confidence_score(signals, thresholds.signal_weights)
    tier = classify(score, thresholds.auto_match, thresholds.suggest_match)
    return ScoredCandidate(
        record=record,
        signals=signals,
        confidence_score=score,
        tier=tier,
        match_type=grade_match_type(score),
        reason=explain_signals(signals, tier),
        amount_difference=abs(abs(record.amount) - abs(transaction.amount)),
        date_difference_days=days_between(transaction, record),
    )


def _sort_key(candidate: ScoredCandidate):
    days = candidate.date_difference_days
    return (
        -candidate.confidence_score,
        abs(days) if days is not None else float("inf"),
        0 if candidate.record.source == CandidateSource.DOCUMENT else 1,
        candidate.record.id,
    )


def rank_candidates(
    transaction: BankTransaction,
    records: Iterable[MatchableRecord],
    thresholds: MatchingThresholds,
) -> List[ScoredCandidate]:
    """
    Score, classify and rank records for a transaction.

    Ties on confidence go to the closer date, then documents over ledger
    entries, then record id, so the ranking is deterministic.
    """
    scored = (score_candidate(transaction, record, thresholds) for record in records)
    return sorted((c for c in scored if c.tier != MatchTier.NONE), key=_sort_key)


class CandidateFinder:
    """Loads candidate records from the store and ranks them."""

    def __init__(
        self,
        store,
        date_window_days: int = DEFAULT_DATE_WINDOW_DAYS,
        amount_band: float = DEFAULT_AMOUNT_BAND,
    ):
        self.store = store
        self.date_window_days = date_window_days
        self.amount_band = amount_band

    async def load_records(self, transaction: BankTransaction) -> List[MatchableRecord]:
        documents = await self.store.find_candidate_documents(
            transaction.tenant_id,
            transaction.amount,
            transaction.date,
            self.date_window_days,
            self.amount_band,
        )
        ledger_entries = await self.store.find_candidate_ledger_entries(
            transaction.tenant_id,
            transaction.amount,
            transaction.date,
            self.date_window_days,
            self.amount_band,
        )
        return (
            [MatchableRecord.from_document(d) for d in documents]
            + [MatchableRecord.from_ledger_entry(e) for e in ledger_entries]
        )

    async def find_candidates(
        self,
        transaction: BankTransaction,
        thresholds: MatchingThresholds,
    ) -> List[ScoredCandidate]:
        records = await self.load_records(transaction)
        return rank_candidates(transaction, records, thresholds)
