"""
Unit Tests for Candidate Ranking

Run with: pytest backend/tests/test_candidate_finder.py -v
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from reconciliation.domain import BankTransaction, MatchableRecord, CandidateSource, MatchTier, MatchType
from reconciliation.matching_rules.candidate_finder import CandidateFinder, score_candidate, rank_candidates
from reconciliation.thresholds.models import DEFAULT_THRESHOLDS

TXN_DATE = date(2024, 3, 1)


@pytest.fixture
def transaction():
    return BankTransaction(
        id="txn-1",
        tenant_id="tenant-1",
        date=TXN_DATE,
        amount=Decimal("-120.00"),
        description="ACME SUPPLIES",
    )


def document(record_id, amount="120.00", days=0, vendor="Acme Supplies Ltd", confidence=0.95):
    return MatchableRecord(
        id=record_id,
        source=CandidateSource.DOCUMENT,
        amount=Decimal(amount),
        date=TXN_DATE + timedelta(days=days),
        vendor=vendor,
        description=vendor,
        source_confidence=confidence,
    )


class TestScoreCandidate:

    def test_scored_candidate_fields(self, transaction):
        candidate = score_candidate(transaction, document("doc-1"), DEFAULT_THRESHOLDS)

        assert candidate.tier == MatchTier.AUTO
        assert candidate.match_type == MatchType.PARTIAL
        assert candidate.document_id == "doc-1"
        assert candidate.ledger_entry_id is None
        assert candidate.amount_difference == Decimal("0.00")
        assert candidate.date_difference_days == 0
        assert candidate.reason.startswith("Auto-match:")

    def test_to_dict(self, transaction):
        data = score_candidate(transaction, document("doc-1", days=2), DEFAULT_THRESHOLDS).to_dict()

        assert data["candidate"]["id"] == "doc-1"
        assert data["date_difference_days"] == 2
        assert set(data["signals"]) == {"amount", "date", "vendor", "ocr_confidence", "description"}


class TestRankCandidates:

    def test_best_first(self, transaction):
        ranked = rank_candidates(
            transaction,
            [document("far", days=6), document("same-day"), document("near", days=1)],
            DEFAULT_THRESHOLDS,
        )

        assert [c.record.id for c in ranked] == ["same-day", "near", "far"]

    def test_none_tier_dropped(self, transaction):
        unrelated = document("unrelated", amount="900.00", days=7, vendor="Qantas", confidence=0.0)

        assert rank_candidates(transaction, [unrelated], DEFAULT_THRESHOLDS) == []

    def test_ties_broken_by_id(self, transaction):
        ranked = rank_candidates(
            transaction,
            [document("b", days=-1), document("a", days=1)],
            DEFAULT_THRESHOLDS,
        )

        assert ranked[0].confidence_score == ranked[1].confidence_score
        assert [c.record.id for c in ranked] == ["a", "b"]


class TestCandidateFinder:

    @pytest.mark.asyncio
    async def test_loads_documents_and_ledger_entries(self, transaction):
        store = MagicMock()
        store.find_candidate_documents = AsyncMock(return_value=[
            MagicMock(
                id="doc-1", total_amount=Decimal("120.00"), document_date=TXN_DATE,
                vendor="Acme Supplies Ltd", description=None, confidence_score=0.95,
            )
        ])
        store.find_candidate_ledger_entries = AsyncMock(return_value=[
            MagicMock(id="le-1", amount=Decimal("-120.00"), transaction_date=TXN_DATE, description="Stationery")
        ])

        finder = CandidateFinder(store, date_window_days=5, amount_band=50.0)
        candidates = await finder.find_candidates(transaction, DEFAULT_THRESHOLDS)

        store.find_candidate_documents.assert_awaited_once_with(
            "tenant-1", Decimal("-120.00"), TXN_DATE, 5, 50.0
        )
        assert [c.record.source for c in candidates] == [CandidateSource.DOCUMENT, CandidateSource.LEDGER_ENTRY]
        assert candidates[0].record.description == "Acme Supplies Ltd"
        assert candidates[1].ledger_entry_id == "le-1"
