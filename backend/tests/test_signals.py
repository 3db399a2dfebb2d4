"""
Unit Tests for Signal Calculation

Run with: pytest backend/tests/test_signals.py -v
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from reconciliation.domain import BankTransaction, MatchableRecord, CandidateSource, MatchTier
from reconciliation.matching_rules.signals import (
    MatchSignals,
    amount_signal,
    date_signal,
    text_similarity,
    calculate_signals,
    explain_signals,
)


def make_transaction(amount="120.00", on_date=date(2024, 3, 1), description="ACME SUPPLIES"):
    return BankTransaction(
        id="txn-1",
        tenant_id="tenant-1",
        date=on_date,
        amount=Decimal(amount),
        description=description,
    )


def make_document(amount="120.00", on_date=date(2024, 3, 1), vendor="Acme Supplies Ltd", confidence=0.95):
    return MatchableRecord(
        id="doc-1",
        source=CandidateSource.DOCUMENT,
        amount=Decimal(amount),
        date=on_date,
        vendor=vendor,
        description=vendor,
        source_confidence=confidence,
    )


class TestAmountSignal:

    def test_exact_amount(self):
        assert amount_signal(Decimal("120.00"), Decimal("120.00")) == 1.0

    def test_debit_compared_by_magnitude(self):
        assert amount_signal(Decimal("-120.00"), Decimal("120.00")) == 1.0

    def test_sub_cent_difference_is_exact(self):
        assert amount_signal(Decimal("120.00"), Decimal("120.005")) == 1.0

    def test_large_difference_is_zero(self):
        assert amount_signal(Decimal("100.00"), Decimal("200.00")) == 0.0

    def test_monotonic_in_difference(self):
        """Increasing the amount gap never increases the signal."""
        previous = 1.0
        for cents in range(0, 3000, 37):
            value = amount_signal(Decimal("250.00"), Decimal("250.00") + Decimal(cents) / 100)
            assert value <= previous
            previous = value


class TestDateSignal:

    @pytest.mark.parametrize("days,expected", [
        (0, 1.0),
        (1, 0.9),
        (-1, 0.9),
        (3, 0.7),
        (7, 0.5),
        (10, 0.35),
        (20, 0.0),
    ])
    def test_steps(self, days, expected):
        assert date_signal(days) == pytest.approx(expected)

    def test_missing_date(self):
        assert date_signal(None) == 0.0

    def test_monotonic_in_days(self):
        values = [date_signal(d) for d in range(0, 30)]
        assert values == sorted(values, reverse=True)


class TestTextSimilarity:

    def test_identical_ignores_case(self):
        assert text_similarity("ACME SUPPLIES", "acme supplies") == 1.0

    def test_shared_tokens(self):
        assert text_similarity("ACME SUPPLIES", "Acme Supplies Ltd") == pytest.approx(2 / 3)

    def test_short_tokens_ignored(self):
        assert text_similarity("AB CD", "ab cd ef") == 0.0

    def test_empty(self):
        assert text_similarity(None, "Acme") == 0.0
        assert text_similarity("", "") == 0.0


class TestCalculateSignals:

    def test_same_day_document(self):
        signals = calculate_signals(make_transaction(), make_document())

        assert signals.amount == 1.0
        assert signals.date == 1.0
        assert signals.vendor > 0.3
        assert signals.ocr_confidence == 0.95

    def test_candidate_ten_days_later(self):
        signals = calculate_signals(
            make_transaction(),
            make_document(on_date=date(2024, 3, 1) + timedelta(days=10))
        )

        assert signals.amount == 1.0
        assert signals.date == pytest.approx(0.35)

    def test_ledger_entry_has_no_vendor_and_full_confidence(self):
        entry = MatchableRecord(
            id="le-1",
            source=CandidateSource.LEDGER_ENTRY,
            amount=Decimal("120.00"),
            date=date(2024, 3, 1),
            description="ACME SUPPLIES",
            source_confidence=1.0,
        )

        signals = calculate_signals(make_transaction(), entry)

        assert signals.vendor == 0.0
        assert signals.ocr_confidence == 1.0
        assert signals.description == 1.0

    def test_missing_ocr_confidence_uses_default(self):
        signals = calculate_signals(make_transaction(), make_document(confidence=None))
        assert signals.ocr_confidence == 0.5

    def test_deterministic_and_bounded(self):
        transaction = make_transaction(amount="-87.45", description="UBER TRIP SYDNEY")
        for offset in range(-9, 10, 3):
            for amount in ("0.01", "87.45", "95.00", "500.00"):
                record = make_document(
                    amount=amount,
                    on_date=transaction.date + timedelta(days=offset),
                    vendor="Uber",
                    confidence=1.4,
                )
                first = calculate_signals(transaction, record)
                assert first == calculate_signals(transaction, record)
                for value in first.to_dict().values():
                    assert 0.0 <= value <= 1.0


class TestExplainSignals:

    def test_auto_reason(self):
        signals = MatchSignals(amount=1.0, date=1.0, vendor=0.9, ocr_confidence=0.9, description=0.2)
        reason = explain_signals(signals, MatchTier.AUTO)

        assert reason.startswith("Auto-match:")
        assert "exact amount match" in reason
        assert "same date" in reason
        assert "vendor match" in reason

    def test_weak_signals(self):
        signals = MatchSignals(amount=0.1, date=0.0, vendor=0.0, ocr_confidence=0.5, description=0.0)
        assert explain_signals(signals, MatchTier.MANUAL) == "Possible match: weak signals only"
