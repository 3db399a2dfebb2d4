"""
Tests for dashboard summary and trends.

Run with: pytest backend/tests/test_summary.py -v
"""

import uuid
from datetime import date, timedelta

import pytest

from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.notifications import LoggingNotificationSender
from reconciliation.services.summary_service import SummaryService

TXN_DATE = date(2024, 3, 1)


@pytest.fixture
def service(session_factory, settings):
    return ReconciliationService(session_factory, notifier=LoggingNotificationSender(), settings=settings)


async def seed_activity(seed, service):
    """One auto-matched transaction and one unmatched, on the same day."""
    await seed.transaction("120.00", TXN_DATE, "ACME SUPPLIES")
    await seed.document("120.00", TXN_DATE, vendor="Acme Supplies Ltd")
    await seed.transaction("-980.25", TXN_DATE, "UNKNOWN MERCHANT")
    await seed.ledger_entry("15.00", TXN_DATE - timedelta(days=60), "Unrelated")
    return await service.reconcile_unmatched(seed.tenant_id)


class TestSummary:

    @pytest.mark.asyncio
    async def test_summary_after_batch(self, db, seed, service):
        result = await seed_activity(seed, service)
        assert (result.matched, result.unmatched) == (1, 1)

        summary = await SummaryService(db).get_summary(seed.tenant_id)

        assert summary.total_transactions == 2
        assert summary.reconciled_transactions == 1
        assert summary.pending_transactions == 1
        assert summary.pending_amount == pytest.approx(980.25)
        assert summary.auto_match_rate == pytest.approx(0.5)
        assert summary.ledger_pending_entries == 1
        assert summary.open_exceptions == 1
        assert summary.critical_exceptions == 0
        assert summary.last_reconciled_at is not None
        assert summary.avg_time_to_reconcile_hours > 0

    @pytest.mark.asyncio
    async def test_empty_tenant(self, db):
        summary = await SummaryService(db).get_summary(str(uuid.uuid4()))

        assert summary.total_transactions == 0
        assert summary.auto_match_rate == 0.0
        assert summary.avg_time_to_reconcile_hours is None
        assert summary.last_reconciled_at is None


class TestTrends:

    @pytest.mark.asyncio
    async def test_one_point_per_day(self, db, seed, service):
        await seed_activity(seed, service)

        points = await SummaryService(db).get_trends(seed.tenant_id, days=3, today=TXN_DATE + timedelta(days=1))

        assert [p.date for p in points] == ["2024-02-29", "2024-03-01", "2024-03-02"]
        busy = points[1]
        assert busy.total_transactions == 2
        assert busy.reconciled_transactions == 1
        assert busy.pending_transactions == 1
        assert points[0].total_transactions == 0
