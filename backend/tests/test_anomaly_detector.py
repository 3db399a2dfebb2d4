"""
Tests for anomaly detection and the exceptions it raises.

Run with: pytest backend/tests/test_anomaly_detector.py -v
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from database.reconciliation_models import ReconciliationExceptionDB
from reconciliation.domain import ExceptionType
from reconciliation.services.anomaly_detector import AnomalyDetector
from reconciliation.services.exception_manager import ExceptionManager
from reconciliation.services.ledger_store import ReconciliationStore
from reconciliation.services.summary_service import SummaryService

# A Friday
AS_OF = date(2024, 3, 15)
MONDAY = date(2024, 3, 11)


def of_type(anomalies, exception_type):
    return [a for a in anomalies if a.exception_type == exception_type]


class TestDuplicates:

    @pytest.mark.asyncio
    async def test_triplicate_raises_critical_exception(self, db, seed):
        ids = [await seed.transaction("-45.00", MONDAY, "CAFE ROMA") for _ in range(3)]

        result = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)

        assert len(result["anomalies"]) == 1
        finding = result["anomalies"][0]
        assert finding["exception_type"] == "duplicate"
        assert finding["score"] == 1.0
        assert finding["bank_transaction_id"] in ids
        assert len(finding["related_transaction_ids"]) == 2

        exception = await ExceptionManager(db).get_exception(result["exception_ids"][0])
        assert exception.severity == "critical"
        assert exception.anomaly_score == 1.0
        assert exception.remediation_playbook[0]["action"] == "review_transactions_to_identify_duplicates"

        summary = await SummaryService(db).get_summary(seed.tenant_id)
        assert summary.critical_exceptions == 1

    @pytest.mark.asyncio
    async def test_pair_is_high(self, db, seed):
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")

        result = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)

        exception = await ExceptionManager(db).get_exception(result["exception_ids"][0])
        assert exception.exception_type == "duplicate"
        assert exception.severity == "high"

    @pytest.mark.asyncio
    async def test_different_accounts_or_reconciled_not_duplicates(self, db, seed, session_factory):
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA", account_id="acc-1")
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA", account_id="acc-2")
        matched_id = await seed.transaction("-45.00", MONDAY, "CAFE ROMA", account_id="acc-1")
        async with session_factory() as session:
            await ReconciliationStore(session).claim_transaction(seed.tenant_id, matched_id, document_id="doc-1")
            await session.commit()

        anomalies = await AnomalyDetector(db).detect_anomalies(seed.tenant_id, as_of=AS_OF)

        assert of_type(anomalies, ExceptionType.DUPLICATE) == []


class TestUnusualSpend:

    @pytest.mark.asyncio
    async def test_outlier_against_history(self, db, seed):
        for i, amount in enumerate(["40.00", "45.00", "50.00", "55.00", "60.00"] * 2):
            await seed.transaction(f"-{amount}", date(2024, 2, 5) + timedelta(days=i), "SUPPLIES")
        outlier_id = await seed.transaction("-2000.00", MONDAY, "LUXURY GOODS")

        anomalies = await AnomalyDetector(db).detect_anomalies(seed.tenant_id, as_of=AS_OF)

        unusual = of_type(anomalies, ExceptionType.UNUSUAL_SPEND)
        assert [a.bank_transaction_id for a in unusual] == [outlier_id]
        assert unusual[0].score == 1.0

    @pytest.mark.asyncio
    async def test_too_little_history(self, db, seed):
        await seed.transaction("-40.00", MONDAY, "SUPPLIES")
        await seed.transaction("-2000.00", MONDAY + timedelta(days=1), "LUXURY GOODS")

        anomalies = await AnomalyDetector(db).detect_anomalies(seed.tenant_id, as_of=AS_OF)

        assert of_type(anomalies, ExceptionType.UNUSUAL_SPEND) == []


class TestMissingDocuments:

    @pytest.mark.asyncio
    async def test_scored_by_age(self, db, seed):
        stale_id = await seed.transaction("-250.00", AS_OF - timedelta(days=20), "HARDWARE")
        old_id = await seed.transaction("-300.00", AS_OF - timedelta(days=60), "HARDWARE")
        await seed.transaction("-5.00", AS_OF - timedelta(days=40), "PARKING")
        await seed.transaction("-80.00", AS_OF - timedelta(days=3), "HARDWARE")

        anomalies = await AnomalyDetector(db).detect_anomalies(seed.tenant_id, as_of=AS_OF, min_score=0)

        missing = {a.bank_transaction_id: a.score for a in of_type(anomalies, ExceptionType.MISSING_DOCUMENT)}
        assert missing == {stale_id: pytest.approx(20 / 30), old_id: 0.9}

    @pytest.mark.asyncio
    async def test_capped_below_critical(self, db, seed):
        await seed.transaction("-300.00", AS_OF - timedelta(days=60), "HARDWARE")

        result = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)

        exception = await ExceptionManager(db).get_exception(result["exception_ids"][0])
        assert exception.exception_type == "missing_document"
        assert exception.severity == "high"


class TestWeekendSpend:

    @pytest.mark.asyncio
    async def test_large_weekend_payment(self, db, seed):
        saturday_id = await seed.transaction("-450.00", date(2024, 3, 9), "ELECTRONICS")
        await seed.transaction("-60.00", date(2024, 3, 10), "CAFE ROMA")

        result = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)

        assert [a["bank_transaction_id"] for a in result["anomalies"]] == [saturday_id]
        exception = await ExceptionManager(db).get_exception(result["exception_ids"][0])
        assert exception.exception_type == "anomaly"
        assert exception.severity == "medium"
        assert exception.anomaly_score == pytest.approx(0.6)


class TestProcessAnomalies:

    @pytest.mark.asyncio
    async def test_rescan_reuses_open_exception(self, db, seed):
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")

        first = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)
        second = await AnomalyDetector(db).scan(seed.tenant_id, as_of=AS_OF)

        assert len(first["exception_ids"]) == 1
        assert second["exception_ids"] == first["exception_ids"]
        result = await db.execute(
            select(ReconciliationExceptionDB).where(ReconciliationExceptionDB.tenant_id == seed.tenant_id)
        )
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, db, seed):
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")
        await seed.transaction("-45.00", MONDAY, "CAFE ROMA")
        saturday_id = await seed.transaction("-450.00", date(2024, 3, 9), "ELECTRONICS")

        detector = AnomalyDetector(db)
        anomalies = await detector.detect_anomalies(seed.tenant_id, as_of=AS_OF)
        assert len(anomalies) == 2

        original = ExceptionManager.create_exception

        async def failing_create(manager, tenant_id, exception_type, **kwargs):
            if exception_type == ExceptionType.DUPLICATE:
                raise RuntimeError("connection reset")
            return await original(manager, tenant_id, exception_type, **kwargs)

        with patch.object(ExceptionManager, "create_exception", failing_create), \
                patch("reconciliation.services.anomaly_detector.capture_exception") as capture:
            exception_ids = await detector.process_anomalies(seed.tenant_id, anomalies)

        assert len(exception_ids) == 1
        exception = await ExceptionManager(db).get_exception(exception_ids[0])
        assert exception.bank_transaction_id == saturday_id
        capture.assert_called_once()
