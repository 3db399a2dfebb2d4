"""
Tests for reconciliation exception triage.

Run with: pytest backend/tests/test_exception_manager.py -v
"""

import uuid

import pytest
from sqlalchemy import select

from database.reconciliation_models import ReconciliationEventDB
from reconciliation.domain import ExceptionType, ExceptionSeverity, ExceptionStatus, ReconciliationEventType
from reconciliation.errors import NotFoundError, InvalidTransitionError
from reconciliation.services.exception_manager import ExceptionManager, determine_severity, build_playbook


class TestSeverityAndPlaybooks:

    @pytest.mark.parametrize("anomaly_score,expected", [
        (0.95, ExceptionSeverity.CRITICAL),
        (0.75, ExceptionSeverity.HIGH),
        (0.70, ExceptionSeverity.MEDIUM),
        (None, ExceptionSeverity.MEDIUM),
    ])
    def test_unmatched_severity(self, anomaly_score, expected):
        assert determine_severity(ExceptionType.UNMATCHED, anomaly_score) == expected

    def test_type_defaults(self):
        assert determine_severity(ExceptionType.DUPLICATE) == ExceptionSeverity.HIGH
        assert determine_severity(ExceptionType.DATE_MISMATCH) == ExceptionSeverity.MEDIUM

    def test_every_type_has_ordered_playbook(self):
        for exception_type in ExceptionType:
            playbook = build_playbook(exception_type)
            assert playbook, exception_type
            assert [step["step"] for step in playbook] == list(range(1, len(playbook) + 1))
            assert all(step["action"] and step["description"] for step in playbook)


class TestExceptionLifecycle:

    @pytest.fixture
    def manager(self, db):
        return ExceptionManager(db)

    @pytest.mark.asyncio
    async def test_create_unmatched(self, manager, db, tenant_id):
        transaction_id = str(uuid.uuid4())

        exception = await manager.create_exception(
            tenant_id,
            ExceptionType.UNMATCHED,
            description="No candidates",
            bank_transaction_id=transaction_id,
        )

        assert exception.status == ExceptionStatus.OPEN.value
        assert exception.severity == ExceptionSeverity.MEDIUM.value
        assert exception.remediation_playbook[0]["action"] == "review_transaction"

        events = (await db.execute(
            select(ReconciliationEventDB).where(ReconciliationEventDB.exception_id == exception.id)
        )).scalars().all()
        assert [e.event_type for e in events] == [ReconciliationEventType.EXCEPTION_CREATED.value]

    @pytest.mark.asyncio
    async def test_active_exception_reused(self, manager, tenant_id):
        transaction_id = str(uuid.uuid4())

        first = await manager.create_exception(
            tenant_id, ExceptionType.UNMATCHED, description="first pass", bank_transaction_id=transaction_id
        )
        second = await manager.create_exception(
            tenant_id, ExceptionType.UNMATCHED, description="second pass", bank_transaction_id=transaction_id
        )

        assert second.id == first.id
        assert second.description == "second pass"
        assert len(await manager.list_exceptions(tenant_id)) == 1

    @pytest.mark.asyncio
    async def test_list_orders_by_severity(self, manager, tenant_id):
        await manager.create_exception(tenant_id, ExceptionType.UNMATCHED, description="medium")
        await manager.create_exception(tenant_id, ExceptionType.ANOMALY, description="critical", anomaly_score=0.97)
        await manager.create_exception(tenant_id, ExceptionType.DUPLICATE, description="high")

        exceptions = await manager.list_exceptions(tenant_id)

        assert [e.severity for e in exceptions] == ["critical", "high", "medium"]
        assert len(await manager.list_exceptions(tenant_id, severity="high")) == 1
        assert await manager.list_exceptions(str(uuid.uuid4())) == []

    @pytest.mark.asyncio
    async def test_assign_then_resolve(self, manager, tenant_id):
        exception = await manager.create_exception(tenant_id, ExceptionType.AMOUNT_MISMATCH, description="off by 5")

        assigned = await manager.assign_exception(exception.id, "reviewer-1")
        assert assigned.status == ExceptionStatus.IN_PROGRESS.value
        assert assigned.assigned_to == "reviewer-1"

        resolved = await manager.resolve_exception(exception.id, "reviewer-1", notes="bank fee")
        assert resolved.status == ExceptionStatus.RESOLVED.value
        assert resolved.resolved_by == "reviewer-1"
        assert resolved.resolution_notes == "bank fee"
        assert resolved.resolved_at is not None

    @pytest.mark.asyncio
    async def test_resolve_requires_actor(self, manager, tenant_id):
        exception = await manager.create_exception(tenant_id, ExceptionType.UNMATCHED, description="x")

        with pytest.raises(ValueError):
            await manager.resolve_exception(exception.id, "")

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, manager, tenant_id):
        exception = await manager.create_exception(tenant_id, ExceptionType.UNMATCHED, description="x")
        await manager.dismiss_exception(exception.id, "reviewer-1")

        with pytest.raises(InvalidTransitionError):
            await manager.resolve_exception(exception.id, "reviewer-1")
        with pytest.raises(InvalidTransitionError):
            await manager.assign_exception(exception.id, "reviewer-2")

    @pytest.mark.asyncio
    async def test_unknown_exception(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_exception(str(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_resolve_for_transaction(self, manager, tenant_id):
        transaction_id = str(uuid.uuid4())
        await manager.create_exception(
            tenant_id, ExceptionType.UNMATCHED, description="a", bank_transaction_id=transaction_id
        )
        await manager.create_exception(
            tenant_id, ExceptionType.DATE_MISMATCH, description="b", bank_transaction_id=transaction_id
        )

        assert await manager.resolve_for_transaction(tenant_id, transaction_id, notes="matched") == 2
        assert await manager.list_exceptions(tenant_id, status=ExceptionStatus.OPEN.value) == []
