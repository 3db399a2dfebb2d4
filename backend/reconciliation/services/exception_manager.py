"""
Exception Manager

Creates, ranks and triages reconciliation exceptions. Each exception gets a
severity (from its anomaly score or type) and a fixed, ordered remediation
playbook for the reviewer.

Lifecycle: open -> in_progress -> resolved | dismissed. Terminal states are
final.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import ReconciliationExceptionDB
from reconciliation.domain import (
    ExceptionType,
    ExceptionSeverity,
    ExceptionStatus,
    ReconciliationEventType,
    ACTIVE_EXCEPTION_STATUSES,
    SEVERITY_RANK,
)
from reconciliation.errors import NotFoundError, InvalidTransitionError
from reconciliation.services.ledger_store import ReconciliationStore

logger = logging.getLogger(__name__)


SEVERITY_BY_TYPE = {
    ExceptionType.UNMATCHED: ExceptionSeverity.MEDIUM,
    ExceptionType.DUPLICATE: ExceptionSeverity.HIGH,
    ExceptionType.MISSING_DOCUMENT: ExceptionSeverity.MEDIUM,
    ExceptionType.AMOUNT_MISMATCH: ExceptionSeverity.HIGH,
    ExceptionType.DATE_MISMATCH: ExceptionSeverity.MEDIUM,
    ExceptionType.UNUSUAL_SPEND: ExceptionSeverity.HIGH,
    ExceptionType.ANOMALY: ExceptionSeverity.HIGH,
}

# Raised by matching itself, as opposed to anomaly detection
MATCHING_EXCEPTION_TYPES = (
    ExceptionType.UNMATCHED,
    ExceptionType.AMOUNT_MISMATCH,
    ExceptionType.DATE_MISMATCH,
)

PLAYBOOKS = {
    ExceptionType.UNMATCHED: [
        ("review_transaction", "Review transaction details and description"),
        ("search_documents", "Search for related documents or receipts"),
        ("check_ledger", "Check if entry exists in ledger with different amount/date"),
        ("manual_match", "Manually match if found, or create exception note"),
    ],
    ExceptionType.DUPLICATE: [
        ("identify_duplicate", "Identify which transaction is the duplicate"),
        ("verify_source", "Verify source of each transaction"),
        ("remove_duplicate", "Remove or void the duplicate entry"),
    ],
    ExceptionType.MISSING_DOCUMENT: [
        ("request_document", "Request missing document from vendor or employee"),
        ("temporary_note", "Add temporary note explaining missing document"),
        ("follow_up", "Set follow-up reminder to obtain document"),
    ],
    ExceptionType.AMOUNT_MISMATCH: [
        ("verify_amounts", "Verify amounts in bank, document, and ledger"),
        ("check_fees", "Check for bank fees or currency conversion differences"),
        ("adjust_entry", "Create adjusting entry if necessary"),
    ],
    ExceptionType.DATE_MISMATCH: [
        ("verify_dates", "Verify transaction dates across all sources"),
        ("check_clearing", "Check if date difference is due to clearing time"),
        ("adjust_date", "Adjust date if necessary or note the difference"),
    ],
    ExceptionType.UNUSUAL_SPEND: [
        ("review_amount", "Review transaction amount and compare to historical patterns"),
        ("verify_authorization", "Verify transaction was properly authorized"),
        ("check_budget", "Check if transaction exceeds budget thresholds"),
        ("escalate", "Escalate to manager if amount is unusually high"),
    ],
    ExceptionType.ANOMALY: [
        ("analyze_pattern", "Analyze transaction pattern and context"),
        ("compare_historical", "Compare to historical similar transactions"),
        ("investigate", "Investigate root cause of anomaly"),
        ("document_finding", "Document findings and resolution"),
    ],
}


def determine_severity(exception_type: ExceptionType, anomaly_score: Optional[float] = None) -> ExceptionSeverity:
    if anomaly_score is not None:
        if anomaly_score > 0.9:
            return ExceptionSeverity.CRITICAL
        if anomaly_score > 0.7:
            return ExceptionSeverity.HIGH
    return SEVERITY_BY_TYPE.get(exception_type, ExceptionSeverity.MEDIUM)


def build_playbook(exception_type: ExceptionType) -> List[Dict[str, Any]]:
    return [
        {"step": index, "action": action, "description": description}
        for index, (action, description) in enumerate(PLAYBOOKS.get(exception_type, []), start=1)
    ]


def exception_to_dict(row: ReconciliationExceptionDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "exception_type": row.exception_type,
        "severity": row.severity,
        "bank_transaction_id": row.bank_transaction_id,
        "document_id": row.document_id,
        "ledger_entry_id": row.ledger_entry_id,
        "match_id": row.match_id,
        "description": row.description,
        "anomaly_score": row.anomaly_score,
        "remediation_playbook": row.remediation_playbook or [],
        "assigned_to": row.assigned_to,
        "status": row.status,
        "resolved_at": row.resolved_at.isoformat() if row.resolved_at else None,
        "resolved_by": row.resolved_by,
        "resolution_notes": row.resolution_notes,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class ExceptionManager:
    """
    Service for reconciliation exceptions.

    Methods that change state commit by default; the orchestrator passes
    commit=False to keep exception writes inside its own transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = ReconciliationStore(db)

    async def create_exception(
        self,
        tenant_id: str,
        exception_type: ExceptionType,
        *,
        description: str,
        bank_transaction_id: Optional[str] = None,
        document_id: Optional[str] = None,
        ledger_entry_id: Optional[str] = None,
        match_id: Optional[str] = None,
        anomaly_score: Optional[float] = None,
        severity: Optional[ExceptionSeverity] = None,
        remediation_playbook: Optional[List[Dict[str, Any]]] = None,
        commit: bool = True,
    ) -> ReconciliationExceptionDB:
        """
        Create an exception with derived severity and playbook.

        An open or in-progress exception of the same type for the same bank
        transaction is reused rather than duplicated.
        """
        if bank_transaction_id:
            existing = await self._find_active(tenant_id, exception_type, bank_transaction_id)
            if existing:
                logger.debug(f"Exception already open for transaction {bank_transaction_id}: {existing.id}")
                existing.match_id = match_id or existing.match_id
                existing.document_id = document_id or existing.document_id
                existing.ledger_entry_id = ledger_entry_id or existing.ledger_entry_id
                existing.description = description
                if anomaly_score is not None:
                    existing.anomaly_score = anomaly_score
                    existing.severity = (severity or determine_severity(exception_type, anomaly_score)).value
                if commit:
                    await self.db.commit()
                return existing

        resolved_severity = severity or determine_severity(exception_type, anomaly_score)
        exception = ReconciliationExceptionDB(
            tenant_id=tenant_id,
            exception_type=exception_type.value,
            severity=resolved_severity.value,
            bank_transaction_id=bank_transaction_id,
            document_id=document_id,
            ledger_entry_id=ledger_entry_id,
            match_id=match_id,
            description=description,
            anomaly_score=anomaly_score,
            remediation_playbook=remediation_playbook or build_playbook(exception_type),
            status=ExceptionStatus.OPEN.value,
        )
        self.db.add(exception)
        await self.db.flush()

        await self.store.record_event(
            tenant_id,
            ReconciliationEventType.EXCEPTION_CREATED,
            bank_transaction_id=bank_transaction_id,
            document_id=document_id,
            ledger_entry_id=ledger_entry_id,
            match_id=match_id,
            exception_id=exception.id,
            reason_code=exception_type.value,
            reason_description=description,
            metadata={"severity": resolved_severity.value},
        )

        if commit:
            await self.db.commit()

        logger.info(
            f"Exception created: {exception_type.value} ({resolved_severity.value})",
            extra={"exception_id": exception.id, "bank_transaction_id": bank_transaction_id}
        )
        return exception

    async def list_exceptions(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        exception_type: Optional[str] = None,
        assigned_to: Optional[str] = None,
        limit: int = 100,
    ) -> List[ReconciliationExceptionDB]:
        """Ordered by severity (critical first), then newest first."""
        conditions = [ReconciliationExceptionDB.tenant_id == tenant_id]
        if status:
            conditions.append(ReconciliationExceptionDB.status == status)
        if severity:
            conditions.append(ReconciliationExceptionDB.severity == severity)
        if exception_type:
            conditions.append(ReconciliationExceptionDB.exception_type == exception_type)
        if assigned_to:
            conditions.append(ReconciliationExceptionDB.assigned_to == assigned_to)

        severity_rank = case(
            {s.value: rank for s, rank in SEVERITY_RANK.items()},
            value=ReconciliationExceptionDB.severity,
            else_=len(SEVERITY_RANK) + 1,
        )

        result = await self.db.execute(
            select(ReconciliationExceptionDB)
            .where(and_(*conditions))
            .order_by(severity_rank, ReconciliationExceptionDB.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_exception(self, exception_id: str, tenant_id: Optional[str] = None) -> ReconciliationExceptionDB:
        query = select(ReconciliationExceptionDB).where(ReconciliationExceptionDB.id == exception_id)
        if tenant_id:
            query = query.where(ReconciliationExceptionDB.tenant_id == tenant_id)
        result = await self.db.execute(query)
        exception = result.scalar_one_or_none()
        if not exception:
            raise NotFoundError(f"Exception {exception_id} not found")
        return exception

    async def assign_exception(
        self,
        exception_id: str,
        assigned_to: str,
        tenant_id: Optional[str] = None,
    ) -> ReconciliationExceptionDB:
        exception = await self.get_exception(exception_id, tenant_id)
        self._ensure_active(exception)

        exception.assigned_to = assigned_to
        exception.status = ExceptionStatus.IN_PROGRESS.value
        await self.db.commit()

        logger.info(f"Exception assigned: {exception_id}", extra={"assigned_to": assigned_to})
        return exception

    async def resolve_exception(
        self,
        exception_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ReconciliationExceptionDB:
        """Resolve an exception. The actor is required and persisted with the notes."""
        return await self._close(exception_id, actor_id, notes, tenant_id, ExceptionStatus.RESOLVED)

    async def dismiss_exception(
        self,
        exception_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ReconciliationExceptionDB:
        return await self._close(exception_id, actor_id, notes, tenant_id, ExceptionStatus.DISMISSED)

    async def resolve_for_transaction(
        self,
        tenant_id: str,
        bank_transaction_id: str,
        actor_id: str = "system",
        notes: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """Resolve every active exception for a transaction that has since been matched."""
        return await self._close_for_transaction(
            tenant_id, bank_transaction_id, actor_id, notes, ExceptionStatus.RESOLVED, None, commit
        )

    async def dismiss_stale_for_transaction(
        self,
        tenant_id: str,
        bank_transaction_id: str,
        keep_type: Optional[ExceptionType] = None,
        actor_id: str = "system",
        notes: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """
        Dismiss a transaction's active matching exceptions left over from an
        earlier attempt. Exceptions of keep_type stay open so the new attempt
        reuses them; anomaly findings are never touched.
        """
        stale = [t for t in MATCHING_EXCEPTION_TYPES if t != keep_type]
        return await self._close_for_transaction(
            tenant_id, bank_transaction_id, actor_id, notes, ExceptionStatus.DISMISSED, stale, commit
        )

    # ==================== Private Methods ====================

    async def _close_for_transaction(
        self,
        tenant_id: str,
        bank_transaction_id: str,
        actor_id: str,
        notes: Optional[str],
        status: ExceptionStatus,
        exception_types: Optional[List[ExceptionType]],
        commit: bool,
    ) -> int:
        conditions = [
            ReconciliationExceptionDB.tenant_id == tenant_id,
            ReconciliationExceptionDB.bank_transaction_id == bank_transaction_id,
            ReconciliationExceptionDB.status.in_(ACTIVE_EXCEPTION_STATUSES),
        ]
        if exception_types is not None:
            conditions.append(ReconciliationExceptionDB.exception_type.in_([t.value for t in exception_types]))

        result = await self.db.execute(select(ReconciliationExceptionDB).where(and_(*conditions)))
        exceptions = list(result.scalars().all())
        for exception in exceptions:
            await self._apply_close(exception, actor_id, notes, status)

        if commit and exceptions:
            await self.db.commit()
        return len(exceptions)

    async def _find_active(
        self,
        tenant_id: str,
        exception_type: ExceptionType,
        bank_transaction_id: str,
    ) -> Optional[ReconciliationExceptionDB]:
        result = await self.db.execute(
            select(ReconciliationExceptionDB)
            .where(
                ReconciliationExceptionDB.tenant_id == tenant_id,
                ReconciliationExceptionDB.exception_type == exception_type.value,
                ReconciliationExceptionDB.bank_transaction_id == bank_transaction_id,
                ReconciliationExceptionDB.status.in_(ACTIVE_EXCEPTION_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _ensure_active(self, exception: ReconciliationExceptionDB):
        if exception.status not in ACTIVE_EXCEPTION_STATUSES:
            raise InvalidTransitionError(
                f"Exception {exception.id} is already {exception.status}"
            )

    async def _close(
        self,
        exception_id: str,
        actor_id: str,
        notes: Optional[str],
        tenant_id: Optional[str],
        status: ExceptionStatus,
    ) -> ReconciliationExceptionDB:
        if not actor_id or not actor_id.strip():
            raise ValueError("actor_id is required")

        exception = await self.get_exception(exception_id, tenant_id)
        self._ensure_active(exception)
        await self._apply_close(exception, actor_id, notes, status)
        await self.db.commit()

        logger.info(f"Exception {status.value}: {exception_id}", extra={"actor": actor_id})
        return exception

    async def _apply_close(
        self,
        exception: ReconciliationExceptionDB,
        actor_id: str,
        notes: Optional[str],
        status: ExceptionStatus,
    ):
        exception.status = status.value
        exception.resolved_at = datetime.now(timezone.utc)
        exception.resolved_by = actor_id
        exception.resolution_notes = notes

        await self.store.record_event(
            exception.tenant_id,
            ReconciliationEventType.EXCEPTION_RESOLVED,
            bank_transaction_id=exception.bank_transaction_id,
            match_id=exception.match_id,
            exception_id=exception.id,
            reason_code=status.value,
            reason_description=notes,
            performed_by=actor_id,
        )
