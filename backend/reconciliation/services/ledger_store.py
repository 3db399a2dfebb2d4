"""
Reconciliation Store

Data access for bank transactions, candidate records, match records and the
event trail. Every flag that marks a record reconciled is flipped with a
conditional UPDATE (WHERE reconciled = false); callers check the returned
boolean instead of reading first.

The store never commits. The caller owns the transaction boundary.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func, and_, Numeric
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankTransactionDB,
    DocumentDB,
    LedgerEntryDB,
    ReconciliationMatchDB,
    ReconciliationEventDB,
)
from reconciliation.domain import MatchStatus, ReconciliationEventType

logger = logging.getLogger(__name__)

CANDIDATE_DOCUMENT_STATUSES = ("extracted", "classified", "posted")
POSTED_DOCUMENT_STATUS = "posted"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationStore:
    """Repository over an AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Bank Transactions ====================

    async def get_bank_transaction(self, tenant_id: str, transaction_id: str) -> Optional[BankTransactionDB]:
        result = await self.db.execute(
            select(BankTransactionDB).where(
                BankTransactionDB.id == transaction_id,
                BankTransactionDB.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_unreconciled(
        self,
        tenant_id: str,
        limit: int,
        account_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[BankTransactionDB]:
        """Most recent unreconciled transactions first."""
        conditions = [
            BankTransactionDB.tenant_id == tenant_id,
            BankTransactionDB.reconciled.is_(False),
        ]
        if account_id:
            conditions.append(BankTransactionDB.account_id == account_id)
        if date_from:
            conditions.append(BankTransactionDB.date >= date_from)
        if date_to:
            conditions.append(BankTransactionDB.date <= date_to)

        result = await self.db.execute(
            select(BankTransactionDB)
            .where(and_(*conditions))
            .order_by(BankTransactionDB.date.desc(), BankTransactionDB.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim_transaction(
        self,
        tenant_id: str,
        transaction_id: str,
        document_id: Optional[str] = None,
        ledger_entry_id: Optional[str] = None,
    ) -> bool:
        """Mark reconciled only if still unreconciled. False means another run got there first."""
        result = await self.db.execute(
            update(BankTransactionDB)
            .where(
                BankTransactionDB.id == transaction_id,
                BankTransactionDB.tenant_id == tenant_id,
                BankTransactionDB.reconciled.is_(False),
            )
            .values(
                reconciled=True,
                reconciled_with_document=document_id,
                reconciled_with_ledger=ledger_entry_id,
                reconciled_at=utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_transaction(
        self,
        tenant_id: str,
        transaction_id: str,
        document_id: Optional[str] = None,
        ledger_entry_id: Optional[str] = None,
    ) -> bool:
        """Undo a reconciliation, only while the links still point at the given counterpart."""
        conditions = [
            BankTransactionDB.id == transaction_id,
            BankTransactionDB.tenant_id == tenant_id,
            BankTransactionDB.reconciled.is_(True),
        ]
        if document_id:
            conditions.append(BankTransactionDB.reconciled_with_document == document_id)
        if ledger_entry_id:
            conditions.append(BankTransactionDB.reconciled_with_ledger == ledger_entry_id)

        result = await self.db.execute(
            update(BankTransactionDB)
            .where(and_(*conditions))
            .values(
                reconciled=False,
                reconciled_with_document=None,
                reconciled_with_ledger=None,
                reconciled_at=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ==================== Candidate Records ====================

    async def find_candidate_documents(
        self,
        tenant_id: str,
        amount: Decimal,
        on_date: date,
        window_days: int,
        amount_band: float,
    ) -> List[DocumentDB]:
        magnitude = abs(Decimal(amount))
        band = Decimal(str(amount_band))
        result = await self.db.execute(
            select(DocumentDB).where(
                DocumentDB.tenant_id == tenant_id,
                DocumentDB.reconciled.is_(False),
                DocumentDB.status.in_(CANDIDATE_DOCUMENT_STATUSES),
                DocumentDB.document_date.between(
                    on_date - timedelta(days=window_days), on_date + timedelta(days=window_days)
                ),
                func.abs(DocumentDB.total_amount, type_=Numeric(14, 2)).between(magnitude - band, magnitude + band),
            )
        )
        return list(result.scalars().all())

    async def find_candidate_ledger_entries(
        self,
        tenant_id: str,
        amount: Decimal,
        on_date: date,
        window_days: int,
        amount_band: float,
    ) -> List[LedgerEntryDB]:
        magnitude = abs(Decimal(amount))
        band = Decimal(str(amount_band))
        result = await self.db.execute(
            select(LedgerEntryDB).where(
                LedgerEntryDB.tenant_id == tenant_id,
                LedgerEntryDB.reconciled.is_(False),
                LedgerEntryDB.transaction_date.between(
                    on_date - timedelta(days=window_days), on_date + timedelta(days=window_days)
                ),
                func.abs(LedgerEntryDB.amount, type_=Numeric(14, 2)).between(magnitude - band, magnitude + band),
            )
        )
        return list(result.scalars().all())

    async def claim_document(self, tenant_id: str, document_id: str) -> bool:
        result = await self.db.execute(
            update(DocumentDB)
            .where(
                DocumentDB.id == document_id,
                DocumentDB.tenant_id == tenant_id,
                DocumentDB.reconciled.is_(False),
            )
            .values(reconciled=True, status=POSTED_DOCUMENT_STATUS, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_document(self, tenant_id: str, document_id: str) -> bool:
        result = await self.db.execute(
            update(DocumentDB)
            .where(
                DocumentDB.id == document_id,
                DocumentDB.tenant_id == tenant_id,
                DocumentDB.reconciled.is_(True),
            )
            .values(reconciled=False, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_ledger_entry(self, tenant_id: str, ledger_entry_id: str, transaction_id: str) -> bool:
        result = await self.db.execute(
            update(LedgerEntryDB)
            .where(
                LedgerEntryDB.id == ledger_entry_id,
                LedgerEntryDB.tenant_id == tenant_id,
                LedgerEntryDB.reconciled.is_(False),
            )
            .values(reconciled=True, reconciled_with=transaction_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_ledger_entry(self, tenant_id: str, ledger_entry_id: str, transaction_id: str) -> bool:
        """Only releases the entry if it is still linked to this transaction."""
        result = await self.db.execute(
            update(LedgerEntryDB)
            .where(
                LedgerEntryDB.id == ledger_entry_id,
                LedgerEntryDB.tenant_id == tenant_id,
                LedgerEntryDB.reconciled_with == transaction_id,
            )
            .values(reconciled=False, reconciled_with=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ==================== Match Records ====================

    async def record_match(self, **values: Any) -> ReconciliationMatchDB:
        match = ReconciliationMatchDB(**values)
        self.db.add(match)
        await self.db.flush()
        return match

    async def get_match(self, match_id: str, tenant_id: Optional[str] = None) -> Optional[ReconciliationMatchDB]:
        query = select(ReconciliationMatchDB).where(ReconciliationMatchDB.id == match_id)
        if tenant_id:
            query = query.where(ReconciliationMatchDB.tenant_id == tenant_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_active_match(self, tenant_id: str, transaction_id: str) -> Optional[ReconciliationMatchDB]:
        result = await self.db.execute(
            select(ReconciliationMatchDB)
            .where(
                ReconciliationMatchDB.tenant_id == tenant_id,
                ReconciliationMatchDB.bank_transaction_id == transaction_id,
                ReconciliationMatchDB.status == MatchStatus.MATCHED.value,
            )
            .order_by(ReconciliationMatchDB.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def supersede_open_matches(
        self,
        tenant_id: str,
        transaction_id: str,
        performed_by: str = "system",
    ) -> List[ReconciliationMatchDB]:
        """
        Reject the transaction's matches still awaiting review.

        Called before a new matching attempt is recorded, so at most one
        proposal per transaction is ever reviewable.
        """
        result = await self.db.execute(
            select(ReconciliationMatchDB).where(
                ReconciliationMatchDB.tenant_id == tenant_id,
                ReconciliationMatchDB.bank_transaction_id == transaction_id,
                ReconciliationMatchDB.status.in_([MatchStatus.EXCEPTION.value, MatchStatus.PENDING.value]),
            )
        )
        superseded = list(result.scalars().all())
        now = utc_now()
        for match in superseded:
            match.status = MatchStatus.REJECTED.value
            match.reviewed_by = performed_by
            match.reviewed_at = now
            await self.record_event(
                tenant_id,
                ReconciliationEventType.UNMATCH,
                bank_transaction_id=transaction_id,
                document_id=match.document_id,
                ledger_entry_id=match.ledger_entry_id,
                match_id=match.id,
                reason_code="superseded",
                reason_description="Replaced by a newer matching attempt",
                confidence_score=match.confidence_score,
                performed_by=performed_by,
            )
        if superseded:
            await self.db.flush()
        return superseded

    async def list_matches(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        bank_transaction_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ReconciliationMatchDB]:
        conditions = [ReconciliationMatchDB.tenant_id == tenant_id]
        if status:
            conditions.append(ReconciliationMatchDB.status == status)
        if bank_transaction_id:
            conditions.append(ReconciliationMatchDB.bank_transaction_id == bank_transaction_id)

        result = await self.db.execute(
            select(ReconciliationMatchDB)
            .where(and_(*conditions))
            .order_by(ReconciliationMatchDB.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ==================== Event Trail ====================

    async def record_event(
        self,
        tenant_id: str,
        event_type: ReconciliationEventType,
        *,
        bank_transaction_id: Optional[str] = None,
        document_id: Optional[str] = None,
        ledger_entry_id: Optional[str] = None,
        match_id: Optional[str] = None,
        exception_id: Optional[str] = None,
        reason_code: Optional[str] = None,
        reason_description: Optional[str] = None,
        confidence_score: Optional[float] = None,
        match_signals: Optional[Dict[str, float]] = None,
        performed_by: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationEventDB:
        """Append an event. Events are never updated or deleted."""
        event = ReconciliationEventDB(
            tenant_id=tenant_id,
            event_type=event_type.value,
            bank_transaction_id=bank_transaction_id,
            document_id=document_id,
            ledger_entry_id=ledger_entry_id,
            match_id=match_id,
            exception_id=exception_id,
            reason_code=reason_code,
            reason_description=reason_description,
            confidence_score=confidence_score,
            match_signals=match_signals,
            performed_by=performed_by,
            performed_at=utc_now(),
            event_metadata=metadata or {},
        )
        self.db.add(event)
        await self.db.flush()

        logger.info(
            f"Reconciliation event: {event_type.value}",
            extra={
                "event": event_type.value,
                "tenant_id": tenant_id,
                "bank_transaction_id": bank_transaction_id,
                "match_id": match_id,
                "exception_id": exception_id,
                "actor": performed_by,
            }
        )
        return event

    async def list_events(
        self,
        tenant_id: str,
        event_types: Optional[Sequence[ReconciliationEventType]] = None,
        bank_transaction_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[ReconciliationEventDB]:
        conditions = [ReconciliationEventDB.tenant_id == tenant_id]
        if event_types:
            conditions.append(ReconciliationEventDB.event_type.in_([e.value for e in event_types]))
        if bank_transaction_id:
            conditions.append(ReconciliationEventDB.bank_transaction_id == bank_transaction_id)
        if since:
            conditions.append(ReconciliationEventDB.performed_at >= since)

        result = await self.db.execute(
            select(ReconciliationEventDB)
            .where(and_(*conditions))
            .order_by(ReconciliationEventDB.performed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
