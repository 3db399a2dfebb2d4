"""
Reconciliation Service

Orchestrates matching of bank transactions against documents and ledger
entries:
- Single-transaction matching (auto-accept, route for review, or unmatched)
- Batch reconciliation over a bounded worker pool
- Reviewer confirm/reject of proposed matches
- Batch completion notification

Acceptance is atomic: the bank transaction, its counterpart and the match
record are written in one database transaction, and each reconciled flag is
flipped with a conditional update so concurrent runs cannot double-link.
"""

import asyncio
import uuid
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from database.reconciliation_models import BankTransactionDB, ReconciliationMatchDB
from logging_config import set_reconciliation_context, reset_reconciliation_context
from sentry_integration import capture_exception
from reconciliation.domain import (
    BankTransaction,
    MatchStatus,
    MatchTier,
    MatchType,
    ExceptionType,
    ReconciliationEventType,
)
from reconciliation.errors import NotFoundError, InvalidTransitionError
from reconciliation.matching_rules.candidate_finder import CandidateFinder, ScoredCandidate, rank_candidates
from reconciliation.matching_rules.signals import EXACT_AMOUNT_TOLERANCE
from reconciliation.thresholds.models import MatchingThresholds
from reconciliation.thresholds.store import ThresholdStore
from reconciliation.services.ledger_store import ReconciliationStore
from reconciliation.services.exception_manager import ExceptionManager
from reconciliation.services.notifications import (
    NotificationSender,
    BATCH_COMPLETE_TEMPLATE,
    build_notification_sender,
)

logger = logging.getLogger(__name__)

DATE_MISMATCH_DAYS = 3
REVIEWABLE_STATUSES = (MatchStatus.EXCEPTION.value, MatchStatus.PENDING.value)


@dataclass
class MatchOutcome:
    """Result of matching one bank transaction."""
    bank_transaction_id: str
    status: MatchStatus
    match_id: Optional[str] = None
    tier: MatchTier = MatchTier.NONE
    confidence_score: float = 0.0
    match_type: Optional[MatchType] = None
    document_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    exception_id: Optional[str] = None
    reason: Optional[str] = None
    candidates_considered: int = 0
    already_reconciled: bool = False
    conflict: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_transaction_id": self.bank_transaction_id,
            "status": self.status.value,
            "match_id": self.match_id,
            "tier": self.tier.value,
            "confidence_score": round(self.confidence_score, 4),
            "match_type": self.match_type.value if self.match_type else None,
            "document_id": self.document_id,
            "ledger_entry_id": self.ledger_entry_id,
            "exception_id": self.exception_id,
            "reason": self.reason,
            "candidates_considered": self.candidates_considered,
            "already_reconciled": self.already_reconciled,
            "conflict": self.conflict,
        }


@dataclass
class ReconciliationRunResult:
    """Result of a reconciliation run."""
    run_id: str
    tenant_id: str
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    exceptions: int = 0
    skipped: int = 0
    cancelled: bool = False
    failed_transaction_ids: List[str] = field(default_factory=list)
    notification_delivery_ids: List[str] = field(default_factory=list)
    notification_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "total": self.total,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "exceptions": self.exceptions,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "failed_transaction_ids": self.failed_transaction_ids,
            "notification_delivery_ids": self.notification_delivery_ids,
            "notification_error": self.notification_error,
        }


class ReconciliationAuditEvent:
    """Log event names for reconciliation runs."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_CANCELLED = "reconciliation.run_cancelled"
    TRANSACTION_FAILED = "reconciliation.transaction_failed"
    NOTIFICATION_FAILED = "reconciliation.notification_failed"


def log_reconciliation_event(
    event_type: str,
    tenant_id: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for operational tracing."""
    log_entry = {
        "event": event_type,
        "tenant_id": tenant_id,
        "run_id": run_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def match_to_dict(row: ReconciliationMatchDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "bank_transaction_id": row.bank_transaction_id,
        "document_id": row.document_id,
        "ledger_entry_id": row.ledger_entry_id,
        "match_type": row.match_type,
        "tier": row.tier,
        "confidence_score": float(row.confidence_score or 0),
        "match_signals": row.match_signals,
        "reason": row.reason,
        "amount_difference": float(row.amount_difference) if row.amount_difference is not None else None,
        "date_difference_days": row.date_difference_days,
        "candidates_considered": row.candidates_considered,
        "status": row.status,
        "auto_matched": bool(row.auto_matched),
        "reviewed_by": row.reviewed_by,
        "reviewed_at": row.reviewed_at.isoformat() if row.reviewed_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class ReconciliationService:
    """
    Service for reconciling bank transactions.

    Takes a session factory rather than a session: a batch run opens one
    session per transaction so workers never share a connection.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Optional[NotificationSender] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.notifier = notifier or build_notification_sender(self.settings)
        self.batch_limit = self.settings.RECON_BATCH_LIMIT
        self.max_workers = max(1, self.settings.RECON_MAX_WORKERS)
        self.date_window_days = self.settings.RECON_DATE_WINDOW_DAYS
        self.amount_band = self.settings.RECON_AMOUNT_BAND

    # ==================== Single Transaction ====================

    async def match_transaction(
        self,
        tenant_id: str,
        bank_transaction_id: str,
        thresholds: Optional[MatchingThresholds] = None,
    ) -> Optional[MatchOutcome]:
        """
        Match one bank transaction.

        Returns None when the transaction does not exist for the tenant.
        An already reconciled transaction is returned as-is with no writes.
        Store errors propagate.
        """
        async with self.session_factory() as session:
            if thresholds is None:
                thresholds = await ThresholdStore(session).get_thresholds(tenant_id)
            return await self._match_in_session(session, tenant_id, bank_transaction_id, thresholds)

    async def preview_candidates(
        self,
        tenant_id: str,
        bank_transaction_id: str,
    ) -> Optional[List[ScoredCandidate]]:
        """Scored candidates for a transaction, without persisting anything."""
        async with self.session_factory() as session:
            thresholds = await ThresholdStore(session).get_thresholds(tenant_id)
            store = ReconciliationStore(session)
            row = await store.get_bank_transaction(tenant_id, bank_transaction_id)
            if row is None:
                return None
            finder = self._finder(store)
            return await finder.find_candidates(BankTransaction.from_row(row), thresholds)

    # ==================== Batch ====================

    async def reconcile_unmatched(
        self,
        tenant_id: str,
        limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconciliationRunResult:
        """Reconcile the most recent unreconciled transactions for a tenant."""
        return await self._run_batch(tenant_id, limit=limit, cancel_event=cancel_event)

    async def reconcile_statement(
        self,
        tenant_id: str,
        account_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconciliationRunResult:
        """Reconcile the unreconciled lines of one account statement period."""
        return await self._run_batch(
            tenant_id,
            limit=limit,
            cancel_event=cancel_event,
            account_id=account_id,
            date_from=date_from,
            date_to=date_to,
        )

    # ==================== Reviewer Actions ====================

    async def confirm_match(
        self,
        match_id: str,
        actor_id: str,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Accept a proposed match on a reviewer's decision.

        Raises:
            NotFoundError: unknown match
            InvalidTransitionError: match not awaiting review, or the
                transaction/counterpart was reconciled elsewhere meanwhile
        """
        async with self.session_factory() as session:
            store = ReconciliationStore(session)
            match = await store.get_match(match_id, tenant_id)
            if not match:
                raise NotFoundError(f"Match {match_id} not found")
            if match.status not in REVIEWABLE_STATUSES:
                raise InvalidTransitionError(f"Match {match_id} is {match.status}, not awaiting review")
            if not match.document_id and not match.ledger_entry_id:
                raise InvalidTransitionError(f"Match {match_id} has no candidate to confirm")

            conflict = await self._claim_pair(
                store, match.tenant_id, match.bank_transaction_id, match.document_id, match.ledger_entry_id
            )
            if conflict:
                await session.rollback()
                raise InvalidTransitionError(f"Cannot confirm match {match_id}: {conflict} already reconciled")

            match.status = MatchStatus.MATCHED.value
            match.match_type = MatchType.MANUAL.value
            match.reviewed_by = actor_id
            match.reviewed_at = datetime.now(timezone.utc)

            await store.record_event(
                match.tenant_id,
                ReconciliationEventType.MANUAL_MATCH,
                bank_transaction_id=match.bank_transaction_id,
                document_id=match.document_id,
                ledger_entry_id=match.ledger_entry_id,
                match_id=match.id,
                reason_code="reviewer_confirmed",
                reason_description=match.reason,
                confidence_score=match.confidence_score,
                match_signals=match.match_signals,
                performed_by=actor_id,
            )
            await ExceptionManager(session).resolve_for_transaction(
                match.tenant_id,
                match.bank_transaction_id,
                actor_id=actor_id,
                notes=f"Match {match.id} confirmed",
                commit=False,
            )
            await session.commit()

            return match_to_dict(match)

    async def reject_match(
        self,
        match_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Reject a proposed match, or unmatch an accepted one.

        Unmatching releases the bank transaction and its counterpart only
        while they are still linked to each other.
        """
        async with self.session_factory() as session:
            store = ReconciliationStore(session)
            match = await store.get_match(match_id, tenant_id)
            if not match:
                raise NotFoundError(f"Match {match_id} not found")
            if match.status not in REVIEWABLE_STATUSES + (MatchStatus.MATCHED.value,):
                raise InvalidTransitionError(f"Match {match_id} is {match.status} and cannot be rejected")

            was_matched = match.status == MatchStatus.MATCHED.value
            if was_matched:
                released = await store.release_transaction(
                    match.tenant_id,
                    match.bank_transaction_id,
                    document_id=match.document_id,
                    ledger_entry_id=match.ledger_entry_id,
                )
                if not released:
                    await session.rollback()
                    raise InvalidTransitionError(
                        f"Bank transaction {match.bank_transaction_id} is no longer linked to match {match_id}"
                    )
                if match.document_id:
                    await store.release_document(match.tenant_id, match.document_id)
                if match.ledger_entry_id:
                    await store.release_ledger_entry(
                        match.tenant_id, match.ledger_entry_id, match.bank_transaction_id
                    )

            match.status = MatchStatus.REJECTED.value
            match.reviewed_by = actor_id
            match.reviewed_at = datetime.now(timezone.utc)

            await store.record_event(
                match.tenant_id,
                ReconciliationEventType.UNMATCH,
                bank_transaction_id=match.bank_transaction_id,
                document_id=match.document_id,
                ledger_entry_id=match.ledger_entry_id,
                match_id=match.id,
                reason_code="reviewer_unmatched" if was_matched else "reviewer_rejected",
                reason_description=reason,
                confidence_score=match.confidence_score,
                match_signals=match.match_signals,
                performed_by=actor_id,
            )
            await session.commit()

            return match_to_dict(match)

    # ==================== Queries ====================

    async def get_match(self, match_id: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            match = await ReconciliationStore(session).get_match(match_id, tenant_id)
            return match_to_dict(match) if match else None

    async def list_matches(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        bank_transaction_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            rows = await ReconciliationStore(session).list_matches(
                tenant_id, status=status, bank_transaction_id=bank_transaction_id, limit=limit, offset=offset
            )
            return [match_to_dict(r) for r in rows]

    # ==================== Private Methods ====================

    def _finder(self, store: ReconciliationStore) -> CandidateFinder:
        return CandidateFinder(store, self.date_window_days, self.amount_band)

    async def _run_batch(
        self,
        tenant_id: str,
        limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        account_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> ReconciliationRunResult:
        run_id = str(uuid.uuid4())
        context_tokens = set_reconciliation_context(tenant_id, run_id)
        try:
            page = min(limit, self.batch_limit) if limit else self.batch_limit

            # Thresholds are read once; a concurrent learner update applies to the next run
            async with self.session_factory() as session:
                thresholds = await ThresholdStore(session).get_thresholds(tenant_id)
                rows = await ReconciliationStore(session).get_unreconciled(
                    tenant_id, page, account_id=account_id, date_from=date_from, date_to=date_to
                )
                transaction_ids = [row.id for row in rows]

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_STARTED,
                tenant_id,
                {"transactions": len(transaction_ids), "account_id": account_id, "workers": self.max_workers},
                run_id=run_id,
            )

            result = ReconciliationRunResult(run_id=run_id, tenant_id=tenant_id, total=len(transaction_ids))
            outcomes = await self._fan_out(tenant_id, run_id, transaction_ids, thresholds, cancel_event)

            for transaction_id, outcome in zip(transaction_ids, outcomes):
                if outcome == "skipped":
                    result.skipped += 1
                elif outcome == "failed":
                    result.unmatched += 1
                    result.failed_transaction_ids.append(transaction_id)
                elif outcome is None or outcome.status in (MatchStatus.UNMATCHED, MatchStatus.REJECTED):
                    result.unmatched += 1
                elif outcome.status == MatchStatus.MATCHED:
                    result.matched += 1
                else:
                    result.exceptions += 1
            result.cancelled = result.skipped > 0

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_CANCELLED if result.cancelled else ReconciliationAuditEvent.RUN_COMPLETED,
                tenant_id,
                {
                    "total": result.total,
                    "matched": result.matched,
                    "unmatched": result.unmatched,
                    "exceptions": result.exceptions,
                    "skipped": result.skipped,
                    "failed": len(result.failed_transaction_ids),
                },
                run_id=run_id,
            )

            await self._notify_batch_complete(result)
            return result
        finally:
            reset_reconciliation_context(context_tokens)

    async def _fan_out(
        self,
        tenant_id: str,
        run_id: str,
        transaction_ids: List[str],
        thresholds: MatchingThresholds,
        cancel_event: Optional[asyncio.Event],
    ) -> List[Any]:
        """Process transactions on a bounded pool; results keep the query order."""
        semaphore = asyncio.Semaphore(self.max_workers)
        outcomes: List[Any] = [None] * len(transaction_ids)

        async def worker(index: int, transaction_id: str):
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    outcomes[index] = "skipped"
                    return
                try:
                    outcomes[index] = await self._reconcile_one(tenant_id, transaction_id, thresholds)
                except Exception as e:
                    logger.error(
                        f"Failed to reconcile transaction {transaction_id}: {e}",
                        extra={
                            "event": ReconciliationAuditEvent.TRANSACTION_FAILED,
                            "bank_transaction_id": transaction_id,
                        },
                        exc_info=True,
                    )
                    capture_exception(e, tenant_id=tenant_id, bank_transaction_id=transaction_id, run_id=run_id)
                    outcomes[index] = "failed"

        await asyncio.gather(*(worker(i, t) for i, t in enumerate(transaction_ids)))
        return outcomes

    async def _reconcile_one(
        self,
        tenant_id: str,
        bank_transaction_id: str,
        thresholds: MatchingThresholds,
    ) -> Optional[MatchOutcome]:
        return await self.match_transaction(tenant_id, bank_transaction_id, thresholds=thresholds)

    async def _notify_batch_complete(self, result: ReconciliationRunResult):
        """
        Awaited before the run returns so the caller sees the delivery ids or
        the error. The wait is capped at NOTIFICATION_TIMEOUT_SECONDS whatever
        the sender does; failures are logged and recorded on the result,
        never raised.
        """
        try:
            result.notification_delivery_ids = await asyncio.wait_for(
                self.notifier.notify(
                    result.tenant_id,
                    BATCH_COMPLETE_TEMPLATE,
                    {
                        "run_id": result.run_id,
                        "total": result.total,
                        "matched": result.matched,
                        "unmatched": result.unmatched,
                        "exceptions": result.exceptions,
                        "cancelled": result.cancelled,
                    },
                    self.settings.notification_channels,
                ),
                timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            result.notification_error = (
                f"Notification not delivered within {self.settings.NOTIFICATION_TIMEOUT_SECONDS:g}s"
            )
            logger.warning(
                f"Batch notification timed out for run {result.run_id}",
                extra={"event": ReconciliationAuditEvent.NOTIFICATION_FAILED}
            )
        except Exception as e:
            result.notification_error = str(e)
            logger.warning(
                f"Batch notification failed for run {result.run_id}: {e}",
                extra={"event": ReconciliationAuditEvent.NOTIFICATION_FAILED}
            )

    async def _match_in_session(
        self,
        session: AsyncSession,
        tenant_id: str,
        bank_transaction_id: str,
        thresholds: MatchingThresholds,
    ) -> Optional[MatchOutcome]:
        store = ReconciliationStore(session)
        row = await store.get_bank_transaction(tenant_id, bank_transaction_id)
        if row is None:
            logger.info(f"Bank transaction {bank_transaction_id} not found for tenant {tenant_id}")
            return None

        if row.reconciled:
            return await self._existing_outcome(store, row)

        transaction = BankTransaction.from_row(row)
        try:
            records = await self._finder(store).load_records(transaction)
            candidates = rank_candidates(transaction, records, thresholds)

            if not candidates:
                return await self._record_unmatched(session, store, transaction, len(records))

            best = candidates[0]
            if best.tier == MatchTier.AUTO:
                return await self._accept(session, store, transaction, best, len(records))
            return await self._record_for_review(session, store, transaction, best, len(records))
        except Exception:
            await session.rollback()
            raise

    async def _existing_outcome(self, store: ReconciliationStore, row: BankTransactionDB) -> MatchOutcome:
        existing = await store.get_active_match(row.tenant_id, row.id)
        return MatchOutcome(
            bank_transaction_id=row.id,
            status=MatchStatus.MATCHED,
            match_id=existing.id if existing else None,
            tier=MatchTier(existing.tier) if existing else MatchTier.NONE,
            confidence_score=float(existing.confidence_score) if existing else 0.0,
            match_type=MatchType(existing.match_type) if existing and existing.match_type else None,
            document_id=row.reconciled_with_document,
            ledger_entry_id=row.reconciled_with_ledger,
            already_reconciled=True,
        )

    async def _claim_pair(
        self,
        store: ReconciliationStore,
        tenant_id: str,
        bank_transaction_id: str,
        document_id: Optional[str],
        ledger_entry_id: Optional[str],
    ) -> Optional[str]:
        """Conditionally reconcile both sides. Returns which side was already taken, if any."""
        if not await store.claim_transaction(tenant_id, bank_transaction_id, document_id, ledger_entry_id):
            return "transaction"
        if document_id and not await store.claim_document(tenant_id, document_id):
            return "document"
        if ledger_entry_id and not await store.claim_ledger_entry(tenant_id, ledger_entry_id, bank_transaction_id):
            return "ledger entry"
        return None

    async def _accept(
        self,
        session: AsyncSession,
        store: ReconciliationStore,
        transaction: BankTransaction,
        candidate: ScoredCandidate,
        considered: int,
    ) -> MatchOutcome:
        conflict = await self._claim_pair(
            store, transaction.tenant_id, transaction.id, candidate.document_id, candidate.ledger_entry_id
        )
        if conflict == "transaction":
            # Reconciled by a concurrent run since we read it
            await session.rollback()
            logger.info(f"Bank transaction {transaction.id} already reconciled; skipping")
            row = await store.get_bank_transaction(transaction.tenant_id, transaction.id)
            if row is None:
                return MatchOutcome(bank_transaction_id=transaction.id, status=MatchStatus.UNMATCHED, conflict=True)
            return await self._existing_outcome(store, row)
        if conflict:
            await session.rollback()
            logger.info(
                f"Candidate {candidate.record.id} for transaction {transaction.id} claimed by another match",
                extra={"bank_transaction_id": transaction.id}
            )
            return MatchOutcome(
                bank_transaction_id=transaction.id,
                status=MatchStatus.UNMATCHED,
                tier=candidate.tier,
                confidence_score=candidate.confidence_score,
                candidates_considered=considered,
                conflict=True,
            )

        await store.supersede_open_matches(transaction.tenant_id, transaction.id)
        match = await store.record_match(
            **self._match_values(transaction, candidate, considered),
            status=MatchStatus.MATCHED.value,
            auto_matched=True,
        )
        await store.record_event(
            transaction.tenant_id,
            ReconciliationEventType.AUTO_MATCH,
            bank_transaction_id=transaction.id,
            document_id=candidate.document_id,
            ledger_entry_id=candidate.ledger_entry_id,
            match_id=match.id,
            reason_code=candidate.match_type.value,
            reason_description=candidate.reason,
            confidence_score=candidate.confidence_score,
            match_signals=candidate.signals.to_dict(),
        )
        await ExceptionManager(session).resolve_for_transaction(
            transaction.tenant_id,
            transaction.id,
            notes=f"Matched automatically by {match.id}",
            commit=False,
        )
        await session.commit()

        return self._outcome(transaction, candidate, considered, MatchStatus.MATCHED, match.id)

    async def _record_for_review(
        self,
        session: AsyncSession,
        store: ReconciliationStore,
        transaction: BankTransaction,
        candidate: ScoredCandidate,
        considered: int,
    ) -> MatchOutcome:
        exception_type = self._review_exception_type(candidate)
        await self._retire_previous_attempt(session, store, transaction, exception_type)
        match = await store.record_match(
            **self._match_values(transaction, candidate, considered),
            status=MatchStatus.EXCEPTION.value,
            auto_matched=False,
        )
        await store.record_event(
            transaction.tenant_id,
            ReconciliationEventType.MATCH,
            bank_transaction_id=transaction.id,
            document_id=candidate.document_id,
            ledger_entry_id=candidate.ledger_entry_id,
            match_id=match.id,
            reason_code=candidate.tier.value,
            reason_description=candidate.reason,
            confidence_score=candidate.confidence_score,
            match_signals=candidate.signals.to_dict(),
        )
        exception = await ExceptionManager(session).create_exception(
            transaction.tenant_id,
            exception_type,
            description=f"{candidate.reason} (confidence {candidate.confidence_score:.2f}); review required",
            bank_transaction_id=transaction.id,
            document_id=candidate.document_id,
            ledger_entry_id=candidate.ledger_entry_id,
            match_id=match.id,
            commit=False,
        )
        await session.commit()

        outcome = self._outcome(transaction, candidate, considered, MatchStatus.EXCEPTION, match.id)
        outcome.exception_id = exception.id
        return outcome

    async def _record_unmatched(
        self,
        session: AsyncSession,
        store: ReconciliationStore,
        transaction: BankTransaction,
        considered: int,
    ) -> MatchOutcome:
        await self._retire_previous_attempt(session, store, transaction, ExceptionType.UNMATCHED)
        match = await store.record_match(
            tenant_id=transaction.tenant_id,
            bank_transaction_id=transaction.id,
            tier=MatchTier.NONE.value,
            confidence_score=0.0,
            candidates_considered=considered,
            status=MatchStatus.UNMATCHED.value,
            auto_matched=False,
        )
        exception = await ExceptionManager(session).create_exception(
            transaction.tenant_id,
            ExceptionType.UNMATCHED,
            description=(
                f"No document or ledger entry within {self.date_window_days} days and "
                f"{self.amount_band:g} of {abs(transaction.amount)} "
                f"({considered} records considered)"
            ),
            bank_transaction_id=transaction.id,
            match_id=match.id,
            commit=False,
        )
        await session.commit()

        return MatchOutcome(
            bank_transaction_id=transaction.id,
            status=MatchStatus.UNMATCHED,
            match_id=match.id,
            exception_id=exception.id,
            candidates_considered=considered,
        )

    async def _retire_previous_attempt(
        self,
        session: AsyncSession,
        store: ReconciliationStore,
        transaction: BankTransaction,
        exception_type: ExceptionType,
    ):
        """Reject earlier proposals and dismiss exceptions the new attempt no longer raises."""
        superseded = await store.supersede_open_matches(transaction.tenant_id, transaction.id)
        dismissed = await ExceptionManager(session).dismiss_stale_for_transaction(
            transaction.tenant_id,
            transaction.id,
            keep_type=exception_type,
            notes="Superseded by a newer matching attempt",
            commit=False,
        )
        if superseded or dismissed:
            logger.info(
                f"Superseded {len(superseded)} match(es) and {dismissed} exception(s) for transaction {transaction.id}",
                extra={"bank_transaction_id": transaction.id}
            )

    def _review_exception_type(self, candidate: ScoredCandidate) -> ExceptionType:
        if candidate.amount_difference >= EXACT_AMOUNT_TOLERANCE:
            return ExceptionType.AMOUNT_MISMATCH
        days = candidate.date_difference_days
        if days is not None and abs(days) > DATE_MISMATCH_DAYS:
            return ExceptionType.DATE_MISMATCH
        return ExceptionType.UNMATCHED

    def _match_values(self, transaction: BankTransaction, candidate: ScoredCandidate, considered: int) -> Dict[str, Any]:
        return {
            "tenant_id": transaction.tenant_id,
            "bank_transaction_id": transaction.id,
            "document_id": candidate.document_id,
            "ledger_entry_id": candidate.ledger_entry_id,
            "match_type": candidate.match_type.value,
            "tier": candidate.tier.value,
            "confidence_score": candidate.confidence_score,
            "match_signals": candidate.signals.to_dict(),
            "reason": candidate.reason,
            "amount_difference": candidate.amount_difference,
            "date_difference_days": candidate.date_difference_days,
            "candidates_considered": considered,
        }

    def _outcome(
        self,
        transaction: BankTransaction,
        candidate: ScoredCandidate,
        considered: int,
        status: MatchStatus,
        match_id: str,
    ) -> MatchOutcome:
        return MatchOutcome(
            bank_transaction_id=transaction.id,
            status=status,
            match_id=match_id,
            tier=candidate.tier,
            confidence_score=candidate.confidence_score,
            match_type=candidate.match_type,
            document_id=candidate.document_id,
            ledger_entry_id=candidate.ledger_entry_id,
            reason=candidate.reason,
            candidates_considered=considered,
        )
