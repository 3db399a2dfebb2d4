"""
Threshold Store

Per-tenant MatchingThresholds, persisted in matching_thresholds. Reads are
get-or-create with the system defaults; writes are upserts keyed by tenant.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import MatchingThresholdsDB, ReconciliationMatchDB
from reconciliation.domain import ReconciliationEventType
from reconciliation.matching_rules.signals import MatchSignals
from reconciliation.services.ledger_store import ReconciliationStore
from reconciliation.thresholds.learner import apply_feedback
from reconciliation.thresholds.models import (
    MatchingThresholds,
    FeedbackItem,
    DEFAULT_THRESHOLDS,
    thresholds_from_row,
)

logger = logging.getLogger(__name__)


class ThresholdStore:
    """Repository for tenant thresholds."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_thresholds(self, tenant_id: str) -> MatchingThresholds:
        row = await self._get_row(tenant_id)
        if row is not None:
            return thresholds_from_row(row)

        self.db.add(self._new_row(tenant_id, DEFAULT_THRESHOLDS))
        try:
            await self.db.commit()
            logger.info(f"Initialized default matching thresholds for tenant {tenant_id}")
        except IntegrityError:
            # Created concurrently by another worker
            await self.db.rollback()
            row = await self._get_row(tenant_id)
            return thresholds_from_row(row)

        return DEFAULT_THRESHOLDS

    async def set_thresholds(self, tenant_id: str, thresholds: MatchingThresholds) -> MatchingThresholds:
        """Validated upsert (admin override or learner output)."""
        thresholds.validate()

        row = await self._get_row(tenant_id)
        if row is None:
            self.db.add(self._new_row(tenant_id, thresholds))
        else:
            row.auto_match = thresholds.auto_match
            row.suggest_match = thresholds.suggest_match
            row.signal_weights = thresholds.signal_weights.to_dict()
            row.learned_from_samples = thresholds.learned_from_samples

        await self.db.commit()
        logger.info(
            f"Matching thresholds updated for tenant {tenant_id}",
            extra={"thresholds": thresholds.to_dict()}
        )
        return thresholds

    async def learn_from_feedback(self, tenant_id: str, feedback: List[FeedbackItem]) -> MatchingThresholds:
        current = await self.get_thresholds(tenant_id)
        if not feedback:
            return current

        updated = apply_feedback(current, feedback)
        return await self.set_thresholds(tenant_id, updated)

    async def initialize_for_all_tenants(self, tenant_ids: Iterable[str]) -> int:
        """Create default thresholds for tenants that have none. Returns how many were created."""
        created = 0
        for tenant_id in tenant_ids:
            if await self._get_row(tenant_id) is None:
                await self.get_thresholds(tenant_id)
                created += 1
        return created

    async def collect_review_feedback(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[FeedbackItem]:
        """
        Rebuild feedback items from reviewer decisions in the event trail.

        manual_match events count as accepted, reviewer unmatch events as
        rejected. System events are ignored.
        """
        store = ReconciliationStore(self.db)
        events = await store.list_events(
            tenant_id,
            event_types=[ReconciliationEventType.MANUAL_MATCH, ReconciliationEventType.UNMATCH],
            since=since,
            limit=limit,
        )

        feedback = []
        for event in events:
            if event.performed_by == "system" or not event.match_id:
                continue

            signals = event.match_signals
            confidence = event.confidence_score
            if signals is None or confidence is None:
                match = await self.db.get(ReconciliationMatchDB, event.match_id)
                if match is None or match.match_signals is None:
                    continue
                signals = match.match_signals
                confidence = match.confidence_score

            feedback.append(FeedbackItem(
                match_id=event.match_id,
                accepted=event.event_type == ReconciliationEventType.MANUAL_MATCH.value,
                confidence_score=float(confidence),
                signals=MatchSignals.from_dict(signals),
            ))
        return feedback

    # ==================== Private Methods ====================

    async def _get_row(self, tenant_id: str) -> Optional[MatchingThresholdsDB]:
        result = await self.db.execute(
            select(MatchingThresholdsDB).where(MatchingThresholdsDB.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    def _new_row(self, tenant_id: str, thresholds: MatchingThresholds) -> MatchingThresholdsDB:
        return MatchingThresholdsDB(
            tenant_id=tenant_id,
            auto_match=thresholds.auto_match,
            suggest_match=thresholds.suggest_match,
            signal_weights=thresholds.signal_weights.to_dict(),
            learned_from_samples=thresholds.learned_from_samples,
        )
