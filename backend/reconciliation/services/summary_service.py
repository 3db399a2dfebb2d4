"""
Reconciliation Summary

Read-only rollups over persisted transaction, match and exception state
for dashboards.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, case, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankTransactionDB,
    LedgerEntryDB,
    ReconciliationMatchDB,
    ReconciliationExceptionDB,
)
from reconciliation.domain import ACTIVE_EXCEPTION_STATUSES, ExceptionSeverity, MatchStatus

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationSummary:
    total_transactions: int
    reconciled_transactions: int
    pending_transactions: int
    pending_amount: float
    auto_match_rate: float
    ledger_pending_entries: int
    last_reconciled_at: Optional[str]
    open_exceptions: int
    critical_exceptions: int
    avg_time_to_reconcile_hours: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrendPoint:
    date: str
    total_transactions: int
    reconciled_transactions: int
    pending_transactions: int
    open_exceptions: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SummaryService:
    """Dashboard rollups for one tenant."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_summary(self, tenant_id: str) -> ReconciliationSummary:
        txn_result = await self.db.execute(
            select(
                func.count(BankTransactionDB.id),
                func.sum(case((BankTransactionDB.reconciled.is_(True), 1), else_=0)),
                func.sum(case((BankTransactionDB.reconciled.is_(False), func.abs(BankTransactionDB.amount)), else_=0)),
                func.max(BankTransactionDB.reconciled_at),
            ).where(BankTransactionDB.tenant_id == tenant_id)
        )
        total, reconciled, pending_amount, last_reconciled_at = txn_result.one()
        total = int(total or 0)
        reconciled = int(reconciled or 0)

        auto_matched = await self.db.scalar(
            select(func.count(distinct(ReconciliationMatchDB.bank_transaction_id))).where(
                ReconciliationMatchDB.tenant_id == tenant_id,
                ReconciliationMatchDB.status == MatchStatus.MATCHED.value,
                ReconciliationMatchDB.auto_matched.is_(True),
            )
        )

        ledger_pending = await self.db.scalar(
            select(func.count(LedgerEntryDB.id)).where(
                LedgerEntryDB.tenant_id == tenant_id,
                LedgerEntryDB.reconciled.is_(False),
            )
        )

        exc_result = await self.db.execute(
            select(
                func.count(ReconciliationExceptionDB.id),
                func.sum(case((ReconciliationExceptionDB.severity == ExceptionSeverity.CRITICAL.value, 1), else_=0)),
            ).where(
                ReconciliationExceptionDB.tenant_id == tenant_id,
                ReconciliationExceptionDB.status.in_(ACTIVE_EXCEPTION_STATUSES),
            )
        )
        open_exceptions, critical_exceptions = exc_result.one()

        return ReconciliationSummary(
            total_transactions=total,
            reconciled_transactions=reconciled,
            pending_transactions=total - reconciled,
            pending_amount=round(float(pending_amount or 0), 2),
            auto_match_rate=round((auto_matched or 0) / total, 4) if total else 0.0,
            ledger_pending_entries=int(ledger_pending or 0),
            last_reconciled_at=_as_utc(last_reconciled_at).isoformat() if last_reconciled_at else None,
            open_exceptions=int(open_exceptions or 0),
            critical_exceptions=int(critical_exceptions or 0),
            avg_time_to_reconcile_hours=await self._avg_time_to_reconcile_hours(tenant_id),
        )

    async def get_trends(self, tenant_id: str, days: int = 30, today: Optional[date] = None) -> List[TrendPoint]:
        """One point per day for the last `days` days, oldest first."""
        end = today or datetime.now(timezone.utc).date()
        start = end - timedelta(days=days - 1)

        txn_result = await self.db.execute(
            select(
                BankTransactionDB.date,
                func.count(BankTransactionDB.id),
                func.sum(case((BankTransactionDB.reconciled.is_(True), 1), else_=0)),
            )
            .where(
                BankTransactionDB.tenant_id == tenant_id,
                BankTransactionDB.date.between(start, end),
            )
            .group_by(BankTransactionDB.date)
        )
        activity = {row[0]: (int(row[1]), int(row[2] or 0)) for row in txn_result.all()}

        exc_result = await self.db.execute(
            select(ReconciliationExceptionDB.created_at).where(
                ReconciliationExceptionDB.tenant_id == tenant_id,
                ReconciliationExceptionDB.status.in_(ACTIVE_EXCEPTION_STATUSES),
                ReconciliationExceptionDB.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc),
            )
        )
        open_by_day = defaultdict(int)
        for (created_at,) in exc_result.all():
            open_by_day[_as_utc(created_at).date()] += 1

        points = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            day_total, day_reconciled = activity.get(day, (0, 0))
            points.append(TrendPoint(
                date=day.isoformat(),
                total_transactions=day_total,
                reconciled_transactions=day_reconciled,
                pending_transactions=day_total - day_reconciled,
                open_exceptions=open_by_day.get(day, 0),
            ))
        return points

    async def _avg_time_to_reconcile_hours(self, tenant_id: str) -> Optional[float]:
        result = await self.db.execute(
            select(BankTransactionDB.date, BankTransactionDB.reconciled_at).where(
                BankTransactionDB.tenant_id == tenant_id,
                BankTransactionDB.reconciled.is_(True),
                BankTransactionDB.reconciled_at.is_not(None),
            )
        )
        durations = [
            (_as_utc(reconciled_at) - datetime.combine(txn_date, time.min, tzinfo=timezone.utc)).total_seconds()
            for txn_date, reconciled_at in result.all()
        ]
        if not durations:
            return None
        return round(sum(durations) / len(durations) / 3600, 2)
