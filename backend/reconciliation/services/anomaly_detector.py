"""
Anomaly Detector

Scans a tenant's unreconciled bank transactions for patterns a reviewer
should look at even when matching found nothing wrong:
- duplicates: several lines with the same account, date and amount
- unusual spend: amounts well above the tenant's recent history
- missing documents: lines left without a receipt for weeks
- weekend spend: large payments made on a Saturday or Sunday

Each finding carries a 0-1 anomaly score. process_anomalies turns findings
into exceptions, whose severity follows from the score.
"""

import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import BankTransactionDB
from reconciliation.domain import ExceptionType, ExceptionSeverity
from reconciliation.services.exception_manager import ExceptionManager
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

DETECTION_WINDOW_DAYS = 30
HISTORY_WINDOW_DAYS = 90
DEFAULT_MIN_SCORE = 0.5

UNUSUAL_SPEND_SIGMAS = 2.0
MIN_HISTORY_SAMPLES = 5

MISSING_DOCUMENT_MIN_AMOUNT = Decimal("10")
MISSING_DOCUMENT_GRACE_DAYS = 7
# A missing receipt alone never reaches the critical band
MISSING_DOCUMENT_MAX_SCORE = 0.9

WEEKEND_MIN_AMOUNT = Decimal("100")
WEEKEND_SCORE = 0.6


@dataclass
class Anomaly:
    """One finding, before it becomes an exception."""
    exception_type: ExceptionType
    score: float
    description: str
    bank_transaction_id: str
    related_transaction_ids: List[str] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)
    severity: Optional[ExceptionSeverity] = None

    def playbook(self) -> List[Dict[str, Any]]:
        return [
            {"step": index, "action": "_".join(action.lower().split()), "description": action}
            for index, action in enumerate(self.suggested_actions, start=1)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exception_type": self.exception_type.value,
            "score": round(self.score, 4),
            "description": self.description,
            "bank_transaction_id": self.bank_transaction_id,
            "related_transaction_ids": self.related_transaction_ids,
            "suggested_actions": self.suggested_actions,
        }


def _magnitude(row: BankTransactionDB) -> Decimal:
    return abs(Decimal(row.amount))


class AnomalyDetector:
    """
    Service for detecting anomalies in bank transactions.

    Detection is read-only; process_anomalies writes exceptions and commits
    each one on its own, so one bad finding does not lose the others.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def detect_anomalies(
        self,
        tenant_id: str,
        as_of: Optional[date] = None,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> List[Anomaly]:
        """All findings scoring at least min_score, highest score first."""
        as_of = as_of or date.today()
        history = await self._load_transactions(tenant_id, as_of - timedelta(days=HISTORY_WINDOW_DAYS), as_of)
        window_start = as_of - timedelta(days=DETECTION_WINDOW_DAYS)
        recent = [row for row in history if row.date >= window_start and not row.reconciled]

        anomalies: List[Anomaly] = []
        anomalies.extend(self.detect_duplicates(recent))
        anomalies.extend(self.detect_unusual_spend(history, recent))
        anomalies.extend(self.detect_missing_documents(
            [row for row in history if not row.reconciled], as_of
        ))
        anomalies.extend(self.detect_weekend_spend(recent))

        found = [a for a in anomalies if a.score >= min_score]
        found.sort(key=lambda a: a.score, reverse=True)
        logger.info(
            f"Anomaly scan found {len(found)} of {len(anomalies)} findings at score >= {min_score}",
            extra={"tenant_id": tenant_id, "as_of": as_of.isoformat()}
        )
        return found

    def detect_duplicates(self, rows: List[BankTransactionDB]) -> List[Anomaly]:
        groups: Dict[tuple, List[BankTransactionDB]] = defaultdict(list)
        for row in rows:
            groups[(row.account_id, row.date, Decimal(row.amount))].append(row)

        anomalies = []
        for (_, on_date, amount), members in groups.items():
            if len(members) < 2:
                continue
            members.sort(key=lambda r: (r.created_at is None, r.created_at, r.id))
            # The latest line is the suspected duplicate
            suspect = members[-1]
            anomalies.append(Anomaly(
                exception_type=ExceptionType.DUPLICATE,
                score=min(1.0, len(members) / 3),
                description=f"{len(members)} transactions of {amount} on {on_date.isoformat()}",
                bank_transaction_id=suspect.id,
                related_transaction_ids=[r.id for r in members[:-1]],
                suggested_actions=[
                    "Review transactions to identify duplicates",
                    "Verify if transactions are legitimate",
                    "Remove or void duplicate entries",
                ],
            ))
        return anomalies

    def detect_unusual_spend(
        self,
        history: List[BankTransactionDB],
        candidates: List[BankTransactionDB],
    ) -> List[Anomaly]:
        """
        Flag amounts more than two standard deviations above the mean of
        the tenant's other transactions; the candidate is left out of its
        own baseline. Candidates must be drawn from history.
        """
        if len(history) <= MIN_HISTORY_SAMPLES:
            return []

        values = {row.id: float(_magnitude(row)) for row in history}

        anomalies = []
        for row in candidates:
            value = values[row.id]
            baseline = [v for other_id, v in values.items() if other_id != row.id]
            mean = statistics.fmean(baseline)
            stddev = statistics.pstdev(baseline, mean)
            if stddev == 0 or value <= mean + UNUSUAL_SPEND_SIGMAS * stddev:
                continue

            z_score = (value - mean) / stddev
            anomalies.append(Anomaly(
                exception_type=ExceptionType.UNUSUAL_SPEND,
                score=min(1.0, max(0.0, (z_score - UNUSUAL_SPEND_SIGMAS) / 3)),
                description=f"Unusual spend of {_magnitude(row)} ({z_score:.1f} standard deviations above average)",
                bank_transaction_id=row.id,
                suggested_actions=[
                    "Verify transaction authorization",
                    "Check if transaction is legitimate",
                    "Compare with recent spend at this merchant",
                ],
            ))
        return anomalies

    def detect_missing_documents(self, rows: List[BankTransactionDB], as_of: date) -> List[Anomaly]:
        anomalies = []
        for row in rows:
            if _magnitude(row) <= MISSING_DOCUMENT_MIN_AMOUNT:
                continue
            days_old = (as_of - row.date).days
            if days_old <= MISSING_DOCUMENT_GRACE_DAYS:
                continue
            anomalies.append(Anomaly(
                exception_type=ExceptionType.MISSING_DOCUMENT,
                score=min(MISSING_DOCUMENT_MAX_SCORE, days_old / DETECTION_WINDOW_DAYS),
                description=f"No document for {_magnitude(row)} from {days_old} days ago",
                bank_transaction_id=row.id,
                suggested_actions=[
                    "Request receipt or invoice from vendor",
                    "Check if document was uploaded but not matched",
                    "Add note explaining missing document",
                ],
            ))
        return anomalies

    def detect_weekend_spend(self, rows: List[BankTransactionDB]) -> List[Anomaly]:
        return [
            Anomaly(
                exception_type=ExceptionType.ANOMALY,
                score=WEEKEND_SCORE,
                description=f"Weekend transaction of {_magnitude(row)} on {row.date.isoformat()}",
                bank_transaction_id=row.id,
                suggested_actions=[
                    "Verify if weekend transaction is expected",
                    "Check if transaction date is correct",
                    "Review transaction authorization",
                ],
                severity=ExceptionSeverity.MEDIUM,
            )
            for row in rows
            if row.date.weekday() >= 5 and _magnitude(row) > WEEKEND_MIN_AMOUNT
        ]

    async def process_anomalies(self, tenant_id: str, anomalies: List[Anomaly]) -> List[str]:
        """
        Raise an exception per finding. An open exception of the same type on
        the same transaction is reused. Returns the exception ids.
        """
        manager = ExceptionManager(self.db)
        exception_ids: List[str] = []
        for anomaly in anomalies:
            try:
                exception = await manager.create_exception(
                    tenant_id,
                    anomaly.exception_type,
                    description=anomaly.description,
                    bank_transaction_id=anomaly.bank_transaction_id,
                    anomaly_score=anomaly.score,
                    severity=anomaly.severity,
                    remediation_playbook=anomaly.playbook(),
                )
                exception_ids.append(exception.id)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    f"Failed to raise exception for {anomaly.exception_type.value} anomaly: {e}",
                    extra={"bank_transaction_id": anomaly.bank_transaction_id},
                    exc_info=True,
                )
                capture_exception(e, tenant_id=tenant_id, bank_transaction_id=anomaly.bank_transaction_id)

        logger.info(
            f"Anomalies processed: {len(exception_ids)} of {len(anomalies)} raised as exceptions",
            extra={"tenant_id": tenant_id}
        )
        return exception_ids

    async def scan(
        self,
        tenant_id: str,
        as_of: Optional[date] = None,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> Dict[str, Any]:
        anomalies = await self.detect_anomalies(tenant_id, as_of=as_of, min_score=min_score)
        exception_ids = await self.process_anomalies(tenant_id, anomalies)
        return {
            "tenant_id": tenant_id,
            "anomalies": [a.to_dict() for a in anomalies],
            "exception_ids": exception_ids,
        }

    async def _load_transactions(self, tenant_id: str, date_from: date, date_to: date) -> List[BankTransactionDB]:
        result = await self.db.execute(
            select(BankTransactionDB).where(
                BankTransactionDB.tenant_id == tenant_id,
                BankTransactionDB.date.between(date_from, date_to),
            )
        )
        return list(result.scalars().all())
