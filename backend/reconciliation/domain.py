"""
Reconciliation Domain Types

Enums and in-process records shared by the matching rules,
the threshold learner and the services.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any


class MatchTier(str, Enum):
    """Classification of a scored candidate."""
    AUTO = "auto"        # Reconcile without review
    SUGGEST = "suggest"  # Propose for review
    MANUAL = "manual"    # Weak candidate, manual handling
    NONE = "none"        # Not a candidate


class MatchType(str, Enum):
    """Grade of an accepted or proposed pairing."""
    EXACT = "exact"      # confidence >= 0.9
    PARTIAL = "partial"  # confidence >= 0.75
    FUZZY = "fuzzy"      # anything lower
    MANUAL = "manual"    # Confirmed by a reviewer


class MatchStatus(str, Enum):
    """Lifecycle of a match record."""
    MATCHED = "matched"
    PENDING = "pending"
    EXCEPTION = "exception"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"


class CandidateSource(str, Enum):
    """Kind of record a bank transaction can be paired with."""
    DOCUMENT = "document"
    LEDGER_ENTRY = "ledger_entry"


class ExceptionType(str, Enum):
    UNMATCHED = "unmatched"
    DUPLICATE = "duplicate"
    MISSING_DOCUMENT = "missing_document"
    AMOUNT_MISMATCH = "amount_mismatch"
    DATE_MISMATCH = "date_mismatch"
    UNUSUAL_SPEND = "unusual_spend"
    ANOMALY = "anomaly"


class ExceptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExceptionStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


ACTIVE_EXCEPTION_STATUSES = (ExceptionStatus.OPEN.value, ExceptionStatus.IN_PROGRESS.value)

SEVERITY_RANK = {
    ExceptionSeverity.CRITICAL: 1,
    ExceptionSeverity.HIGH: 2,
    ExceptionSeverity.MEDIUM: 3,
    ExceptionSeverity.LOW: 4,
}


class ReconciliationEventType(str, Enum):
    """Audit trail event types"""
    MATCH = "match"
    UNMATCH = "unmatch"
    AUTO_MATCH = "auto_match"
    MANUAL_MATCH = "manual_match"
    EXCEPTION_CREATED = "exception_created"
    EXCEPTION_RESOLVED = "exception_resolved"


@dataclass(frozen=True)
class BankTransaction:
    """A bank feed line. amount is signed; matching uses its magnitude."""
    id: str
    tenant_id: str
    date: date
    amount: Decimal
    description: Optional[str] = None
    account_id: Optional[str] = None
    reconciled: bool = False

    @classmethod
    def from_row(cls, row) -> "BankTransaction":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            date=row.date,
            amount=Decimal(str(row.amount)),
            description=row.description,
            account_id=row.account_id,
            reconciled=bool(row.reconciled),
        )


@dataclass(frozen=True)
class MatchableRecord:
    """
    A document or ledger entry that may pair with a bank transaction.

    source_confidence is the OCR confidence for documents and 1.0 for
    ledger entries.
    """
    id: str
    source: CandidateSource
    amount: Decimal
    date: Optional[date]
    vendor: Optional[str] = None
    description: Optional[str] = None
    source_confidence: Optional[float] = None

    @classmethod
    def from_document(cls, row) -> "MatchableRecord":
        return cls(
            id=row.id,
            source=CandidateSource.DOCUMENT,
            amount=Decimal(str(row.total_amount or 0)),
            date=row.document_date,
            vendor=row.vendor,
            description=row.description or row.vendor,
            source_confidence=row.confidence_score,
        )

    @classmethod
    def from_ledger_entry(cls, row) -> "MatchableRecord":
        return cls(
            id=row.id,
            source=CandidateSource.LEDGER_ENTRY,
            amount=Decimal(str(row.amount)),
            date=row.transaction_date,
            vendor=None,
            description=row.description,
            source_confidence=1.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "amount": float(self.amount),
            "date": self.date.isoformat() if self.date else None,
            "vendor": self.vendor,
            "description": self.description,
        }
