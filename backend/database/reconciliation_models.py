"""
Reconciliation Engine - Database Models

Tables:
- bank_transactions: Bank feed lines awaiting reconciliation
- documents: Extracted accounting documents (receipts, invoices)
- ledger_entries: Posted ledger lines
- reconciliation_matches: Match outcomes (auto, suggested, manual, unmatched)
- reconciliation_exceptions: Items routed to human triage
- reconciliation_events: Append-only audit trail
- matching_thresholds: Per-tenant cutoffs and signal weights

Every row carries tenant_id. Status columns store enum values as plain
strings so the same schema works on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Boolean, Date, DateTime, Integer,
    Index, JSON, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== SOURCE RECORDS ====================

class BankTransactionDB(Base):
    """
    Bank feed transaction.

    amount is signed (negative for debits). Matching compares absolute values.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    account_id = Column(String(36), nullable=True, index=True)

    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="AUD")
    description = Column(Text, nullable=True)

    # Reconciliation state (only ever flipped false -> true by a conditional update)
    reconciled = Column(Boolean, nullable=False, default=False, index=True)
    reconciled_with_document = Column(String(36), nullable=True)
    reconciled_with_ledger = Column(String(36), nullable=True)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_bank_transactions_tenant_reconciled', 'tenant_id', 'reconciled'),
        Index('ix_bank_transactions_tenant_date', 'tenant_id', 'date'),
    )


class DocumentDB(Base):
    """Extracted document (receipt or invoice) with OCR confidence."""
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="extracted", index=True)  # extracted, classified, posted
    total_amount = Column(Numeric(14, 2), nullable=True)
    document_date = Column(Date, nullable=True)
    vendor = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=True)  # OCR confidence, 0-1

    reconciled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_documents_tenant_date', 'tenant_id', 'document_date'),
    )


class LedgerEntryDB(Base):
    """Posted ledger entry."""
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    transaction_date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    account_code = Column(String(50), nullable=True)

    reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_with = Column(String(36), nullable=True)  # bank_transactions.id

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_ledger_entries_tenant_reconciled', 'tenant_id', 'reconciled'),
        Index('ix_ledger_entries_tenant_date', 'tenant_id', 'transaction_date'),
    )


# ==================== ENGINE RECORDS ====================

class ReconciliationMatchDB(Base):
    """
    Outcome of matching one bank transaction.

    Unmatched outcomes are stored too so every pass leaves an audit record.
    At most one row per bank transaction has status 'matched'.
    """
    __tablename__ = "reconciliation_matches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    bank_transaction_id = Column(String(36), nullable=False, index=True)
    document_id = Column(String(36), nullable=True)
    ledger_entry_id = Column(String(36), nullable=True)

    match_type = Column(String(20), nullable=True)  # exact, partial, fuzzy, manual
    tier = Column(String(20), nullable=False, default="none")  # auto, suggest, manual, none
    confidence_score = Column(Float, nullable=False, default=0.0)
    match_signals = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    amount_difference = Column(Numeric(14, 2), nullable=True)
    date_difference_days = Column(Integer, nullable=True)
    candidates_considered = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, index=True)  # matched, pending, exception, unmatched, rejected
    auto_matched = Column(Boolean, nullable=False, default=False)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_matches_tenant_status', 'tenant_id', 'status'),
        Index('ix_recon_matches_txn_status', 'bank_transaction_id', 'status'),
    )


class ReconciliationExceptionDB(Base):
    """Item routed to human triage, with its remediation playbook."""
    __tablename__ = "reconciliation_exceptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)

    exception_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    bank_transaction_id = Column(String(36), nullable=True, index=True)
    document_id = Column(String(36), nullable=True)
    ledger_entry_id = Column(String(36), nullable=True)
    match_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=False)
    anomaly_score = Column(Float, nullable=True)
    remediation_playbook = Column(JSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default="open", index=True)  # open, in_progress, resolved, dismissed
    assigned_to = Column(String(255), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_exceptions_tenant_status', 'tenant_id', 'status'),
    )


class ReconciliationEventDB(Base):
    """
    Append-only audit trail.

    Rows are inserted and read, never updated or deleted.
    """
    __tablename__ = "reconciliation_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)

    event_type = Column(String(30), nullable=False, index=True)
    bank_transaction_id = Column(String(36), nullable=True, index=True)
    document_id = Column(String(36), nullable=True)
    ledger_entry_id = Column(String(36), nullable=True)
    match_id = Column(String(36), nullable=True)
    exception_id = Column(String(36), nullable=True)

    reason_code = Column(String(50), nullable=True)
    reason_description = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=True)
    match_signals = Column(JSON, nullable=True)
    performed_by = Column(String(255), nullable=False, default="system")
    performed_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index('ix_recon_events_tenant_time', 'tenant_id', 'performed_at'),
    )


class MatchingThresholdsDB(Base):
    """Per-tenant matching cutoffs and signal weights."""
    __tablename__ = "matching_thresholds"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, unique=True)

    auto_match = Column(Float, nullable=False)
    suggest_match = Column(Float, nullable=False)
    signal_weights = Column(JSON, nullable=False)
    learned_from_samples = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    last_updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


__all__ = [
    'generate_uuid', 'utc_now',
    'BankTransactionDB', 'DocumentDB', 'LedgerEntryDB',
    'ReconciliationMatchDB', 'ReconciliationExceptionDB', 'ReconciliationEventDB',
    'MatchingThresholdsDB',
]
