"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- POST /api/reconciliation/match - Match one bank transaction
- GET /api/reconciliation/candidates/{tenant_id}/{bank_transaction_id} - Preview scored candidates
- POST /api/reconciliation/reconcile - Reconcile unmatched transactions for a tenant
- POST /api/reconciliation/reconcile/statement - Reconcile one account statement period
- GET /api/reconciliation/matches/{tenant_id} - List matches for a tenant
- GET /api/reconciliation/match/{match_id} - Get a single match
- POST /api/reconciliation/match/{match_id}/confirm - Confirm a proposed match
- POST /api/reconciliation/match/{match_id}/reject - Reject or unmatch a match
- GET /api/reconciliation/exceptions/{tenant_id} - List exceptions
- GET /api/reconciliation/exception/{exception_id} - Get a single exception
- POST /api/reconciliation/exception/{exception_id}/assign - Assign an exception
- POST /api/reconciliation/exception/{exception_id}/resolve - Resolve an exception
- POST /api/reconciliation/exception/{exception_id}/dismiss - Dismiss an exception
- POST /api/reconciliation/anomalies/{tenant_id}/scan - Detect anomalies and raise exceptions
- GET/PUT /api/reconciliation/thresholds/{tenant_id} - Read or override thresholds
- POST /api/reconciliation/thresholds/{tenant_id}/feedback - Learn from reviewer feedback
- POST /api/reconciliation/thresholds/initialize - Default thresholds for many tenants
- GET /api/reconciliation/summary/{tenant_id} - Dashboard summary
- GET /api/reconciliation/trends/{tenant_id} - Daily trend points
- GET /api/reconciliation/status - Module status
"""

import os
import logging
from typing import Optional, List, Dict
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db, get_session_factory
from reconciliation.domain import MatchStatus, ExceptionStatus, ExceptionSeverity, ExceptionType
from reconciliation.errors import NotFoundError, InvalidTransitionError, ThresholdConfigurationError
from reconciliation.matching_rules.scoring import SignalWeights
from reconciliation.matching_rules.signals import SIGNAL_NAMES
from reconciliation.thresholds.models import MatchingThresholds, FeedbackItem
from reconciliation.thresholds.store import ThresholdStore
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.anomaly_detector import AnomalyDetector, DEFAULT_MIN_SCORE
from reconciliation.services.exception_manager import ExceptionManager, exception_to_dict
from reconciliation.services.summary_service import SummaryService
from utils.validation_errors import (
    validate_required_uuid,
    validate_optional_enum,
    validate_uuid_list,
    raise_invalid_configuration,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class MatchTransactionRequest(BaseModel):
    """Request to match a single bank transaction."""
    tenant_id: str = Field(..., description="Tenant ID")
    bank_transaction_id: str = Field(..., description="Bank transaction ID")


class RunReconciliationRequest(BaseModel):
    """Request to reconcile a tenant's unreconciled transactions."""
    tenant_id: str = Field(..., description="Tenant ID")
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum transactions to process")


class StatementReconciliationRequest(BaseModel):
    """Request to reconcile one bank account statement period."""
    tenant_id: str = Field(..., description="Tenant ID")
    account_id: str = Field(..., description="Bank account ID")
    date_from: Optional[date] = Field(default=None, description="Statement period start (inclusive)")
    date_to: Optional[date] = Field(default=None, description="Statement period end (inclusive)")
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum transactions to process")


class RejectMatchRequest(BaseModel):
    """Request to reject a match."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


class AssignExceptionRequest(BaseModel):
    assigned_to: str = Field(..., min_length=1, description="User the exception is assigned to")


class CloseExceptionRequest(BaseModel):
    """Resolution or dismissal notes."""
    notes: Optional[str] = Field(default=None, description="Resolution notes")


class ThresholdsRequest(BaseModel):
    """Admin override of a tenant's thresholds."""
    auto_match: float = Field(..., description="Auto-match cutoff")
    suggest_match: float = Field(..., description="Suggest-match cutoff")
    signal_weights: Optional[Dict[str, float]] = Field(
        default=None,
        description="Weights for amount, date, vendor, ocr_confidence, description"
    )


class FeedbackItemRequest(BaseModel):
    match_id: str
    accepted: bool
    confidence_score: float = Field(..., ge=0, le=1)
    signals: Dict[str, float] = Field(default_factory=dict)

    @field_validator("signals")
    @classmethod
    def check_signals(cls, value: Dict[str, float]) -> Dict[str, float]:
        unknown = sorted(set(value) - set(SIGNAL_NAMES))
        if unknown:
            raise ValueError(f"Unknown signals: {unknown}; expected a subset of {list(SIGNAL_NAMES)}")
        out_of_range = sorted(name for name, score in value.items() if not 0.0 <= score <= 1.0)
        if out_of_range:
            raise ValueError(f"Signal scores must be within [0, 1]: {out_of_range}")
        return value


class FeedbackRequest(BaseModel):
    """Reviewer feedback for threshold learning."""
    feedback: List[FeedbackItemRequest] = Field(default_factory=list)
    collect_from_events: bool = Field(
        default=False,
        description="Also rebuild feedback from reviewer confirm/reject events"
    )
    since: Optional[datetime] = Field(default=None, description="Only events after this time")


class InitializeThresholdsRequest(BaseModel):
    tenant_ids: List[str] = Field(..., description="Tenants to initialize")


class AnomalyScanRequest(BaseModel):
    """Anomaly scan options."""
    as_of: Optional[date] = Field(default=None, description="Scan date; defaults to today")
    min_score: float = Field(default=DEFAULT_MIN_SCORE, ge=0, le=1, description="Lowest anomaly score reported")
    raise_exceptions: bool = Field(default=True, description="Create exceptions for the findings")


# ==================== Authentication ====================

def get_internal_api_keys() -> List[str]:
    """Get list of valid internal API keys."""
    primary_key = os.environ.get('INTERNAL_API_KEY', '')
    legacy_keys = os.environ.get('INTERNAL_API_KEYS', '')

    keys = []
    if primary_key:
        keys.append(primary_key)
    if legacy_keys:
        keys.extend([k.strip() for k in legacy_keys.split(',') if k.strip()])

    return keys


def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    valid_keys = get_internal_api_keys()

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


# ==================== Dependencies ====================

def get_reconciliation_service() -> ReconciliationService:
    """The orchestrator opens its own sessions, one per transaction."""
    return ReconciliationService(get_session_factory())


def _raise_for_error(e: Exception, action: str):
    """Map domain errors to HTTP responses."""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ThresholdConfigurationError):
        raise_invalid_configuration(str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail=f"{action} failed")


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "auto_matching": True,
            "statement_reconciliation": True,
            "exception_management": True,
            "threshold_learning": True,
            "batch_notifications": True
        },
        "match_statuses": [s.value for s in MatchStatus],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/match", summary="Match one bank transaction")
async def match_transaction(
    request: MatchTransactionRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Match a single bank transaction against documents and ledger entries.

    The best candidate is auto-matched, routed for review as an exception,
    or the transaction is recorded as unmatched. Matching an already
    reconciled transaction returns the existing match without changes.

    Requires internal API key authentication.
    """
    tenant_id = validate_required_uuid(request.tenant_id, "tenant_id")
    transaction_id = validate_required_uuid(request.bank_transaction_id, "bank_transaction_id")

    try:
        outcome = await service.match_transaction(tenant_id, transaction_id)
        if outcome is None:
            raise HTTPException(status_code=404, detail="Bank transaction not found")
        return outcome.to_dict()

    except Exception as e:
        _raise_for_error(e, "Transaction matching")


@router.get("/candidates/{tenant_id}/{bank_transaction_id}", summary="Preview match candidates")
async def preview_candidates(
    tenant_id: str,
    bank_transaction_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Scored candidates for a transaction, best first.

    Nothing is persisted. Useful for review workflows.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")
    validated_transaction_id = validate_required_uuid(bank_transaction_id, "bank_transaction_id")

    try:
        candidates = await service.preview_candidates(validated_tenant_id, validated_transaction_id)
        if candidates is None:
            raise HTTPException(status_code=404, detail="Bank transaction not found")

        return {
            "tenant_id": validated_tenant_id,
            "bank_transaction_id": validated_transaction_id,
            "candidates": [c.to_dict() for c in candidates],
            "count": len(candidates)
        }

    except Exception as e:
        _raise_for_error(e, "Candidate preview")


@router.post("/reconcile", summary="Reconcile unmatched transactions")
async def reconcile_unmatched(
    request: RunReconciliationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reconcile the most recent unreconciled transactions for a tenant.

    A failure on one transaction is logged and counted as unmatched; the
    rest of the batch still runs.

    Requires internal API key authentication.
    """
    tenant_id = validate_required_uuid(request.tenant_id, "tenant_id")

    try:
        result = await service.reconcile_unmatched(tenant_id, limit=request.limit)
        return result.to_dict()

    except Exception as e:
        _raise_for_error(e, "Reconciliation run")


@router.post("/reconcile/statement", summary="Reconcile a statement period")
async def reconcile_statement(
    request: StatementReconciliationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """Reconcile the unreconciled lines of one bank account over a date range."""
    tenant_id = validate_required_uuid(request.tenant_id, "tenant_id")

    if request.date_from and request.date_to and request.date_from > request.date_to:
        raise HTTPException(status_code=400, detail="date_from must be on or before date_to")

    try:
        result = await service.reconcile_statement(
            tenant_id,
            request.account_id,
            date_from=request.date_from,
            date_to=request.date_to,
            limit=request.limit
        )
        return result.to_dict()

    except Exception as e:
        _raise_for_error(e, "Statement reconciliation")


@router.get("/matches/{tenant_id}", summary="Get matches for tenant")
async def get_matches(
    tenant_id: str,
    status: Optional[str] = Query(default=None, description="Filter by status"),
    bank_transaction_id: Optional[str] = Query(default=None, description="Filter by bank transaction"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Get reconciliation matches for a tenant, newest first.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")
    validate_optional_enum(status, MatchStatus, "status")

    try:
        matches = await service.list_matches(
            validated_tenant_id,
            status=status,
            bank_transaction_id=bank_transaction_id,
            limit=limit,
            offset=offset
        )

        return {
            "tenant_id": validated_tenant_id,
            "matches": matches,
            "count": len(matches),
            "limit": limit,
            "offset": offset
        }

    except Exception as e:
        _raise_for_error(e, "Match listing")


@router.get("/match/{match_id}", summary="Get single match")
async def get_match(
    match_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth: bool = Depends(verify_internal_auth)
):
    try:
        match = await service.get_match(match_id)

        if not match:
            raise HTTPException(status_code=404, detail="Match not found")

        return match

    except Exception as e:
        _raise_for_error(e, "Match lookup")


@router.post("/match/{match_id}/confirm", summary="Confirm match")
async def confirm_match(
    match_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Confirm a match that is awaiting review.

    The transaction and its counterpart are reconciled; 409 if either was
    reconciled elsewhere in the meantime.

    Requires internal API key authentication.
    """
    try:
        result = await service.confirm_match(match_id, actor_id=x_user_id)

        return {
            "success": True,
            "message": "Match confirmed",
            "match": result
        }

    except Exception as e:
        _raise_for_error(e, "Match confirmation")


@router.post("/match/{match_id}/reject", summary="Reject match")
async def reject_match(
    match_id: str,
    request: RejectMatchRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reject a proposed match, or unmatch an accepted one.

    Requires internal API key authentication.
    """
    try:
        result = await service.reject_match(match_id, actor_id=x_user_id, reason=request.reason)

        return {
            "success": True,
            "message": "Match rejected",
            "match": result
        }

    except Exception as e:
        _raise_for_error(e, "Match rejection")


# ==================== Exceptions ====================

@router.get("/exceptions/{tenant_id}", summary="List exceptions")
async def list_exceptions(
    tenant_id: str,
    status: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    exception_type: Optional[str] = Query(default=None),
    assigned_to: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    List exceptions for a tenant, critical first.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")
    validate_optional_enum(status, ExceptionStatus, "status")
    validate_optional_enum(severity, ExceptionSeverity, "severity")
    validate_optional_enum(exception_type, ExceptionType, "exception_type")

    try:
        manager = ExceptionManager(db)
        exceptions = await manager.list_exceptions(
            validated_tenant_id,
            status=status,
            severity=severity,
            exception_type=exception_type,
            assigned_to=assigned_to,
            limit=limit
        )

        return {
            "tenant_id": validated_tenant_id,
            "exceptions": [exception_to_dict(e) for e in exceptions],
            "count": len(exceptions)
        }

    except Exception as e:
        _raise_for_error(e, "Exception listing")


@router.get("/exception/{exception_id}", summary="Get single exception")
async def get_exception(
    exception_id: str,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    try:
        exception = await ExceptionManager(db).get_exception(exception_id)
        return exception_to_dict(exception)

    except Exception as e:
        _raise_for_error(e, "Exception lookup")


@router.post("/exception/{exception_id}/assign", summary="Assign exception")
async def assign_exception(
    exception_id: str,
    request: AssignExceptionRequest,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """Assign an open exception; it moves to in_progress."""
    try:
        exception = await ExceptionManager(db).assign_exception(exception_id, request.assigned_to)
        return exception_to_dict(exception)

    except Exception as e:
        _raise_for_error(e, "Exception assignment")


@router.post("/exception/{exception_id}/resolve", summary="Resolve exception")
async def resolve_exception(
    exception_id: str,
    request: CloseExceptionRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Resolve an active exception.

    The acting user (X-User-Id) is required and recorded with the notes.

    Requires internal API key authentication.
    """
    try:
        exception = await ExceptionManager(db).resolve_exception(exception_id, x_user_id, notes=request.notes)
        return exception_to_dict(exception)

    except Exception as e:
        _raise_for_error(e, "Exception resolution")


@router.post("/exception/{exception_id}/dismiss", summary="Dismiss exception")
async def dismiss_exception(
    exception_id: str,
    request: CloseExceptionRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    try:
        exception = await ExceptionManager(db).dismiss_exception(exception_id, x_user_id, notes=request.notes)
        return exception_to_dict(exception)

    except Exception as e:
        _raise_for_error(e, "Exception dismissal")


# ==================== Thresholds ====================

@router.get("/thresholds/{tenant_id}", summary="Get matching thresholds")
async def get_thresholds(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """Current thresholds for a tenant; defaults are created on first read."""
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        thresholds = await ThresholdStore(db).get_thresholds(validated_tenant_id)
        return {"tenant_id": validated_tenant_id, **thresholds.to_dict()}

    except Exception as e:
        _raise_for_error(e, "Threshold lookup")


@router.put("/thresholds/{tenant_id}", summary="Override matching thresholds")
async def set_thresholds(
    tenant_id: str,
    request: ThresholdsRequest,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Replace a tenant's cutoffs and, optionally, its signal weights.

    Cutoffs must lie in [0.3, 0.95] with auto_match >= suggest_match, and
    weights must be non-negative with a positive sum; otherwise 422.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        store = ThresholdStore(db)
        current = await store.get_thresholds(validated_tenant_id)
        weights = (
            SignalWeights.from_dict(request.signal_weights)
            if request.signal_weights is not None
            else current.signal_weights
        )
        updated = await store.set_thresholds(
            validated_tenant_id,
            MatchingThresholds(
                auto_match=request.auto_match,
                suggest_match=request.suggest_match,
                signal_weights=weights,
                learned_from_samples=current.learned_from_samples,
            )
        )
        return {"tenant_id": validated_tenant_id, **updated.to_dict()}

    except Exception as e:
        _raise_for_error(e, "Threshold update")


@router.post("/thresholds/initialize", summary="Initialize thresholds for tenants")
async def initialize_thresholds(
    request: InitializeThresholdsRequest,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    tenant_ids = validate_uuid_list(request.tenant_ids, "tenant_ids")

    try:
        created = await ThresholdStore(db).initialize_for_all_tenants(tenant_ids)
        return {"tenants": len(tenant_ids), "created": created}

    except Exception as e:
        _raise_for_error(e, "Threshold initialization")


@router.post("/thresholds/{tenant_id}/feedback", summary="Learn thresholds from feedback")
async def learn_from_feedback(
    tenant_id: str,
    request: FeedbackRequest,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Adjust a tenant's thresholds from reviewer decisions.

    Feedback may be posted directly, rebuilt from the reviewer confirm and
    reject events, or both. An empty batch leaves thresholds unchanged.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        store = ThresholdStore(db)
        feedback = [FeedbackItem.from_dict(item.model_dump()) for item in request.feedback]
        if request.collect_from_events:
            feedback.extend(await store.collect_review_feedback(validated_tenant_id, since=request.since))

        thresholds = await store.learn_from_feedback(validated_tenant_id, feedback)
        return {
            "tenant_id": validated_tenant_id,
            "feedback_count": len(feedback),
            **thresholds.to_dict()
        }

    except Exception as e:
        _raise_for_error(e, "Threshold learning")


# ==================== Anomalies ====================

@router.post("/anomalies/{tenant_id}/scan", summary="Scan for anomalies")
async def scan_anomalies(
    tenant_id: str,
    request: AnomalyScanRequest,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Scan unreconciled transactions for duplicates, unusual spend, missing
    documents and weekend spend. Findings are raised as scored exceptions
    unless raise_exceptions is false.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        detector = AnomalyDetector(db)
        if request.raise_exceptions:
            return await detector.scan(validated_tenant_id, as_of=request.as_of, min_score=request.min_score)

        anomalies = await detector.detect_anomalies(
            validated_tenant_id, as_of=request.as_of, min_score=request.min_score
        )
        return {
            "tenant_id": validated_tenant_id,
            "anomalies": [a.to_dict() for a in anomalies],
            "exception_ids": [],
        }

    except Exception as e:
        _raise_for_error(e, "Anomaly scan")


# ==================== Reporting ====================

@router.get("/summary/{tenant_id}", summary="Reconciliation summary")
async def get_summary(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Dashboard summary for a tenant.

    Counts, pending amount, auto-match rate, open and critical exceptions,
    and average time to reconcile.

    Requires internal API key authentication.
    """
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        summary = await SummaryService(db).get_summary(validated_tenant_id)
        return {"tenant_id": validated_tenant_id, **summary.to_dict()}

    except Exception as e:
        _raise_for_error(e, "Summary")


@router.get("/trends/{tenant_id}", summary="Reconciliation trends")
async def get_trends(
    tenant_id: str,
    days: int = Query(default=30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    validated_tenant_id = validate_required_uuid(tenant_id, "tenant_id")

    try:
        points = await SummaryService(db).get_trends(validated_tenant_id, days=days)
        return {
            "tenant_id": validated_tenant_id,
            "days": days,
            "trends": [p.to_dict() for p in points]
        }

    except Exception as e:
        _raise_for_error(e, "Trends")
