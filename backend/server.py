from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from sqlalchemy import inspect, text
import time
import uuid
import logging
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, validate_environment
from logging_config import setup_logging, get_logger, set_reconciliation_context, reset_reconciliation_context
from sentry_integration import init_sentry, capture_exception
from database import Base, init_db, get_engine
from reconciliation import reconciliation_router

settings = get_settings()

# JSON logs in production, plain text with tenant/run context elsewhere
setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production)
logger = get_logger(__name__)

if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=settings.API_VERSION,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify configuration and database before serving; dispose the pool on exit."""
    logger.info(f"Starting {settings.API_TITLE} v{settings.API_VERSION} ({settings.ENVIRONMENT})")
    logger.info(
        f"Matching window +/-{settings.RECON_DATE_WINDOW_DAYS} days, amount band {settings.RECON_AMOUNT_BAND:g}, "
        f"{settings.RECON_MAX_WORKERS} workers, batch limit {settings.RECON_BATCH_LIMIT}"
    )

    env_status = validate_environment()
    for error in env_status["errors"]:
        logger.error(f"Configuration Error: {error}")
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration Warning: {warning}")
    if not env_status["valid"] and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    await init_db()

    yield

    logger.info("Shutting down, disposing database engine")
    await get_engine().dispose()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Matches bank-feed transactions against accounting documents and ledger entries.

    ### Matching (/api/reconciliation)
    - Single transaction matching with candidate preview
    - Batch and statement-period reconciliation
    - Reviewer confirm / reject / unmatch

    ### Exceptions
    - Severity-ordered queue with remediation playbooks
    - Assign, resolve and dismiss

    ### Thresholds
    - Per-tenant auto/suggest cutoffs and signal weights
    - Learning from reviewer feedback

    ### Reporting
    - Dashboard summary and daily trends
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH ====================

async def check_database() -> dict:
    """Connectivity plus which reconciliation tables are missing."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
        table_names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    missing = sorted(set(Base.metadata.tables) - set(table_names))
    return {
        "status": "connected" if not missing else "degraded",
        "dialect": engine.dialect.name,
        "missing_tables": missing,
    }


@api_router.get("/", tags=["Health"])
async def root():
    return {
        "service": settings.API_TITLE,
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: database reachable and all reconciliation tables present
    - 503: database unreachable or tables missing
    """
    checks = {}
    healthy = True

    try:
        checks["database"] = await check_database()
        healthy = checks["database"]["status"] == "connected"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "disconnected", "error": str(e)}
        healthy = False

    checks["notifications"] = {
        "status": "configured" if settings.NOTIFICATION_SERVICE_URL else "log_only",
        "channels": settings.notification_channels,
    }

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@api_router.get("/health/ready", tags=["Health"])
async def readiness_check():
    """Readiness check: 200 only when the database accepts queries."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail={"status": "not_ready", "error": str(e)})
    return {"status": "ready", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check: the process is up. Dependencies are not checked."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/config/status", tags=["Health"])
async def config_status():
    """
    Non-sensitive configuration, including the matching engine tuning.
    Errors are hidden in production.
    """
    env_status = validate_environment()

    return {
        "environment": settings.ENVIRONMENT,
        "configuration_valid": env_status["valid"],
        "variables": env_status["variables"],
        "warnings": env_status["warnings"],
        "errors": env_status["errors"] if not settings.is_production else ["Hidden in production"],
        "matching": {
            "date_window_days": settings.RECON_DATE_WINDOW_DAYS,
            "amount_band": settings.RECON_AMOUNT_BAND,
            "max_workers": settings.RECON_MAX_WORKERS,
            "batch_limit": settings.RECON_BATCH_LIMIT,
        },
    }


api_router.include_router(reconciliation_router)
app.include_router(api_router)


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def request_context(request: Request, call_next):
    """
    Tag logs with the request ID and, when the caller sends X-Tenant-Id,
    the tenant. Slow or failed requests are logged with timing.
    """
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    context_tokens = set_reconciliation_context(tenant_id=request.headers.get("X-Tenant-Id"))

    try:
        response = await call_next(request)
    finally:
        reset_reconciliation_context(context_tokens)

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"

    if response.status_code >= 400 or elapsed_ms > 5000:
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)",
            extra={"request_id": request_id, "status_code": response.status_code}
        )
    elif settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code}")

    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Last resort for errors the routers did not map."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    event_id = capture_exception(exc, path=request.url.path, method=request.method)

    content = {"detail": "Internal server error", "event_id": event_id}
    if not settings.is_production:
        content.update(detail=str(exc), type=type(exc).__name__)
    return JSONResponse(status_code=500, content=content)
