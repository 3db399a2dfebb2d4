"""
Reconciliation Engine - Structured Logging

JSON lines in production, plain text elsewhere. Every record carries the
tenant and reconciliation run it belongs to, taken from context variables
that a batch run (or an HTTP request) sets once; worker tasks started with
asyncio.gather inherit a copy, so their records are tagged too.
"""

import logging
import json
import sys
import os
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

SERVICE_NAME = "recon-engine"

_tenant_id: ContextVar[Optional[str]] = ContextVar("recon_tenant_id", default=None)
_run_id: ContextVar[Optional[str]] = ContextVar("recon_run_id", default=None)
ContextTokens = Tuple[Token, Token]

# Attributes every LogRecord has; anything else was passed via `extra`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}
_CONTEXT_ATTRS = ("tenant_id", "run_id")


class ReconciliationContextFilter(logging.Filter):
    """Stamps tenant_id and run_id on records that do not set them explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = _tenant_id.get()
        if getattr(record, "run_id", None) is None:
            record.run_id = _run_id.get()
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Context fields sit at the top level so log search can filter a whole
    run by run_id; other `extra` values are nested under "extra".
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = value

        extra = {
            k: v for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and k not in _CONTEXT_ATTRS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = SERVICE_NAME
) -> logging.Logger:
    """
    Replace the root logger's handlers with a single stdout handler.

    Args:
        level: Log level name
        json_format: JSON lines (production) or plain text
        service_name: Value of the "service" field in JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(ReconciliationContextFilter())
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [tenant=%(tenant_id)s run=%(run_id)s] %(message)s"
        ))
    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_reconciliation_context(tenant_id: Optional[str] = None, run_id: Optional[str] = None) -> ContextTokens:
    """
    Tag log records in the current task (and tasks it starts) with a tenant
    and run. Pass the returned tokens to reset_reconciliation_context to
    restore whatever context was active before, e.g. a request's tenant
    around a batch run started inside that request.
    """
    return _tenant_id.set(tenant_id), _run_id.set(run_id)


def reset_reconciliation_context(tokens: ContextTokens):
    tenant_token, run_token = tokens
    _run_id.reset(run_token)
    _tenant_id.reset(tenant_token)


def get_reconciliation_context() -> Dict[str, Optional[str]]:
    """Current tenant/run context, for error reports."""
    return {"tenant_id": _tenant_id.get(), "run_id": _run_id.get()}
