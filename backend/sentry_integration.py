"""
Reconciliation Engine - Sentry Integration

Error tracking with Sentry. Events carry the tenant and reconciliation run
they happened in, bank details are redacted before sending, and failures of
individual transactions in a batch are grouped into one issue per error type.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from logging_config import get_reconciliation_context

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substring match on lower-cased keys
SENSITIVE_KEYS = (
    "password", "secret", "token", "api_key", "api-key", "authorization", "cookie",
    "account_number", "bsb", "iban", "card_number",
)

# Context keys promoted to searchable tags
TAG_KEYS = ("tenant_id", "run_id", "bank_transaction_id", "match_id")


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=before_send,
        )

        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def redact(value: Any) -> Any:
    """Recursively replace values under sensitive keys."""
    if isinstance(value, dict):
        return {
            k: REDACTED if any(s in str(k).lower() for s in SENSITIVE_KEYS) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Prepare an event for sending.

    Request headers, request data and extras are redacted, and the tenant
    and run from the logging context are added as tags when the event does
    not already carry them.
    """
    request = event.get("request")
    if isinstance(request, dict):
        for key in ("headers", "data"):
            if key in request:
                request[key] = redact(request[key])

    if "extra" in event:
        event["extra"] = redact(event["extra"])

    tags = event.setdefault("tags", {})
    for key, value in get_reconciliation_context().items():
        if value and key not in tags:
            tags[key] = value

    return event


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """
    Capture an exception with reconciliation context.

    Identifier keys in `context` become tags, everything else goes to extras.
    A failure on a single bank transaction is fingerprinted by error type so
    a batch with many failing transactions opens one issue, not one each.

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                if key in TAG_KEYS and value is not None:
                    scope.set_tag(key, str(value))
                else:
                    scope.set_extra(key, value)
            if "bank_transaction_id" in context:
                scope.fingerprint = ["reconcile-transaction", type(exception).__name__]
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None
