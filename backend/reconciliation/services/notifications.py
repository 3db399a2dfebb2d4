"""
Notification Sender

Downstream notification call made after a reconciliation batch. Delivery
itself belongs to the notification service; this module only posts the
request and returns the delivery ids it hands back.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)

BATCH_COMPLETE_TEMPLATE = "reconciliation_batch_complete"
DEFAULT_TIMEOUT = 10  # seconds


class NotificationError(Exception):
    """Notification service could not be reached or rejected the request."""


class NotificationSender(Protocol):
    async def notify(
        self,
        tenant_id: str,
        template_id: str,
        variables: Dict[str, Any],
        channels: Sequence[str],
    ) -> List[str]:
        ...


class LoggingNotificationSender:
    """Used when no notification service is configured."""

    async def notify(
        self,
        tenant_id: str,
        template_id: str,
        variables: Dict[str, Any],
        channels: Sequence[str],
    ) -> List[str]:
        logger.info(
            f"Notification not sent (no service configured): {template_id}",
            extra={"tenant_id": tenant_id, "variables": variables, "channels": list(channels)}
        )
        return []


class HttpNotificationSender:
    """Posts notification requests to the notification service over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self.transport = transport

    async def notify(
        self,
        tenant_id: str,
        template_id: str,
        variables: Dict[str, Any],
        channels: Sequence[str],
    ) -> List[str]:
        payload = {
            "tenant_id": tenant_id,
            "template_id": template_id,
            "variables": variables,
            "channels": list(channels),
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Internal-Api-Key"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/notifications", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException:
            raise NotificationError("Notification service timeout")
        except httpx.ConnectError as e:
            raise NotificationError(f"Connection failed: {str(e)[:100]}")
        except httpx.HTTPStatusError as e:
            raise NotificationError(f"Notification service returned {e.response.status_code}")

        body = response.json() if response.content else {}
        delivery_ids = [str(d) for d in body.get("delivery_ids", [])]
        logger.info(
            f"Notification requested: {template_id}",
            extra={"tenant_id": tenant_id, "delivery_ids": delivery_ids}
        )
        return delivery_ids


def build_notification_sender(settings) -> NotificationSender:
    if settings.NOTIFICATION_SERVICE_URL:
        return HttpNotificationSender(
            settings.NOTIFICATION_SERVICE_URL,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            api_key=settings.INTERNAL_API_KEY or None,
        )
    return LoggingNotificationSender()
