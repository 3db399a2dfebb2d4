"""
Unit Tests for the Notification Sender

HTTP calls go through httpx.MockTransport.

Run with: pytest backend/tests/test_notifications.py -v
"""

import json

import httpx
import pytest

from config import Settings
from reconciliation.services.notifications import (
    HttpNotificationSender,
    LoggingNotificationSender,
    NotificationError,
    BATCH_COMPLETE_TEMPLATE,
    build_notification_sender,
)


class TestHttpNotificationSender:

    @pytest.mark.asyncio
    async def test_posts_request_and_returns_delivery_ids(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(202, json={"delivery_ids": ["d-1", "d-2"]})

        sender = HttpNotificationSender(
            "https://notify.internal/",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )

        delivery_ids = await sender.notify("tenant-1", BATCH_COMPLETE_TEMPLATE, {"matched": 3}, ["in_app", "email"])

        assert delivery_ids == ["d-1", "d-2"]
        assert captured["url"] == "https://notify.internal/notifications"
        assert captured["headers"]["X-Internal-Api-Key"] == "secret"
        assert captured["body"] == {
            "tenant_id": "tenant-1",
            "template_id": BATCH_COMPLETE_TEMPLATE,
            "variables": {"matched": 3},
            "channels": ["in_app", "email"],
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        sender = HttpNotificationSender(
            "https://notify.internal",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(NotificationError) as exc_info:
            await sender.notify("tenant-1", BATCH_COMPLETE_TEMPLATE, {}, ["in_app"])

        assert "500" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        sender = HttpNotificationSender("https://notify.internal", transport=httpx.MockTransport(handler))

        with pytest.raises(NotificationError) as exc_info:
            await sender.notify("tenant-1", BATCH_COMPLETE_TEMPLATE, {}, ["in_app"])

        assert "timeout" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_body(self):
        sender = HttpNotificationSender(
            "https://notify.internal",
            transport=httpx.MockTransport(lambda request: httpx.Response(204)),
        )

        assert await sender.notify("tenant-1", BATCH_COMPLETE_TEMPLATE, {}, []) == []


class TestBuildNotificationSender:

    def test_without_url_logs_only(self):
        sender = build_notification_sender(Settings(NOTIFICATION_SERVICE_URL=""))
        assert isinstance(sender, LoggingNotificationSender)

    def test_with_url(self):
        sender = build_notification_sender(Settings(
            NOTIFICATION_SERVICE_URL="https://notify.internal",
            NOTIFICATION_TIMEOUT_SECONDS=3.0,
        ))

        assert isinstance(sender, HttpNotificationSender)
        assert sender.timeout == 3.0

    @pytest.mark.asyncio
    async def test_logging_sender_returns_no_ids(self):
        assert await LoggingNotificationSender().notify("tenant-1", BATCH_COMPLETE_TEMPLATE, {}, ["in_app"]) == []
