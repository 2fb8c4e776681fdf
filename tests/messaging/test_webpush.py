"""Tests for the Web Push transport."""
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from slotwatch.config import Settings
from slotwatch.messaging.webpush import DummyPush, PushResult, WebPushSender, get_push_sender

SUBSCRIPTION = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}}


@pytest.fixture
def vapid_settings():
    return Settings(
        PUSH_BACKEND="webpush",
        VAPID_PRIVATE_KEY="private-key",
        VAPID_EMAIL="ops@example.com",
        PUSH_TIMEOUT_SECONDS=1,
    )


def error_response(status, text=""):
    response = MagicMock()
    response.status_code = status
    response.text = text
    return response


class TestWebPushSender:

    @pytest.mark.asyncio
    async def test_success(self, vapid_settings):
        """A 201 from the push service is a success."""
        sender = WebPushSender(vapid_settings)
        with patch("slotwatch.messaging.webpush.webpush") as mock_push:
            mock_push.return_value = MagicMock(status_code=201)

            result = await sender.send(SUBSCRIPTION, '{"notification":{}}')

            assert result.ok is True
            assert result.status == 201
            kwargs = mock_push.call_args.kwargs
            assert kwargs["subscription_info"] == SUBSCRIPTION
            assert kwargs["vapid_private_key"] == "private-key"
            assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}

    @pytest.mark.asyncio
    async def test_gone_endpoint_reports_status(self, vapid_settings):
        """WebPushException carries the HTTP status of the push service."""
        sender = WebPushSender(vapid_settings)
        with patch("slotwatch.messaging.webpush.webpush") as mock_push:
            mock_push.side_effect = WebPushException("Push failed", response=error_response(410, "Gone"))

            result = await sender.send(SUBSCRIPTION, "{}")

            assert result.ok is False
            assert result.status == 410
            assert result.detail == "Gone"

    @pytest.mark.asyncio
    async def test_exception_without_response(self, vapid_settings):
        """A WebPushException with no response maps to status 0."""
        sender = WebPushSender(vapid_settings)
        with patch("slotwatch.messaging.webpush.webpush") as mock_push:
            mock_push.side_effect = WebPushException("bad key")

            result = await sender.send(SUBSCRIPTION, "{}")

            assert result.status == 0
            assert "bad key" in result.detail

    @pytest.mark.asyncio
    async def test_transport_error(self, vapid_settings):
        """Connection errors become failed results."""
        sender = WebPushSender(vapid_settings)
        with patch("slotwatch.messaging.webpush.webpush") as mock_push:
            mock_push.side_effect = ConnectionError("reset by peer")

            result = await sender.send(SUBSCRIPTION, "{}")

            assert result.ok is False
            assert result.detail == "reset by peer"

    @pytest.mark.asyncio
    async def test_without_vapid_key(self):
        """Nothing is sent when VAPID is not configured."""
        sender = WebPushSender(Settings(VAPID_PRIVATE_KEY=""))
        with patch("slotwatch.messaging.webpush.webpush") as mock_push:
            result = await sender.send(SUBSCRIPTION, "{}")

            assert result.ok is False
            mock_push.assert_not_called()


class TestBackendSelection:

    @pytest.mark.asyncio
    async def test_dummy_backend(self):
        sender = get_push_sender(Settings(PUSH_BACKEND="dummy"))
        assert isinstance(sender, DummyPush)
        result = await sender.send(SUBSCRIPTION, "{}")
        assert result.ok is True

    def test_webpush_backend(self, vapid_settings):
        assert isinstance(get_push_sender(vapid_settings), WebPushSender)

    def test_result_dict(self):
        assert PushResult(False, 404, "Not Found").dict() == {"ok": False, "status": 404, "detail": "Not Found"}
