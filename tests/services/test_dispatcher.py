"""Tests for the channel dispatcher"""
import asyncio

import pytest

from conftest import add_endpoint, make_user
from slotwatch.messaging.webpush import PushResult
from slotwatch.services.dispatcher import ChannelDispatcher
from slotwatch.services.payloads import EmailMessage, PushPayload
from slotwatch.services.push_health import PushHealthTracker


@pytest.fixture
def dispatcher(store, email_sender, push_sender):
    tracker = PushHealthTracker(store, push_sender, timeout=1)
    return ChannelDispatcher(store, email_sender, tracker, email_timeout=0.2)


@pytest.fixture
def email():
    return EmailMessage(to="user@example.com", subject="Slots", html="<p>hi</p>", text="hi")


@pytest.fixture
def push():
    return PushPayload(title="Slots", body="New times", tag="t", data={"url": "/"})


# ============================================================================
# Single channel
# ============================================================================

@pytest.mark.asyncio
async def test_email_only(store, dispatcher, email, push, email_sender, push_sender):
    """Email method never touches push"""
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "email", email=email, push=push)

    assert result.success is True
    assert result.email_sent is True
    assert result.push_sent is False
    push_sender.send.assert_not_awaited()
    email_sender.send.assert_awaited_once_with(
        "user@example.com", "Slots", html_body="<p>hi</p>", text_body="hi"
    )
    logs = store.notification_logs(user_id)
    assert [(r.notification_type, r.status) for r in logs] == [("email", "sent")]


@pytest.mark.asyncio
async def test_email_without_address_fails(store, dispatcher, push):
    """No email message means the email channel fails"""
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "email", email=None, push=push)

    assert result.success is False
    assert result.error_message == "email: no email address"


@pytest.mark.asyncio
async def test_email_timeout(store, dispatcher, email, email_sender):
    """A hung email transport is cut off by the timeout"""
    async def hang(*args, **kwargs):
        await asyncio.sleep(5)
        return True

    email_sender.send.side_effect = hang
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "email", email=email)

    assert result.success is False
    assert "timeout" in result.email_error


@pytest.mark.asyncio
async def test_email_exception_is_captured(store, dispatcher, email, email_sender):
    """Transport exceptions become channel errors"""
    email_sender.send.side_effect = RuntimeError("smtp down")
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "email", email=email)

    assert result.success is False
    assert result.email_error == "smtp down"
    assert store.notification_logs(user_id)[0].status == "failed"


@pytest.mark.asyncio
async def test_push_only(store, dispatcher, email, push, email_sender, push_sender):
    """Push method fans out to endpoints and skips email"""
    user_id = make_user(store)
    add_endpoint(store, user_id)

    result = await dispatcher.send(user_id, "push", email=email, push=push)

    assert result.success is True
    assert result.push_sent is True
    email_sender.send.assert_not_awaited()


# ============================================================================
# Both channels
# ============================================================================

@pytest.mark.asyncio
async def test_both_email_fails_push_succeeds(store, dispatcher, email, push, email_sender):
    """Partial success is still success and keeps the email error"""
    email_sender.send.return_value = False
    user_id = make_user(store)
    add_endpoint(store, user_id)

    result = await dispatcher.send(user_id, "both", email=email, push=push)

    assert result.success is True
    assert result.email_sent is False
    assert result.push_sent is True
    assert result.error_message.startswith("email:")


@pytest.mark.asyncio
async def test_both_push_fails_email_succeeds(store, dispatcher, email, push, push_sender):
    """Push failure alone does not fail the delivery"""
    push_sender.send.return_value = PushResult(ok=False, status=500, detail="oops")
    user_id = make_user(store)
    add_endpoint(store, user_id)

    result = await dispatcher.send(user_id, "both", email=email, push=push)

    assert result.success is True
    assert result.email_sent is True
    assert result.push_sent is False
    assert "push:" in result.error_message


@pytest.mark.asyncio
async def test_both_fail(store, dispatcher, email, push, email_sender):
    """Both channels failing names both in the error"""
    email_sender.send.return_value = False
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "both", email=email, push=push)

    assert result.success is False
    assert "email:" in result.error_message
    assert "push: no active push endpoints" in result.error_message


@pytest.mark.asyncio
async def test_unknown_method(store, dispatcher, email, push):
    """Unknown methods fail without sending"""
    user_id = make_user(store)

    result = await dispatcher.send(user_id, "carrier-pigeon", email=email, push=push)

    assert result.success is False
    assert "unknown method" in result.error_message
