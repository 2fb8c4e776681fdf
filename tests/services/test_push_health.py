"""Tests for push endpoint fan-out and health tracking"""
import asyncio
import json

import pytest

from conftest import NOON_LOCAL, add_endpoint, make_user
from slotwatch.messaging.webpush import PushResult
from slotwatch.services.payloads import PushPayload
from slotwatch.services.push_health import MAX_CONSECUTIVE_FAILURES, PushHealthTracker


@pytest.fixture
def tracker(store, push_sender):
    return PushHealthTracker(store, push_sender, timeout=0.2)


@pytest.fixture
def payload():
    return PushPayload(title="Slots", body="New times", tag="t", data={"url": "/"})


# ============================================================================
# Registration
# ============================================================================

def test_register_is_upsert(store, tracker):
    """Registering the same endpoint twice reactivates one row"""
    user_id = make_user(store)
    first = tracker.register_endpoint("https://push.example/x", "k1", "a1", user_id, now=NOON_LOCAL)
    store.update_push_endpoint(first, is_active=False, consecutive_failures=3)

    second = tracker.register_endpoint("https://push.example/x", "k2", "a2", user_id, now=NOON_LOCAL)

    assert first == second
    ep = store.get_push_endpoint(first)
    assert ep.is_active is True
    assert ep.consecutive_failures == 0
    assert ep.p256dh == "k2"


def test_unregister(store, tracker):
    """Unregister deletes the row and reports whether one existed"""
    user_id = make_user(store)
    tracker.register_endpoint("https://push.example/x", "k", "a", user_id, now=NOON_LOCAL)

    assert tracker.unregister_endpoint("https://push.example/x", user_id) is True
    assert tracker.unregister_endpoint("https://push.example/x", user_id) is False
    assert store.active_push_endpoints(user_id) == []


# ============================================================================
# Failure accounting
# ============================================================================

def test_permanent_failure_deactivates_immediately(store, tracker):
    """A 410 turns the endpoint off after a single failure"""
    user_id = make_user(store)
    ep_id = add_endpoint(store, user_id)

    assert tracker.record_failure(ep_id, 410, "Gone") is True

    ep = store.get_push_endpoint(ep_id)
    assert ep.is_active is False
    assert ep.last_delivery_status == "failed"
    assert "410" in ep.last_failure_reason


def test_transient_failures_deactivate_at_threshold(store, tracker):
    """Five transient failures in a row deactivate the endpoint"""
    user_id = make_user(store)
    ep_id = add_endpoint(store, user_id)

    results = [tracker.record_failure(ep_id, 500, "err") for _ in range(MAX_CONSECUTIVE_FAILURES)]

    assert results == [False] * (MAX_CONSECUTIVE_FAILURES - 1) + [True]
    ep = store.get_push_endpoint(ep_id)
    assert ep.is_active is False
    assert ep.last_failure_reason.startswith("Auto-disabled after 5 consecutive failures")


def test_success_resets_counter(store, tracker):
    """A success between failures starts the count over"""
    user_id = make_user(store)
    ep_id = add_endpoint(store, user_id)

    for _ in range(4):
        tracker.record_failure(ep_id, 500, "err")
    tracker.record_success(ep_id, NOON_LOCAL)
    for _ in range(4):
        tracker.record_failure(ep_id, 500, "err")

    ep = store.get_push_endpoint(ep_id)
    assert ep.is_active is True
    assert ep.consecutive_failures == 4


# ============================================================================
# Fan-out
# ============================================================================

@pytest.mark.asyncio
async def test_send_to_user_without_endpoints(store, tracker, payload, push_sender):
    """No endpoints is a failed fan-out, not an error"""
    user_id = make_user(store)

    result = await tracker.send_to_user(user_id, payload)

    assert result.success is False
    assert result.errors == ["no active push endpoints"]
    push_sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_fanout_mixed_outcomes(store, tracker, payload, push_sender):
    """One endpoint gone, one fine: success, and the dead one is disabled"""
    user_id = make_user(store)
    gone = add_endpoint(store, user_id, "gone")
    fine = add_endpoint(store, user_id, "fine")

    async def send(info, data):
        if info["endpoint"].endswith("/gone"):
            return PushResult(ok=False, status=410, detail="Gone")
        return PushResult(ok=True, status=201, detail="success")

    push_sender.send.side_effect = send

    result = await tracker.send_to_user(user_id, payload)

    assert result.success is True
    assert (result.sent, result.failed) == (1, 1)
    assert store.get_push_endpoint(gone).is_active is False
    assert store.get_push_endpoint(fine).last_delivery_status == "success"
    statuses = sorted((r.push_subscription_id, r.status) for r in store.notification_logs(user_id))
    assert statuses == sorted([(gone, "failed"), (fine, "sent")])


@pytest.mark.asyncio
async def test_fanout_isolates_exceptions_and_timeouts(store, tracker, payload, push_sender):
    """A raising endpoint and a hanging one do not block the good one"""
    user_id = make_user(store)
    add_endpoint(store, user_id, "raise")
    add_endpoint(store, user_id, "hang")
    ok = add_endpoint(store, user_id, "ok")

    async def send(info, data):
        name = info["endpoint"].rsplit("/", 1)[-1]
        if name == "raise":
            raise ConnectionError("reset")
        if name == "hang":
            await asyncio.sleep(5)
        return PushResult(ok=True, status=201)

    push_sender.send.side_effect = send

    result = await tracker.send_to_user(user_id, payload)

    assert result.sent == 1
    assert result.failed == 2
    assert any("timeout" in e for e in result.errors)
    assert any("ConnectionError" in e for e in result.errors)
    assert store.get_push_endpoint(ok).consecutive_failures == 0


@pytest.mark.asyncio
async def test_fanout_sends_encoded_payload(store, tracker, payload, push_sender):
    """Endpoints receive the size-checked JSON payload"""
    user_id = make_user(store)
    add_endpoint(store, user_id)

    await tracker.send_to_user(user_id, payload)

    info, data = push_sender.send.await_args.args
    assert info["keys"] == {"p256dh": "p256dh-key", "auth": "auth-key"}
    assert json.loads(data)["notification"]["title"] == "Slots"
