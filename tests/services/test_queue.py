"""Tests for queue draining"""
import json
import time
from datetime import date, timedelta

import pytest

from conftest import JUNE_10, NOON_LOCAL, add_endpoint, make_user
from slotwatch.messaging.webpush import PushResult
from slotwatch.models import AppointmentMatch
from slotwatch.services.dispatcher import ChannelDispatcher
from slotwatch.services.eligibility import EligibilityGate
from slotwatch.services.matcher import fingerprint
from slotwatch.services.push_health import PushHealthTracker
from slotwatch.services.queue import NotificationQueue


@pytest.fixture
def queue(store, email_sender, push_sender):
    tracker = PushHealthTracker(store, push_sender, timeout=1)
    dispatcher = ChannelDispatcher(store, email_sender, tracker, email_timeout=1)
    gate = EligibilityGate(store, "Asia/Jerusalem")
    return NotificationQueue(store, gate, dispatcher, "https://app.example")


def enqueue(store, sub_id, *matches, now=NOON_LOCAL):
    matches = list(matches)
    return store.enqueue(sub_id, matches, fingerprint(matches), now)


def status_of(store, item_id):
    return next(r for r in store.queue_items() if r.id == item_id)


# ============================================================================
# Happy path
# ============================================================================

@pytest.mark.asyncio
async def test_sent_item_writes_ledger_and_in_app(store, queue, email_sender):
    """A delivered item is marked sent, recorded in the ledger and in-app"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00", "10:00"]))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.sent == 1
    assert status_of(store, item_id).status == "sent"
    assert store.notified_times(sub_id, [JUNE_10]) == {JUNE_10: {"09:00", "10:00"}}
    assert store.count_deliveries_since(user_id, NOON_LOCAL - timedelta(minutes=1)) == 1
    email_sender.send.assert_awaited_once()
    assert email_sender.send.await_args.args[0] == "user@example.com"


@pytest.mark.asyncio
async def test_grouped_item_sends_one_message(store, queue, email_sender):
    """Several dates in one item produce exactly one delivery"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, date_range_start=JUNE_10, date_range_end=date(2025, 6, 14))
    enqueue(
        store, sub_id,
        AppointmentMatch(JUNE_10, ["09:00"]),
        AppointmentMatch(date(2025, 6, 11), ["12:00"]),
    )

    await queue.drain(limit=10, now=NOON_LOCAL)

    assert email_sender.send.await_count == 1
    assert set(store.notified_times(sub_id, [JUNE_10, date(2025, 6, 11)])) == {JUNE_10, date(2025, 6, 11)}


@pytest.mark.asyncio
async def test_both_method_partial_success(store, queue, email_sender, push_sender):
    """Email failing while push succeeds still counts as sent"""
    email_sender.send.return_value = False
    user_id = make_user(store)
    add_endpoint(store, user_id)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10, method="both")
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.sent == 1
    row = status_of(store, item_id)
    assert row.status == "sent"
    assert "email" in row.error_message
    push_sender.send.assert_awaited_once()


# ============================================================================
# Skips, deferrals, failures
# ============================================================================

@pytest.mark.asyncio
async def test_inactive_subscription_skipped(store, queue, email_sender):
    """Items for paused subscriptions are skipped without sending"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10, status="paused")
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.skipped == 1
    row = status_of(store, item_id)
    assert row.status == "skipped"
    assert row.error_message == "Subscription no longer active"
    email_sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_daily_cap_defers_item(store, queue, email_sender):
    """Cap of two with two deliveries today defers the next item"""
    user_id = make_user(store, max_notifications_per_day=2)
    store.create_in_app_notification(user_id, "one", None, "appointment", NOON_LOCAL - timedelta(hours=2))
    store.create_in_app_notification(user_id, "two", None, "hot_alert", NOON_LOCAL - timedelta(hours=1))
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.deferred == 1
    row = status_of(store, item_id)
    assert row.status == "deferred"
    assert row.error_message == "daily_limit_reached"
    assert store.notified_times(sub_id, [JUNE_10]) == {}
    email_sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_ledger_hit_within_24h_skipped(store, queue, email_sender):
    """Same content already notified in the last day is a duplicate"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    store.record_notified(sub_id, JUNE_10, ["09:00"], NOON_LOCAL - timedelta(hours=3))
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    await queue.drain(limit=10, now=NOON_LOCAL)

    row = status_of(store, item_id)
    assert row.status == "skipped"
    assert row.error_message == "Duplicate notification within 24 hours"
    email_sender.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_total_failure_marks_failed_without_ledger(store, queue, email_sender):
    """Nothing delivered: item failed, no ledger row, no in-app row"""
    email_sender.send.return_value = False
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.failed == 1
    row = status_of(store, item_id)
    assert row.status == "failed"
    assert row.error_message.startswith("email:")
    assert store.notified_times(sub_id, [JUNE_10]) == {}
    assert store.count_deliveries_since(user_id, NOON_LOCAL - timedelta(days=1)) == 0


@pytest.mark.asyncio
async def test_push_only_without_endpoints_fails(store, queue):
    """Push method with no registered endpoints cannot deliver"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10, method="push")
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    await queue.drain(limit=10, now=NOON_LOCAL)

    row = status_of(store, item_id)
    assert row.status == "failed"
    assert "no active push endpoints" in row.error_message


@pytest.mark.asyncio
async def test_unexpected_error_isolated_to_item(store, queue, email_sender, monkeypatch):
    """One item raising does not stop the rest of the batch"""
    user_id = make_user(store)
    bad_sub = store.create_subscription(user_id, subscription_date=JUNE_10)
    good_sub = store.create_subscription(user_id, subscription_date=date(2025, 6, 11))
    bad_item = enqueue(store, bad_sub, AppointmentMatch(JUNE_10, ["09:00"]))
    good_item = enqueue(store, good_sub, AppointmentMatch(date(2025, 6, 11), ["09:00"]))

    real_get = store.get_subscription

    def flaky_get(sub_id):
        if sub_id == bad_sub:
            raise RuntimeError("boom")
        return real_get(sub_id)

    monkeypatch.setattr(store, "get_subscription", flaky_get)

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.failed == 1
    assert result.sent == 1
    assert status_of(store, bad_item).status == "failed"
    assert "boom" in status_of(store, bad_item).error_message
    assert status_of(store, good_item).status == "sent"


# ============================================================================
# Limits & cleanup
# ============================================================================

@pytest.mark.asyncio
async def test_drain_respects_limit(store, queue):
    """Only ``limit`` items are taken per drain, oldest first"""
    user_id = make_user(store)
    ids = []
    for offset in range(3):
        day = JUNE_10 + timedelta(days=offset)
        sub_id = store.create_subscription(user_id, subscription_date=day)
        ids.append(enqueue(store, sub_id, AppointmentMatch(day, ["09:00"]), now=NOON_LOCAL + timedelta(minutes=offset)))

    result = await queue.drain(limit=2, now=NOON_LOCAL + timedelta(hours=1))

    assert result.processed == 2
    assert status_of(store, ids[2]).status == "pending"


@pytest.mark.asyncio
async def test_expired_deadline_leaves_items_pending(store, queue, email_sender):
    """A spent time budget stops the drain before the next item"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    result = await queue.drain(limit=10, deadline=time.monotonic() - 1, now=NOON_LOCAL)

    assert result.out_of_time is True
    assert result.processed == 0
    assert status_of(store, item_id).status == "pending"
    email_sender.send.assert_not_awaited()


def test_cleanup_removes_old_terminal_items(store, queue):
    """Terminal items past retention are deleted, open ones kept"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    old = NOON_LOCAL - timedelta(days=8)
    sent_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]), now=old)
    pending_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["10:00"]), now=old)
    recent_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["11:00"]), now=NOON_LOCAL)
    store.set_queue_status(sent_id, "sent", old)
    store.set_queue_status(recent_id, "failed", NOON_LOCAL)

    deleted = queue.cleanup(NOON_LOCAL)

    assert deleted == 1
    remaining = {r.id for r in store.queue_items()}
    assert remaining == {pending_id, recent_id}


@pytest.mark.asyncio
async def test_push_payload_failure_result_used(store, queue, push_sender):
    """Push-only delivery with a failing endpoint reports the status code"""
    push_sender.send.return_value = PushResult(ok=False, status=500, detail="server error")
    user_id = make_user(store)
    add_endpoint(store, user_id)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10, method="push")
    item_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))

    await queue.drain(limit=10, now=NOON_LOCAL)

    assert "500" in status_of(store, item_id).error_message


def test_cleanup_removes_old_deferred_items(store, queue):
    """Deferred items past retention are deleted too"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    old = NOON_LOCAL - timedelta(days=8)
    deferred_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]), now=old)
    store.set_queue_status(deferred_id, "deferred", old, "quiet_hours")

    assert queue.cleanup(NOON_LOCAL) == 1
    assert store.queue_items() == []


# ============================================================================
# Booking links & interrupted runs
# ============================================================================

@pytest.mark.asyncio
async def test_single_date_item_keeps_booking_url(store, queue, email_sender, push_sender):
    """A one-date item carries its booking link into push and email"""
    url = "https://book.example/2025-06-10"
    user_id = make_user(store)
    add_endpoint(store, user_id)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10, method="both")
    enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"], url))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.sent == 1
    notification = json.loads(push_sender.send.await_args.args[1])["notification"]
    assert notification["data"]["booking_url"] == url
    assert notification["actions"][0]["action"] == "book"
    assert url in email_sender.send.await_args.kwargs["html_body"]


@pytest.mark.asyncio
async def test_stale_processing_item_is_retried(store, queue, email_sender):
    """An item stuck in processing from an interrupted run is drained again"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    stuck_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]), now=NOON_LOCAL - timedelta(hours=1))
    store.set_queue_status(stuck_id, "processing", NOON_LOCAL - timedelta(hours=1))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.sent == 1
    assert status_of(store, stuck_id).status == "sent"


@pytest.mark.asyncio
async def test_recent_processing_item_left_alone(store, queue, email_sender):
    """An item another run is processing right now is not picked up"""
    user_id = make_user(store)
    sub_id = store.create_subscription(user_id, subscription_date=JUNE_10)
    busy_id = enqueue(store, sub_id, AppointmentMatch(JUNE_10, ["09:00"]))
    store.set_queue_status(busy_id, "processing", NOON_LOCAL - timedelta(minutes=1))

    result = await queue.drain(limit=10, now=NOON_LOCAL)

    assert result.processed == 0
    email_sender.send.assert_not_awaited()
