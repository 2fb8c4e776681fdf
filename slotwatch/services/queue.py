from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..models import (
    CATEGORY_APPOINTMENT,
    QUEUE_DEFERRED,
    QUEUE_FAILED,
    QUEUE_PROCESSING,
    QUEUE_SENT,
    QUEUE_SKIPPED,
    QUEUE_TERMINAL,
    SUB_ACTIVE,
    QueueItem,
)
from ..store import Store
from .dates import utcnow
from .dispatcher import ChannelDispatcher
from .eligibility import EligibilityGate
from .payloads import AppointmentFound, build_email, build_push

log = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)
QUEUE_RETENTION = timedelta(days=7)
STALE_PROCESSING = timedelta(minutes=15)


@dataclass
class DrainResult:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: int = 0
    out_of_time: bool = False

    def count(self, status: str) -> None:
        self.processed += 1
        if status == QUEUE_SENT:
            self.sent += 1
        elif status == QUEUE_SKIPPED:
            self.skipped += 1
        elif status == QUEUE_DEFERRED:
            self.deferred += 1
        elif status == QUEUE_FAILED:
            self.failed += 1

    def dict(self) -> dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "failed": self.failed,
        }


class NotificationQueue:
    """Drains pending queue items, oldest first, one at a time."""

    def __init__(
        self,
        store: Store,
        gate: EligibilityGate,
        dispatcher: ChannelDispatcher,
        base_url: str = "",
    ):
        self.store = store
        self.gate = gate
        self.dispatcher = dispatcher
        self.base_url = base_url

    async def drain(self, limit: int = 10, deadline: float | None = None, now: datetime | None = None) -> DrainResult:
        """Process up to ``limit`` pending items.

        ``deadline`` is a ``time.monotonic()`` value; items not reached by
        then stay pending for the next run. Items left in processing by
        an interrupted run are retried once they are ``STALE_PROCESSING`` old.
        """
        result = DrainResult()
        stale_before = (now or utcnow()) - STALE_PROCESSING
        items = self.store.pending_items(limit, stale_before=stale_before)
        log.info(f"[Queue] Draining {len(items)} pending item(s)")

        for item in items:
            if deadline is not None and time.monotonic() >= deadline:
                result.out_of_time = True
                log.info(f"[Queue] Time budget exhausted, {len(items) - result.processed} item(s) left pending")
                break
            try:
                status = await self.process(item, now)
            except Exception as e:
                log.error(f"[Queue] Item {item.id} failed unexpectedly: {e}", exc_info=True)
                self.store.set_queue_status(item.id, QUEUE_FAILED, utcnow(), f"Unexpected error: {e}"[:1000])
                status = QUEUE_FAILED
            result.count(status)

        log.info(f"[Queue] Drain finished: {result.dict()}")
        return result

    async def process(self, item: QueueItem, now: datetime | None = None) -> str:
        now = now or utcnow()

        sub = self.store.get_subscription(item.subscription_id)
        if sub is None or not sub.is_active or sub.status != SUB_ACTIVE:
            log.info(f"[Queue] Item {item.id}: subscription {item.subscription_id} no longer active")
            self.store.set_queue_status(item.id, QUEUE_SKIPPED, now, "Subscription no longer active")
            return QUEUE_SKIPPED

        verdict = self.gate.evaluate(sub.user_id, CATEGORY_APPOINTMENT, now)
        if not verdict.allowed:
            log.info(f"[Queue] Item {item.id} deferred: {verdict.reason}")
            self.store.set_queue_status(item.id, QUEUE_DEFERRED, now, verdict.reason)
            return QUEUE_DEFERRED

        since = now - DEDUP_WINDOW
        matches = [m for m in item.matches if not self.store.ledger_has(sub.id, m.date, m.new_times, since)]
        if not matches:
            log.info(f"[Queue] Item {item.id}: already notified within 24 hours")
            self.store.set_queue_status(item.id, QUEUE_SKIPPED, now, "Duplicate notification within 24 hours")
            return QUEUE_SKIPPED

        self.store.set_queue_status(item.id, QUEUE_PROCESSING, now)

        booking_url = next((m.booking_url for m in matches if m.booking_url), None)
        notification = AppointmentFound(subscription_id=sub.id, matches=matches, booking_url=booking_url)
        push = build_push(notification)
        email = build_email(notification, sub.email, self.base_url) if sub.email else None

        outcome = await self.dispatcher.send(sub.user_id, sub.method, email=email, push=push)
        if not outcome.success:
            self.store.set_queue_status(item.id, QUEUE_FAILED, utcnow(), outcome.error_message)
            return QUEUE_FAILED

        for m in matches:
            if self.store.record_notified(sub.id, m.date, m.new_times, now):
                log.info(f"[Queue] Ledger row for subscription {sub.id} on {m.date} already present")
        self.store.create_in_app_notification(
            sub.user_id, push.title, push.body, CATEGORY_APPOINTMENT, now,
            data={**push.data, "email_sent": outcome.email_sent, "push_sent": outcome.push_sent},
        )
        self.store.set_queue_status(item.id, QUEUE_SENT, utcnow(), outcome.error_message)
        log.info(
            f"[Queue] Item {item.id} sent to user {sub.user_id} "
            f"(email={outcome.email_sent}, push={outcome.push_sent})"
        )
        return QUEUE_SENT

    def cleanup(self, now: datetime | None = None) -> int:
        """Delete finished and deferred items older than the retention period."""
        cutoff = (now or utcnow()) - QUEUE_RETENTION
        deleted = self.store.delete_queue_items((*QUEUE_TERMINAL, QUEUE_DEFERRED), cutoff)
        log.info(f"[Queue] Cleaned up {deleted} old queue item(s)")
        return deleted
