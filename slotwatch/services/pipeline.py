"""Wires the pipeline together and exposes one entry point per job.

Every job returns the JSON summary ``{success, executionTime, result}`` and
never raises; failures are logged and reported with ``success: False``.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from functools import lru_cache
from typing import Any, Awaitable, Callable

from sqlalchemy.engine import Engine

from .. import database
from ..config import Settings, get_settings
from ..messaging.resend_backend import get_email_sender
from ..messaging.webpush import get_push_sender
from ..models import Appointment
from ..store import Store
from .availability import AvailabilitySource, HttpAvailabilitySource, StoredAvailabilitySource
from .dates import local_today, open_days, utcnow
from .dispatcher import ChannelDispatcher
from .eligibility import EligibilityGate
from .matcher import SubscriptionMatcher
from .proactive import ProactiveEngine
from .push_health import PushHealthTracker
from .queue import NotificationQueue

log = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        email_sender=None,
        push_sender=None,
        source: AvailabilitySource | None = None,
    ):
        self.settings = settings
        self.store = Store(engine)

        if source is None:
            if settings.AVAILABILITY_URL:
                source = HttpAvailabilitySource(settings)
            else:
                log.warning("[Pipeline] AVAILABILITY_URL not set, scanning stored appointment checks")
                source = StoredAvailabilitySource(self.store)
        self.source = source
        self.stored_source = StoredAvailabilitySource(self.store)

        self.email_sender = email_sender if email_sender is not None else get_email_sender(settings)
        self.push_sender = push_sender if push_sender is not None else get_push_sender(settings)

        self.matcher = SubscriptionMatcher(self.store)
        self.gate = EligibilityGate(self.store, settings.TIMEZONE)
        self.push_tracker = PushHealthTracker(self.store, self.push_sender, settings.PUSH_TIMEOUT_SECONDS)
        self.dispatcher = ChannelDispatcher(
            self.store, self.email_sender, self.push_tracker, settings.EMAIL_TIMEOUT_SECONDS
        )
        self.queue = NotificationQueue(self.store, self.gate, self.dispatcher, settings.PUBLIC_BASE_URL)
        self.proactive = ProactiveEngine(
            self.store, self.gate, self.dispatcher, settings.TIMEZONE, settings.PUBLIC_BASE_URL
        )

    async def close(self) -> None:
        if isinstance(self.source, HttpAvailabilitySource):
            await self.source.close()

    # ==================== Helpers ====================

    def scan_dates(self, now: datetime | None = None):
        today = local_today(self.settings.TIMEZONE, now)
        return open_days(today, self.settings.SCAN_DAYS, self.settings.CLOSED_WEEKDAYS_LIST)

    async def stored_snapshot(self, now: datetime | None = None) -> list[Appointment]:
        return await self.stored_source.scan(self.scan_dates(now))

    async def _timed(self, name: str, job: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        started = time.monotonic()
        try:
            result = await job()
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            log.error(f"[Pipeline] {name} failed after {elapsed}ms: {e}", exc_info=True)
            return {"success": False, "executionTime": elapsed, "error": str(e)}
        elapsed = int((time.monotonic() - started) * 1000)
        log.info(f"[Pipeline] {name} finished in {elapsed}ms: {result}")
        return {"success": True, "executionTime": elapsed, "result": result}

    # ==================== Jobs ====================

    async def run_auto_check(self, now: datetime | None = None) -> dict[str, Any]:
        """Scan, match, drain the queue, then hot alerts and opportunity discovery."""
        deadline = time.monotonic() + self.settings.RUN_TIME_BUDGET_SECONDS

        async def job():
            today = local_today(self.settings.TIMEZONE, now)
            snapshot = await self.source.scan(self.scan_dates(now))
            self.store.save_appointment_checks(snapshot, now or utcnow())

            completed = self.matcher.complete_expired_subscriptions(today, now)
            matched = self.matcher.match(snapshot, now)
            drained = await self.queue.drain(self.settings.QUEUE_BATCH_LIMIT, deadline, now)
            hot = await self.proactive.run_hot_alerts(snapshot, now)
            opportunity = await self.proactive.run_opportunity(snapshot, now)

            return {
                "checked": len(snapshot),
                "available": sum(1 for a in snapshot if a.has_times),
                "completedSubscriptions": completed,
                "queued": matched.queued,
                "sent": drained.sent,
                "skipped": drained.skipped,
                "deferred": drained.deferred,
                "failed": drained.failed,
                "hotAlerts": hot.dict(),
                "opportunity": opportunity.dict(),
            }

        return await self._timed("auto-check", job)

    async def run_notification_queue(self, now: datetime | None = None) -> dict[str, Any]:
        deadline = time.monotonic() + self.settings.RUN_TIME_BUDGET_SECONDS

        async def job():
            return (await self.queue.drain(self.settings.QUEUE_BATCH_LIMIT, deadline, now)).dict()

        return await self._timed("notification-queue", job)

    async def run_hot_alerts(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return (await self.proactive.run_hot_alerts(await self.stored_snapshot(now), now)).dict()

        return await self._timed("hot-alerts", job)

    async def run_opportunity(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return (await self.proactive.run_opportunity(await self.stored_snapshot(now), now)).dict()

        return await self._timed("opportunity", job)

    async def run_weekly_digest(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return (await self.proactive.run_weekly_digest(await self.stored_snapshot(now), now)).dict()

        return await self._timed("weekly-digest", job)

    async def run_expiry_reminders(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return (await self.proactive.run_expiry_reminders(now)).dict()

        return await self._timed("expiry-reminders", job)

    async def run_inactivity(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return (await self.proactive.run_inactivity(await self.stored_snapshot(now), now)).dict()

        return await self._timed("inactivity", job)

    async def run_queue_cleanup(self, now: datetime | None = None) -> dict[str, Any]:
        async def job():
            return {"deleted": self.queue.cleanup(now)}

        return await self._timed("queue-cleanup", job)

    def job(self, name: str) -> Callable[..., Awaitable[dict[str, Any]]] | None:
        """Look up a job entry point by its public name."""
        return {
            "auto-check": self.run_auto_check,
            "notification-queue": self.run_notification_queue,
            "hot-alerts": self.run_hot_alerts,
            "opportunity": self.run_opportunity,
            "weekly-digest": self.run_weekly_digest,
            "expiry-reminders": self.run_expiry_reminders,
            "inactivity": self.run_inactivity,
            "queue-cleanup": self.run_queue_cleanup,
        }.get(name)


@lru_cache()
def get_pipeline() -> Pipeline:
    return Pipeline(get_settings(), database.get_engine())
