"""Rule-based notifications that no subscription asked for directly.

Five detectors share one delivery path. Each picks its audience, builds its
own dedup key, asks the eligibility gate, and logs what it sent so the next
run stays quiet.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from ..models import (
    CATEGORY_EXPIRY_REMINDER,
    CATEGORY_HOT_ALERT,
    CATEGORY_INACTIVITY,
    CATEGORY_OPPORTUNITY,
    CATEGORY_WEEKLY_DIGEST,
    Appointment,
)
from ..store import Store
from .dates import days_until, local_today, utcnow, week_start
from .dispatcher import ChannelDispatcher
from .eligibility import EligibilityGate
from .payloads import (
    ExpiryReminder,
    HotAlert,
    Inactivity,
    Notification,
    Opportunity,
    WeeklyDigest,
    build_email,
    build_push,
)

log = logging.getLogger(__name__)

HOT_ALERT_MAX_DAYS = 3
OPPORTUNITY_MAX_DAYS = 7
DIGEST_DAYS = 7
INACTIVITY_DAYS = 7
INACTIVITY_AVAILABILITY_DAYS = 14

DAILY_WINDOW = timedelta(hours=24)
WEEKLY_WINDOW = timedelta(days=7)


@dataclass
class DetectorResult:
    category: str
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    reason: str | None = None

    def dict(self) -> dict:
        out = {"category": self.category, "sent": self.sent, "skipped": self.skipped, "failed": self.failed}
        if self.reason:
            out["reason"] = self.reason
        return out


def hot_alert_key(dates: list[date]) -> str:
    return f"{CATEGORY_HOT_ALERT}:{','.join(sorted(d.isoformat() for d in dates))}"


def opportunity_key(day: date) -> str:
    return f"{CATEGORY_OPPORTUNITY}:{day.isoformat()}"


def weekly_digest_key(start: date) -> str:
    return f"{CATEGORY_WEEKLY_DIGEST}:{start.isoformat()}"


def expiry_reminder_key(subscription_id: int, end: date) -> str:
    return f"{CATEGORY_EXPIRY_REMINDER}:{subscription_id}:{end.isoformat()}"


def inactivity_key(today: date) -> str:
    return f"{CATEGORY_INACTIVITY}:{today.isoformat()}"


def soonest_within(snapshot: list[Appointment], today: date, max_days: int) -> Appointment | None:
    candidates = [a for a in snapshot if a.has_times and 0 <= days_until(a.date, today) <= max_days]
    return min(candidates, key=lambda a: a.date) if candidates else None


class ProactiveEngine:
    def __init__(
        self,
        store: Store,
        gate: EligibilityGate,
        dispatcher: ChannelDispatcher,
        timezone: str,
        base_url: str = "",
    ):
        self.store = store
        self.gate = gate
        self.dispatcher = dispatcher
        self.timezone = timezone
        self.base_url = base_url

    async def _deliver(
        self,
        user_id: int,
        email_address: str | None,
        notification: Notification,
        category: str,
        dedup_key: str,
        related_dates: list[date],
        now: datetime,
        result: DetectorResult,
    ) -> bool:
        verdict = self.gate.evaluate(user_id, category, now)
        if not verdict.allowed:
            result.skipped += 1
            return False

        prefs = self.store.get_preferences(user_id)
        push = build_push(notification)
        email = build_email(notification, email_address, self.base_url) if email_address else None

        outcome = await self.dispatcher.send(user_id, prefs.default_notification_method, email=email, push=push)
        if not outcome.success:
            result.failed += 1
            return False

        self.store.create_in_app_notification(user_id, push.title, push.body, category, now, data=push.data)
        self.store.log_proactive(
            user_id,
            category,
            dedup_key,
            [d.isoformat() for d in related_dates],
            now,
            push_sent=outcome.push_sent,
            email_sent=outcome.email_sent,
            in_app_created=True,
            data=push.data,
        )
        self.store.touch_proactive(user_id, now)
        result.sent += 1
        return True

    async def run_hot_alerts(self, snapshot: list[Appointment], now: datetime | None = None) -> DetectorResult:
        """Soonest open date in the next three days, to every active user."""
        now = now or utcnow()
        result = DetectorResult(CATEGORY_HOT_ALERT)
        today = local_today(self.timezone, now)

        hottest = soonest_within(snapshot, today, HOT_ALERT_MAX_DAYS)
        if hottest is None:
            result.reason = "no appointments within 3 days"
            log.info("[Proactive] Hot alerts: nothing within 3 days")
            return result

        key = hot_alert_key([hottest.date])
        notification = HotAlert(
            date=hottest.date,
            times=list(hottest.times),
            days_until=days_until(hottest.date, today),
            booking_url=hottest.booking_url,
        )
        for user in self.store.active_users():
            if self.store.proactive_sent(user.id, CATEGORY_HOT_ALERT, key, since=now - DAILY_WINDOW):
                result.skipped += 1
                continue
            await self._deliver(user.id, user.email, notification, CATEGORY_HOT_ALERT, key, [hottest.date], now, result)

        log.info(f"[Proactive] Hot alerts for {hottest.date}: {result.dict()}")
        return result

    async def run_opportunity(self, snapshot: list[Appointment], now: datetime | None = None) -> DetectorResult:
        """Soonest open date this week, to users without an active subscription."""
        now = now or utcnow()
        result = DetectorResult(CATEGORY_OPPORTUNITY)
        today = local_today(self.timezone, now)

        best = soonest_within(snapshot, today, OPPORTUNITY_MAX_DAYS)
        if best is None:
            result.reason = "no appointments within 7 days"
            log.info("[Proactive] Opportunity: nothing within 7 days")
            return result

        subscribed = self.store.users_with_active_subscriptions()
        notification = Opportunity(date=best.date, times=list(best.times), booking_url=best.booking_url)
        key = opportunity_key(best.date)
        for user in self.store.active_users():
            if user.id in subscribed:
                continue
            if self.store.proactive_sent(user.id, CATEGORY_OPPORTUNITY, since=now - DAILY_WINDOW):
                result.skipped += 1
                continue
            await self._deliver(user.id, user.email, notification, CATEGORY_OPPORTUNITY, key, [best.date], now, result)

        log.info(f"[Proactive] Opportunity for {best.date}: {result.dict()}")
        return result

    async def run_weekly_digest(self, snapshot: list[Appointment], now: datetime | None = None) -> DetectorResult:
        """Everything open in the next seven days, once per calendar week."""
        now = now or utcnow()
        result = DetectorResult(CATEGORY_WEEKLY_DIGEST)
        today = local_today(self.timezone, now)

        days = sorted(
            (a for a in snapshot if a.has_times and 0 <= days_until(a.date, today) < DIGEST_DAYS),
            key=lambda a: a.date,
        )
        if not days:
            result.reason = "no appointments this week"
            log.info("[Proactive] Weekly digest: nothing open in the next 7 days")
            return result

        start = week_start(today)
        key = weekly_digest_key(start)
        notification = WeeklyDigest(days=days, week_start=today, week_end=today + timedelta(days=DIGEST_DAYS - 1))
        for user in self.store.active_users():
            if self.store.proactive_sent(user.id, CATEGORY_WEEKLY_DIGEST, key, since=now - WEEKLY_WINDOW):
                result.skipped += 1
                continue
            await self._deliver(
                user.id, user.email, notification, CATEGORY_WEEKLY_DIGEST, key, [d.date for d in days], now, result
            )

        log.info(f"[Proactive] Weekly digest for week of {start}: {result.dict()}")
        return result

    async def run_expiry_reminders(self, now: datetime | None = None) -> DetectorResult:
        """One reminder per range subscription ending today or tomorrow."""
        now = now or utcnow()
        result = DetectorResult(CATEGORY_EXPIRY_REMINDER)
        today = local_today(self.timezone, now)

        for sub in self.store.range_subscriptions_ending([today, today + timedelta(days=1)]):
            end = sub.date_range_end
            key = expiry_reminder_key(sub.id, end)
            if self.store.proactive_sent(sub.user_id, CATEGORY_EXPIRY_REMINDER, key):
                result.skipped += 1
                continue
            notification = ExpiryReminder(
                subscription_id=sub.id, expiry_date=end, days_remaining=days_until(end, today)
            )
            await self._deliver(sub.user_id, sub.email, notification, CATEGORY_EXPIRY_REMINDER, key, [end], now, result)

        log.info(f"[Proactive] Expiry reminders: {result.dict()}")
        return result

    async def run_inactivity(self, snapshot: list[Appointment], now: datetime | None = None) -> DetectorResult:
        """Nudge users who have not opened the app for a week while slots are open."""
        now = now or utcnow()
        result = DetectorResult(CATEGORY_INACTIVITY)
        today = local_today(self.timezone, now)

        open_days = sorted(
            a.date for a in snapshot if a.has_times and 0 <= days_until(a.date, today) <= INACTIVITY_AVAILABILITY_DAYS
        )
        if not open_days:
            result.reason = "no appointments within 14 days"
            log.info("[Proactive] Inactivity: nothing open within 14 days")
            return result

        cutoff = now - timedelta(days=INACTIVITY_DAYS)
        notification = Inactivity(available_days=len(open_days), soonest=open_days[0])
        key = inactivity_key(today)
        for user in self.store.active_users():
            prefs = self.store.get_preferences(user.id)
            last_seen = prefs.last_app_open or user.last_login or user.created_at
            if last_seen is None or last_seen > cutoff:
                continue
            if self.store.proactive_sent(user.id, CATEGORY_INACTIVITY, since=now - WEEKLY_WINDOW):
                result.skipped += 1
                continue
            await self._deliver(user.id, user.email, notification, CATEGORY_INACTIVITY, key, open_days[:1], now, result)

        log.info(f"[Proactive] Inactivity nudges: {result.dict()}")
        return result
