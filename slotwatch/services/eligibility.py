"""Per-user notification policy.

Checks run in a fixed order and stop at the first block: category opt-out,
quiet hours, daily cap, then cooldown. Blocks are returned as values, never
raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from ..models import (
    CATEGORY_APPOINTMENT,
    CATEGORY_EXPIRY_REMINDER,
    CATEGORY_INACTIVITY,
    UserPreferences,
)
from ..store import Store
from .dates import local_midnight_utc, parse_hhmm, to_local, utcnow

log = logging.getLogger(__name__)

REASON_OPTED_OUT = "opted_out"
REASON_QUIET_HOURS = "quiet_hours"
REASON_DAILY_LIMIT = "daily_limit_reached"
REASON_COOLDOWN = "cooldown"

INACTIVITY_COOLDOWN_MINUTES = 7 * 24 * 60


@dataclass
class Eligibility:
    allowed: bool
    reason: str | None = None
    remaining_minutes: int | None = None

    def dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason, "remaining_minutes": self.remaining_minutes}


def is_within_quiet_hours(current: time, start: str | None, end: str | None) -> bool:
    """Inclusive containment; a window with start > end wraps midnight."""
    if not start or not end:
        return False
    start_t = parse_hhmm(start)
    end_t = parse_hhmm(end)
    now_t = time(current.hour, current.minute)
    if start_t > end_t:
        return now_t >= start_t or now_t <= end_t
    return start_t <= now_t <= end_t


def cooldown_minutes(prefs: UserPreferences, category: str) -> int:
    if category == CATEGORY_APPOINTMENT:
        return prefs.notification_cooldown_minutes or 0
    if category == CATEGORY_EXPIRY_REMINDER:
        # Once per subscription end date, deduplicated by the engine
        return 0
    if category == CATEGORY_INACTIVITY:
        return INACTIVITY_COOLDOWN_MINUTES
    return (prefs.proactive_cooldown_hours or 0) * 60


class EligibilityGate:
    def __init__(self, store: Store, timezone: str):
        self.store = store
        self.timezone = timezone

    def evaluate(self, user_id: int, category: str, now: datetime | None = None) -> Eligibility:
        now = now or utcnow()
        prefs = self.store.get_preferences(user_id)

        if not prefs.category_enabled(category):
            log.info(f"[Gate] User {user_id} opted out of {category}")
            return Eligibility(False, REASON_OPTED_OUT)

        local_time = to_local(now, self.timezone).time()
        if is_within_quiet_hours(local_time, prefs.quiet_hours_start, prefs.quiet_hours_end):
            log.info(
                f"[Gate] User {user_id} in quiet hours "
                f"({local_time.strftime('%H:%M')} within {prefs.quiet_hours_start}-{prefs.quiet_hours_end})"
            )
            return Eligibility(False, REASON_QUIET_HOURS)

        cap = prefs.max_notifications_per_day or 0
        if cap > 0:
            sent_today = self.store.count_deliveries_since(user_id, local_midnight_utc(self.timezone, now))
            if sent_today >= cap:
                log.info(f"[Gate] User {user_id} reached daily limit ({sent_today}/{cap})")
                return Eligibility(False, REASON_DAILY_LIMIT)

        threshold = cooldown_minutes(prefs, category)
        if threshold > 0:
            last = self.store.last_delivery_at(user_id, category)
            if last is not None:
                elapsed = now - last
                if elapsed < timedelta(minutes=threshold):
                    remaining = threshold - int(elapsed.total_seconds() // 60)
                    log.info(f"[Gate] User {user_id} in {category} cooldown, {remaining}min remaining")
                    return Eligibility(False, REASON_COOLDOWN, remaining_minutes=remaining)

        return Eligibility(True)
