from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from ..models import Appointment, AppointmentMatch, Subscription, times_key
from ..store import Store
from .dates import utcnow

log = logging.getLogger(__name__)


def fingerprint(matches: list[AppointmentMatch]) -> str:
    """Stable identity of a queue item's content."""
    parts = sorted(f"{m.date.isoformat()}={times_key(m.new_times)}" for m in matches)
    return "|".join(parts)


@dataclass
class MatchResult:
    subscriptions_checked: int = 0
    queued: int = 0
    duplicates: int = 0
    queue_ids: list[int] = field(default_factory=list)

    def dict(self) -> dict:
        return {
            "subscriptionsChecked": self.subscriptions_checked,
            "queued": self.queued,
            "duplicates": self.duplicates,
        }


class SubscriptionMatcher:
    """Intersect an availability snapshot with active subscriptions."""

    def __init__(self, store: Store):
        self.store = store

    def new_times_for(
        self,
        subscription: Subscription,
        snapshot: list[Appointment],
    ) -> list[AppointmentMatch]:
        """Times on covered dates not yet notified or ignored for this subscription."""
        covered = [a for a in snapshot if a.has_times and subscription.covers(a.date)]
        if not covered:
            return []

        days = [a.date for a in covered]
        notified = self.store.notified_times(subscription.id, days)
        ignored = self.store.ignored_times(subscription.user_id, days)

        matches = []
        for appt in sorted(covered, key=lambda a: a.date):
            seen = notified.get(appt.date, set()) | ignored.get(appt.date, set())
            new_times = sorted(set(appt.times) - seen)
            if new_times:
                matches.append(AppointmentMatch(date=appt.date, new_times=new_times, booking_url=appt.booking_url))
        return matches

    def match(self, snapshot: list[Appointment], now: datetime | None = None) -> MatchResult:
        """Queue one item per subscription that has new times in ``snapshot``."""
        now = now or utcnow()
        result = MatchResult()
        open_dates = [a.date for a in snapshot if a.has_times]
        if not open_dates:
            log.info("[Matcher] Snapshot has no open times, nothing to match")
            return result

        subscriptions = self.store.active_subscriptions(min(open_dates), max(open_dates))
        result.subscriptions_checked = len(subscriptions)

        for sub in subscriptions:
            matches = self.new_times_for(sub, snapshot)
            if not matches:
                continue

            fp = fingerprint(matches)
            if self.store.open_item_exists(sub.id, fp):
                log.info(f"[Matcher] Subscription {sub.id} already has an open item for {fp}")
                result.duplicates += 1
                continue

            rearmed = self.store.rearm_deferred(sub.id, fp)
            if rearmed is not None:
                log.info(f"[Matcher] Deferred item {rearmed} for subscription {sub.id} is pending again")
                result.queued += 1
                result.queue_ids.append(rearmed)
                continue

            item_id = self.store.enqueue(sub.id, matches, fp, now)
            result.queued += 1
            result.queue_ids.append(item_id)
            log.info(
                f"[Matcher] Queued item {item_id} for subscription {sub.id}: "
                f"{len(matches)} date(s), {sum(len(m.new_times) for m in matches)} new time(s)"
            )

        return result

    def complete_expired_subscriptions(self, today: date, now: datetime | None = None) -> int:
        count = self.store.complete_expired_subscriptions(today, now or utcnow())
        if count:
            log.info(f"[Matcher] Completed {count} expired subscription(s)")
        return count
