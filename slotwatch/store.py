"""Row access for the notification pipeline.

All writes go through ``engine.begin()`` so each call is its own
transaction. Timestamps are stored as naive UTC.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable

import sqlalchemy
from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from . import tables as t
from .models import (
    QUEUE_DEFERRED,
    QUEUE_OPEN,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    SUB_ACTIVE,
    SUB_COMPLETED,
    Appointment,
    AppointmentMatch,
    PushEndpoint,
    QueueItem,
    Subscription,
    UserPreferences,
    times_key,
)

log = logging.getLogger(__name__)


class Store:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ==================== Generic ====================

    def _dialect_insert(self, table: sqlalchemy.Table):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    def insert_if_absent(self, table: sqlalchemy.Table, values: dict[str, Any], index_elements: list[str]) -> bool:
        """Insert a row unless one with the same unique key exists.

        Returns True when the row already existed (nothing was written).
        """
        stmt = self._dialect_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 0

    def upsert(self, table: sqlalchemy.Table, values: dict[str, Any], index_elements: list[str]) -> None:
        update = {k: v for k, v in values.items() if k not in index_elements}
        stmt = self._dialect_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=update)
        with self.engine.begin() as conn:
            conn.execute(stmt)

    # ==================== Users & preferences ====================

    def create_user(self, email: str | None, is_active: bool = True, created_at: datetime | None = None) -> int:
        values: dict[str, Any] = {"email": email, "is_active": is_active}
        if created_at is not None:
            values["created_at"] = created_at
        with self.engine.begin() as conn:
            result = conn.execute(t.users.insert().values(**values))
        return result.inserted_primary_key[0]

    def get_user_email(self, user_id: int) -> str | None:
        with self.engine.begin() as conn:
            return conn.execute(select(t.users.c.email).where(t.users.c.id == user_id)).scalar()

    def active_users(self) -> list[Any]:
        with self.engine.begin() as conn:
            return conn.execute(
                select(t.users.c.id, t.users.c.email, t.users.c.last_login, t.users.c.created_at)
                .where(t.users.c.is_active == sqlalchemy.true())
                .order_by(t.users.c.id)
            ).fetchall()

    def get_preferences(self, user_id: int) -> UserPreferences:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(t.user_preferences).where(t.user_preferences.c.user_id == user_id)
            ).fetchone()
        return UserPreferences.from_row(user_id, row)

    def upsert_preferences(self, user_id: int, **values: Any) -> None:
        self.upsert(t.user_preferences, {"user_id": user_id, **values}, ["user_id"])

    def touch_proactive(self, user_id: int, now: datetime) -> None:
        self.upsert_preferences(user_id, last_proactive_notification_at=now, updated_at=now)

    # ==================== Subscriptions ====================

    def create_subscription(
        self,
        user_id: int,
        subscription_date: date | None = None,
        date_range_start: date | None = None,
        date_range_end: date | None = None,
        method: str = "email",
        status: str = SUB_ACTIVE,
        is_active: bool = True,
    ) -> int:
        # Validates the single-date / range invariant before writing
        Subscription(
            id=0,
            user_id=user_id,
            subscription_date=subscription_date,
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            method=method,
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                t.notification_subscriptions.insert().values(
                    user_id=user_id,
                    subscription_date=subscription_date,
                    date_range_start=date_range_start,
                    date_range_end=date_range_end,
                    notification_method=method,
                    subscription_status=status,
                    is_active=is_active,
                )
            )
        return result.inserted_primary_key[0]

    def _subscription_query(self):
        s = t.notification_subscriptions
        return select(s, t.users.c.email).select_from(s.outerjoin(t.users, t.users.c.id == s.c.user_id))

    def get_subscription(self, subscription_id: int) -> Subscription | None:
        s = t.notification_subscriptions
        with self.engine.begin() as conn:
            row = conn.execute(self._subscription_query().where(s.c.id == subscription_id)).fetchone()
        return Subscription.from_row(row) if row else None

    def active_subscriptions(self, start: date | None = None, end: date | None = None) -> list[Subscription]:
        """Active subscriptions, optionally only those overlapping ``[start, end]``."""
        s = t.notification_subscriptions
        query = self._subscription_query().where(
            s.c.is_active == sqlalchemy.true(), s.c.subscription_status == SUB_ACTIVE
        )
        if start is not None and end is not None:
            query = query.where(
                or_(
                    and_(s.c.subscription_date >= start, s.c.subscription_date <= end),
                    and_(s.c.date_range_start <= end, s.c.date_range_end >= start),
                )
            )
        with self.engine.begin() as conn:
            rows = conn.execute(query.order_by(s.c.id)).fetchall()
        return [Subscription.from_row(r) for r in rows]

    def users_with_active_subscriptions(self) -> set[int]:
        s = t.notification_subscriptions
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(s.c.user_id).where(
                    s.c.is_active == sqlalchemy.true(), s.c.subscription_status == SUB_ACTIVE
                ).distinct()
            ).fetchall()
        return {r.user_id for r in rows}

    def range_subscriptions_ending(self, days: Iterable[date]) -> list[Subscription]:
        s = t.notification_subscriptions
        days = list(days)
        with self.engine.begin() as conn:
            rows = conn.execute(
                self._subscription_query()
                .where(
                    s.c.is_active == sqlalchemy.true(),
                    s.c.subscription_status == SUB_ACTIVE,
                    s.c.date_range_end.in_(days),
                )
                .order_by(s.c.id)
            ).fetchall()
        return [Subscription.from_row(r) for r in rows]

    def complete_expired_subscriptions(self, today: date, now: datetime) -> int:
        s = t.notification_subscriptions
        with self.engine.begin() as conn:
            result = conn.execute(
                s.update()
                .where(
                    s.c.subscription_status == SUB_ACTIVE,
                    or_(
                        and_(s.c.subscription_date.isnot(None), s.c.subscription_date < today),
                        and_(s.c.date_range_end.isnot(None), s.c.date_range_end < today),
                    ),
                )
                .values(subscription_status=SUB_COMPLETED, is_active=False, completed_at=now)
            )
        return result.rowcount

    # ==================== Ledger & ignored times ====================

    def notified_times(self, subscription_id: int, days: Iterable[date]) -> dict[date, set[str]]:
        na = t.notified_appointments
        out: dict[date, set[str]] = {}
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(na.c.appointment_date, na.c.notified_times).where(
                    na.c.subscription_id == subscription_id, na.c.appointment_date.in_(list(days))
                )
            ).fetchall()
        for row in rows:
            out.setdefault(row.appointment_date, set()).update(row.notified_times or [])
        return out

    def ledger_has(self, subscription_id: int, day: date, times: list[str], since: datetime) -> bool:
        na = t.notified_appointments
        with self.engine.begin() as conn:
            row = conn.execute(
                select(na.c.id).where(
                    na.c.subscription_id == subscription_id,
                    na.c.appointment_date == day,
                    na.c.notified_times_key == times_key(times),
                    na.c.notification_sent_at >= since,
                ).limit(1)
            ).fetchone()
        return row is not None

    def record_notified(self, subscription_id: int, day: date, times: list[str], now: datetime) -> bool:
        """Write a ledger row. Returns True when it was already there."""
        return self.insert_if_absent(
            t.notified_appointments,
            {
                "subscription_id": subscription_id,
                "appointment_date": day,
                "notified_times": sorted(set(times)),
                "notified_times_key": times_key(times),
                "notification_sent_at": now,
            },
            ["subscription_id", "appointment_date", "notified_times_key"],
        )

    def ignored_times(self, user_id: int, days: Iterable[date]) -> dict[date, set[str]]:
        it = t.ignored_appointment_times
        out: dict[date, set[str]] = {}
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(it.c.appointment_date, it.c.ignored_times).where(
                    it.c.user_id == user_id, it.c.appointment_date.in_(list(days))
                )
            ).fetchall()
        for row in rows:
            out.setdefault(row.appointment_date, set()).update(row.ignored_times or [])
        return out

    def ignore_times(self, user_id: int, day: date, times: list[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                t.ignored_appointment_times.insert().values(
                    user_id=user_id, appointment_date=day, ignored_times=sorted(set(times))
                )
            )

    # ==================== Queue ====================

    def enqueue(self, subscription_id: int, matches: list[AppointmentMatch], fingerprint: str, now: datetime) -> int:
        values: dict[str, Any] = {
            "subscription_id": subscription_id,
            "fingerprint": fingerprint,
            "status": QUEUE_PENDING,
            "created_at": now,
        }
        if len(matches) == 1:
            values["appointment_date"] = matches[0].date
            values["new_times"] = list(matches[0].new_times)
            values["booking_url"] = matches[0].booking_url
            values["appointments"] = None
        else:
            values["appointments"] = [m.to_dict() for m in matches]
        with self.engine.begin() as conn:
            result = conn.execute(t.notification_queue.insert().values(**values))
        return result.inserted_primary_key[0]

    def open_item_exists(self, subscription_id: int, fingerprint: str) -> bool:
        q = t.notification_queue
        with self.engine.begin() as conn:
            row = conn.execute(
                select(q.c.id).where(
                    q.c.subscription_id == subscription_id,
                    q.c.fingerprint == fingerprint,
                    q.c.status.in_(QUEUE_OPEN),
                ).limit(1)
            ).fetchone()
        return row is not None

    def rearm_deferred(self, subscription_id: int, fingerprint: str) -> int | None:
        """Put a deferred item with this content back to pending. Returns its id."""
        q = t.notification_queue
        with self.engine.begin() as conn:
            row = conn.execute(
                select(q.c.id)
                .where(
                    q.c.subscription_id == subscription_id,
                    q.c.fingerprint == fingerprint,
                    q.c.status == QUEUE_DEFERRED,
                )
                .order_by(q.c.id.desc())
                .limit(1)
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                q.update().where(q.c.id == row.id).values(status=QUEUE_PENDING, error_message=None, processed_at=None)
            )
        return row.id

    def pending_items(self, limit: int, stale_before: datetime | None = None) -> list[QueueItem]:
        """Pending items, oldest first.

        With ``stale_before``, items stuck in processing since before that
        time are picked up again.
        """
        q = t.notification_queue
        condition = q.c.status == QUEUE_PENDING
        if stale_before is not None:
            condition = or_(
                condition,
                and_(q.c.status == QUEUE_PROCESSING, q.c.processed_at < stale_before),
            )
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(q).where(condition).order_by(q.c.created_at, q.c.id).limit(limit)
            ).fetchall()
        return [QueueItem.from_row(r) for r in rows]

    def queue_items(self, subscription_id: int | None = None) -> list[Any]:
        q = t.notification_queue
        query = select(q).order_by(q.c.id)
        if subscription_id is not None:
            query = query.where(q.c.subscription_id == subscription_id)
        with self.engine.begin() as conn:
            return conn.execute(query).fetchall()

    def set_queue_status(self, item_id: int, status: str, now: datetime, error_message: str | None = None) -> None:
        q = t.notification_queue
        with self.engine.begin() as conn:
            conn.execute(
                q.update()
                .where(q.c.id == item_id)
                .values(status=status, error_message=error_message, processed_at=now)
            )

    def delete_queue_items(self, statuses: Iterable[str], before: datetime) -> int:
        q = t.notification_queue
        with self.engine.begin() as conn:
            result = conn.execute(q.delete().where(q.c.status.in_(list(statuses)), q.c.created_at < before))
        return result.rowcount

    # ==================== In-app notifications ====================

    def create_in_app_notification(
        self,
        user_id: int,
        title: str,
        body: str | None,
        category: str,
        now: datetime,
        data: dict[str, Any] | None = None,
    ) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                t.in_app_notifications.insert().values(
                    user_id=user_id,
                    title=title,
                    body=body,
                    notification_type=category,
                    data=data,
                    is_read=False,
                    created_at=now,
                )
            )
        return result.inserted_primary_key[0]

    def count_deliveries_since(self, user_id: int, since: datetime) -> int:
        n = t.in_app_notifications
        with self.engine.begin() as conn:
            return conn.execute(
                select(func.count()).select_from(n).where(n.c.user_id == user_id, n.c.created_at >= since)
            ).scalar() or 0

    def last_delivery_at(self, user_id: int, category: str) -> datetime | None:
        n = t.in_app_notifications
        with self.engine.begin() as conn:
            return conn.execute(
                select(func.max(n.c.created_at)).where(n.c.user_id == user_id, n.c.notification_type == category)
            ).scalar()

    # ==================== Proactive log ====================

    def proactive_sent(
        self,
        user_id: int,
        category: str,
        dedup_key: str | None = None,
        since: datetime | None = None,
    ) -> bool:
        p = t.proactive_notification_log
        query = select(p.c.id).where(p.c.user_id == user_id, p.c.notification_type == category)
        if dedup_key is not None:
            query = query.where(p.c.dedup_key == dedup_key)
        if since is not None:
            query = query.where(p.c.sent_at >= since)
        with self.engine.begin() as conn:
            return conn.execute(query.limit(1)).fetchone() is not None

    def log_proactive(
        self,
        user_id: int,
        category: str,
        dedup_key: str,
        related_dates: list[str],
        now: datetime,
        push_sent: bool,
        email_sent: bool,
        in_app_created: bool,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                t.proactive_notification_log.insert().values(
                    user_id=user_id,
                    notification_type=category,
                    related_dates=related_dates,
                    dedup_key=dedup_key,
                    data=data,
                    push_sent=push_sent,
                    email_sent=email_sent,
                    in_app_created=in_app_created,
                    sent_at=now,
                )
            )

    def proactive_log(self, user_id: int | None = None) -> list[Any]:
        p = t.proactive_notification_log
        query = select(p).order_by(p.c.id)
        if user_id is not None:
            query = query.where(p.c.user_id == user_id)
        with self.engine.begin() as conn:
            return conn.execute(query).fetchall()

    # ==================== Appointment checks ====================

    def save_appointment_checks(self, appointments: list[Appointment], now: datetime) -> None:
        for appt in appointments:
            self.upsert(
                t.appointment_checks,
                {
                    "check_date": appt.date,
                    "available": appt.has_times,
                    "times": list(appt.times),
                    "day_name": appt.day_name,
                    "booking_url": appt.booking_url,
                    "checked_at": now,
                },
                ["check_date"],
            )

    def load_appointment_checks(self, start: date, end: date) -> list[Appointment]:
        c = t.appointment_checks
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(c).where(c.c.check_date >= start, c.c.check_date <= end).order_by(c.c.check_date)
            ).fetchall()
        return [
            Appointment(
                date=r.check_date,
                available=bool(r.available),
                times=list(r.times or []),
                day_name=r.day_name,
                booking_url=r.booking_url,
            )
            for r in rows
        ]

    # ==================== Push endpoints ====================

    def active_push_endpoints(self, user_id: int) -> list[PushEndpoint]:
        p = t.push_subscriptions
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(p).where(p.c.user_id == user_id, p.c.is_active == sqlalchemy.true()).order_by(p.c.id)
            ).fetchall()
        return [PushEndpoint.from_row(r) for r in rows]

    def get_push_endpoint(self, endpoint_id: int) -> PushEndpoint | None:
        p = t.push_subscriptions
        with self.engine.begin() as conn:
            row = conn.execute(select(p).where(p.c.id == endpoint_id)).fetchone()
        return PushEndpoint.from_row(row) if row else None

    def upsert_push_endpoint(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_id: int | None,
        device_type: str,
        now: datetime,
    ) -> int:
        self.upsert(
            t.push_subscriptions,
            {
                "endpoint": endpoint,
                "p256dh": p256dh,
                "auth": auth,
                "user_id": user_id,
                "device_type": device_type,
                "is_active": True,
                "consecutive_failures": 0,
                "last_delivery_status": "pending",
                "last_failure_reason": None,
                "last_used": now,
            },
            ["endpoint"],
        )
        p = t.push_subscriptions
        with self.engine.begin() as conn:
            return conn.execute(select(p.c.id).where(p.c.endpoint == endpoint)).scalar()

    def delete_push_endpoint(self, endpoint: str, user_id: int | None = None) -> int:
        p = t.push_subscriptions
        stmt = p.delete().where(p.c.endpoint == endpoint)
        if user_id is not None:
            stmt = stmt.where(p.c.user_id == user_id)
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    def update_push_endpoint(self, endpoint_id: int, **values: Any) -> None:
        p = t.push_subscriptions
        with self.engine.begin() as conn:
            conn.execute(p.update().where(p.c.id == endpoint_id).values(**values))

    def increment_push_failures(self, endpoint_id: int) -> int:
        """Bump the consecutive failure counter and return its new value."""
        p = t.push_subscriptions
        with self.engine.begin() as conn:
            conn.execute(
                p.update()
                .where(p.c.id == endpoint_id)
                .values(consecutive_failures=p.c.consecutive_failures + 1)
            )
            return conn.execute(select(p.c.consecutive_failures).where(p.c.id == endpoint_id)).scalar() or 0

    # ==================== Delivery log ====================

    def log_notification(
        self,
        user_id: int,
        channel: str,
        title: str,
        status: str,
        now: datetime,
        push_subscription_id: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Record one channel attempt. Failures here never break delivery."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    t.notification_logs.insert().values(
                        user_id=user_id,
                        push_subscription_id=push_subscription_id,
                        notification_type=channel,
                        title=title,
                        status=status,
                        error_message=error_message,
                        created_at=now,
                    )
                )
        except sqlalchemy.exc.SQLAlchemyError as e:
            log.error(f"[Store] Failed to log notification: {e}")

    def notification_logs(self, user_id: int) -> list[Any]:
        n = t.notification_logs
        with self.engine.begin() as conn:
            return conn.execute(select(n).where(n.c.user_id == user_id).order_by(n.c.id)).fetchall()
