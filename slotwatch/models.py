"""Domain records shared by the notification pipeline.

Rows come out of the store as plain mappings; these dataclasses give the
services typed views with the documented defaults applied.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

# Delivery methods
METHOD_EMAIL = "email"
METHOD_PUSH = "push"
METHOD_BOTH = "both"
METHODS = (METHOD_EMAIL, METHOD_PUSH, METHOD_BOTH)

# Subscription statuses
SUB_ACTIVE = "active"
SUB_PAUSED = "paused"
SUB_COMPLETED = "completed"

# Queue statuses
QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_SENT = "sent"
QUEUE_SKIPPED = "skipped"
QUEUE_DEFERRED = "deferred"
QUEUE_FAILED = "failed"
QUEUE_OPEN = (QUEUE_PENDING, QUEUE_PROCESSING)
QUEUE_TERMINAL = (QUEUE_SENT, QUEUE_SKIPPED, QUEUE_FAILED)

# Notification categories
CATEGORY_APPOINTMENT = "appointment"
CATEGORY_HOT_ALERT = "hot_alert"
CATEGORY_OPPORTUNITY = "opportunity"
CATEGORY_WEEKLY_DIGEST = "weekly_digest"
CATEGORY_EXPIRY_REMINDER = "expiry_reminder"
CATEGORY_INACTIVITY = "inactivity"
PROACTIVE_CATEGORIES = (
    CATEGORY_HOT_ALERT,
    CATEGORY_OPPORTUNITY,
    CATEGORY_WEEKLY_DIGEST,
    CATEGORY_EXPIRY_REMINDER,
    CATEGORY_INACTIVITY,
)

# Push endpoint delivery status
DELIVERY_SUCCESS = "success"
DELIVERY_FAILED = "failed"
DELIVERY_PENDING = "pending"


def times_key(times: list[str]) -> str:
    """Canonical string for a set of time strings, used as the ledger key."""
    return ",".join(sorted(set(times)))


@dataclass
class Subscription:
    id: int
    user_id: int
    subscription_date: date | None = None
    date_range_start: date | None = None
    date_range_end: date | None = None
    status: str = SUB_ACTIVE
    method: str = METHOD_EMAIL
    is_active: bool = True
    email: str | None = None

    def __post_init__(self):
        has_single = self.subscription_date is not None
        has_range = self.date_range_start is not None or self.date_range_end is not None
        if has_single == has_range:
            raise ValueError("Subscription needs exactly one of a single date or a date range")
        if has_range:
            if self.date_range_start is None or self.date_range_end is None:
                raise ValueError("Date range needs both a start and an end")
            if self.date_range_start > self.date_range_end:
                raise ValueError("Date range start is after its end")
        if self.method not in METHODS:
            raise ValueError(f"Unknown notification method: {self.method}")

    @property
    def is_range(self) -> bool:
        return self.subscription_date is None

    @property
    def end_date(self) -> date:
        return self.date_range_end if self.is_range else self.subscription_date

    def covers(self, day: date) -> bool:
        if self.is_range:
            return self.date_range_start <= day <= self.date_range_end
        return day == self.subscription_date

    @classmethod
    def from_row(cls, row: Any) -> "Subscription":
        m = row._mapping if hasattr(row, "_mapping") else row
        return cls(
            id=m["id"],
            user_id=m["user_id"],
            subscription_date=m["subscription_date"],
            date_range_start=m["date_range_start"],
            date_range_end=m["date_range_end"],
            status=m["subscription_status"],
            method=m["notification_method"],
            is_active=bool(m["is_active"]),
            email=m.get("email"),
        )


@dataclass
class UserPreferences:
    """Per-user notification policy. An absent row means these defaults."""
    user_id: int
    default_notification_method: str = METHOD_EMAIL
    hot_alerts_enabled: bool = True
    proactive_notifications_enabled: bool = True
    weekly_digest_enabled: bool = True
    expiry_reminders_enabled: bool = True
    inactivity_alerts_enabled: bool = True
    max_notifications_per_day: int = 0  # 0 = unlimited
    notification_cooldown_minutes: int = 0
    proactive_cooldown_hours: int = 4
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    last_proactive_notification_at: datetime | None = None
    last_app_open: datetime | None = None

    def category_enabled(self, category: str) -> bool:
        flags = {
            CATEGORY_HOT_ALERT: self.hot_alerts_enabled,
            CATEGORY_OPPORTUNITY: self.proactive_notifications_enabled,
            CATEGORY_WEEKLY_DIGEST: self.weekly_digest_enabled,
            CATEGORY_EXPIRY_REMINDER: self.expiry_reminders_enabled,
            CATEGORY_INACTIVITY: self.inactivity_alerts_enabled,
        }
        # Appointment matches are opted into by the subscription itself
        return flags.get(category, True)

    @classmethod
    def from_row(cls, user_id: int, row: Any | None) -> "UserPreferences":
        if row is None:
            return cls(user_id=user_id)
        m = row._mapping if hasattr(row, "_mapping") else row
        kwargs = {}
        for name in cls.__dataclass_fields__:
            if name in m and m[name] is not None:
                kwargs[name] = m[name]
        kwargs["user_id"] = user_id
        return cls(**kwargs)


@dataclass
class PushEndpoint:
    id: int
    endpoint: str
    p256dh: str
    auth: str
    user_id: int | None = None
    device_type: str = "desktop"
    is_active: bool = True
    consecutive_failures: int = 0
    last_delivery_status: str = DELIVERY_PENDING
    last_failure_reason: str | None = None
    last_used: datetime | None = None

    def subscription_info(self) -> dict[str, Any]:
        """Shape expected by the Web Push library."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    @classmethod
    def from_row(cls, row: Any) -> "PushEndpoint":
        m = row._mapping if hasattr(row, "_mapping") else row
        return cls(**{k: m[k] for k in cls.__dataclass_fields__ if k in m})


@dataclass
class Appointment:
    """Availability for one date, as produced by a scan."""
    date: date
    available: bool
    times: list[str] = field(default_factory=list)
    day_name: str | None = None
    booking_url: str | None = None

    @property
    def has_times(self) -> bool:
        return self.available and bool(self.times)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "dayName": self.day_name,
            "available": self.available,
            "times": list(self.times),
            "bookingUrl": self.booking_url,
        }


@dataclass
class AppointmentMatch:
    """New times on one date for one subscription."""
    date: date
    new_times: list[str]
    booking_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), "new_times": list(self.new_times), "booking_url": self.booking_url}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "AppointmentMatch":
        day = d["date"]
        if isinstance(day, str):
            day = date.fromisoformat(day)
        return cls(date=day, new_times=list(d.get("new_times") or []), booking_url=d.get("booking_url"))


@dataclass
class QueueItem:
    id: int
    subscription_id: int
    matches: list[AppointmentMatch]
    status: str = QUEUE_PENDING
    created_at: datetime | None = None

    @property
    def is_grouped(self) -> bool:
        return len(self.matches) > 1

    @classmethod
    def from_row(cls, row: Any) -> "QueueItem":
        m = row._mapping if hasattr(row, "_mapping") else row
        if m["appointments"]:
            matches = [AppointmentMatch.from_dict(a) for a in m["appointments"]]
        else:
            matches = [
                AppointmentMatch(
                    date=m["appointment_date"],
                    new_times=list(m["new_times"] or []),
                    booking_url=m["booking_url"],
                )
            ]
        return cls(
            id=m["id"],
            subscription_id=m["subscription_id"],
            matches=matches,
            status=m["status"],
            created_at=m["created_at"],
        )
