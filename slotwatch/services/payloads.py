"""Channel payloads for every notification kind.

Each kind is its own dataclass carrying only the fields it needs.
``build_push`` and ``build_email`` dispatch on the type.
"""
from __future__ import annotations

import html
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from functools import singledispatch
from typing import Any, Union
from urllib.parse import quote

from ..messaging.resend_backend import html_to_text, render_template
from ..models import (
    CATEGORY_APPOINTMENT,
    CATEGORY_EXPIRY_REMINDER,
    CATEGORY_HOT_ALERT,
    CATEGORY_INACTIVITY,
    CATEGORY_OPPORTUNITY,
    CATEGORY_WEEKLY_DIGEST,
    Appointment,
    AppointmentMatch,
)
from .dates import format_day

log = logging.getLogger(__name__)

# Web Push services reject bodies over 4KB; aim lower for encryption overhead
MAX_PAYLOAD_SIZE = 3584
ABSOLUTE_MAX_SIZE = 4096

TITLE_MAX = 50
BODY_MAX = 100
ELLIPSIS = "…"

ICON = "/icons/icon-192x192.png"
BADGE = "/icons/icon-72x72.png"


# ==================== Notification kinds ====================


@dataclass
class AppointmentFound:
    subscription_id: int
    matches: list[AppointmentMatch]
    booking_url: str | None = None


@dataclass
class HotAlert:
    date: date
    times: list[str]
    days_until: int
    booking_url: str | None = None
    subscription_id: int | None = None


@dataclass
class Opportunity:
    date: date
    times: list[str]
    booking_url: str | None = None


@dataclass
class WeeklyDigest:
    days: list[Appointment]
    week_start: date
    week_end: date

    @property
    def total_times(self) -> int:
        return sum(len(d.times) for d in self.days)


@dataclass
class ExpiryReminder:
    subscription_id: int
    expiry_date: date
    days_remaining: int


@dataclass
class SubscriptionConfirmation:
    subscription_id: int
    method: str
    start: date
    end: date


@dataclass
class Inactivity:
    available_days: int
    soonest: date | None = None


Notification = Union[
    AppointmentFound, HotAlert, Opportunity, WeeklyDigest, ExpiryReminder, SubscriptionConfirmation, Inactivity
]

CATEGORY_BY_KIND = {
    AppointmentFound: CATEGORY_APPOINTMENT,
    HotAlert: CATEGORY_HOT_ALERT,
    Opportunity: CATEGORY_OPPORTUNITY,
    WeeklyDigest: CATEGORY_WEEKLY_DIGEST,
    ExpiryReminder: CATEGORY_EXPIRY_REMINDER,
    SubscriptionConfirmation: "subscription_confirm",
    Inactivity: CATEGORY_INACTIVITY,
}


def category_of(notification: Notification) -> str:
    return CATEGORY_BY_KIND[type(notification)]


# ==================== Text helpers ====================


def truncate(text: str | None, max_len: int) -> str:
    """Cut to ``max_len`` characters, ending with an ellipsis when cut."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + ELLIPSIS


def summarize(items: list[str], limit: int) -> str:
    """``a, b, c +K more`` for lists longer than ``limit``."""
    shown = ", ".join(items[:limit])
    extra = len(items) - limit
    if extra > 0:
        return f"{shown} +{extra} more"
    return shown


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _now_ms() -> int:
    return int(time.time() * 1000)


# ==================== Push ====================


@dataclass
class PushPayload:
    title: str
    body: str
    tag: str
    actions: list[dict[str, str]] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    require_interaction: bool = True

    def __post_init__(self):
        self.title = truncate(self.title, TITLE_MAX)
        self.body = truncate(self.body, BODY_MAX)

    @property
    def url(self) -> str:
        return self.data.get("url") or "/"

    def as_dict(self, ts: int | None = None) -> dict[str, Any]:
        notification: dict[str, Any] = {
            "title": self.title,
            "body": self.body,
            "icon": ICON,
            "badge": BADGE,
            "tag": self.tag,
            "requireInteraction": self.require_interaction,
            "data": {**self.data, "ts": ts if ts is not None else _now_ms()},
        }
        if self.actions:
            notification["actions"] = list(self.actions)
        return {"notification": notification, "badgeCount": 1}

    def to_json(self) -> str:
        """Encode for the push transport, shrinking until it fits."""
        ts = _now_ms()
        payload = self.as_dict(ts)
        notification = payload["notification"]

        encoded = _encode(payload)
        size = _size(encoded)
        if size <= MAX_PAYLOAD_SIZE:
            return encoded

        log.warning(f"[PushPayload] Reducing {self.tag} payload from {size} bytes")

        def _stage(name: str) -> bool:
            nonlocal encoded, size
            encoded = _encode(payload)
            size = _size(encoded)
            log.info(f"[PushPayload] After {name}: {size} bytes")
            return size <= MAX_PAYLOAD_SIZE

        if len(notification.get("actions", [])) > 1:
            notification["actions"] = notification["actions"][:1]
            if _stage("keeping first action"):
                return encoded

        if "actions" in notification:
            del notification["actions"]
            if _stage("removing actions"):
                return encoded

        notification["body"] = truncate(notification["body"], 50)
        if _stage("shortening body"):
            return encoded

        notification["data"] = {"url": self.url, "type": self.data.get("type"), "ts": ts}
        if _stage("minimizing data"):
            return encoded

        notification["title"] = truncate(notification["title"], 30)
        notification["body"] = truncate(notification["body"], 30)
        notification["data"] = {"url": "/", "ts": ts}
        if _stage("emergency reduction") or size < ABSOLUTE_MAX_SIZE:
            return encoded

        log.error(f"[PushPayload] Payload {size} bytes exceeds {ABSOLUTE_MAX_SIZE}, sending bare notification")
        return _encode(
            {
                "notification": {
                    "title": "New notification",
                    "body": "There is a new update",
                    "icon": ICON,
                    "badge": BADGE,
                    "tag": self.tag,
                    "data": {"url": "/", "ts": ts},
                },
                "badgeCount": 1,
            }
        )


def _encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _size(encoded: str) -> int:
    return len(encoded.encode("utf-8"))


def _view_actions(booking_url: str | None, book_title: str = "Book") -> list[dict[str, str]]:
    if booking_url:
        return [{"action": "book", "title": book_title}, {"action": "view", "title": "Details"}]
    return [{"action": "view", "title": "View"}]


def _inline_appointments(day: date, times: list[str]) -> str:
    return quote(json.dumps([{"date": day.isoformat(), "times": times[:6]}], separators=(",", ":")))


@singledispatch
def build_push(notification) -> PushPayload:
    raise TypeError(f"No push payload for {type(notification).__name__}")


@build_push.register
def _(n: AppointmentFound) -> PushPayload:
    count = len(n.matches)
    if count == 1:
        m = n.matches[0]
        title = f"🆕 Slot open {format_day(m.date)}"
        times = len(m.new_times)
        body = "⏰ 1 time available, book now!" if times == 1 else f"📅 {times} times: {summarize(m.new_times, 3)}"
    elif count <= 3:
        title = f"🆕 {count} dates available"
        body = "📅 " + summarize([format_day(m.date) for m in n.matches], 3)
    else:
        title = f"🎉 Found {count} available dates"
        body = "📅 " + summarize([format_day(m.date) for m in n.matches], 3)

    url = f"/notification-action?subscription={n.subscription_id}"
    if count <= 3:
        inline = [{"date": m.date.isoformat(), "times": m.new_times[:6]} for m in n.matches[:3]]
        url += "&appointments=" + quote(json.dumps(inline, separators=(",", ":")))
    else:
        url += "&dates=" + ",".join(m.date.isoformat() for m in n.matches[:10])

    data: dict[str, Any] = {"type": "appointment", "url": url, "subscription_id": n.subscription_id, "cnt": count}
    if n.booking_url:
        data["booking_url"] = n.booking_url
    return PushPayload(title, body, "appointment", _view_actions(n.booking_url), data)


@build_push.register
def _(n: HotAlert) -> PushPayload:
    if n.days_until == 0:
        title = "🔥 Today! Slot open"
    elif n.days_until == 1:
        title = "🔥 Tomorrow! Slot open"
    else:
        title = f"🔥 Hot slot on {format_day(n.date)}"
    if n.days_until <= 1:
        body = f"🚀 {_plural(len(n.times), 'time')} open, hurry!"
    else:
        body = f"📅 {format_day(n.date)}: {summarize(n.times, 3)}"

    url = "/notification-action?type=hot-alert"
    if n.subscription_id:
        url += f"&subscription={n.subscription_id}"
    url += "&appointments=" + _inline_appointments(n.date, n.times)
    if n.booking_url:
        url += "&booking_url=" + quote(n.booking_url, safe="")

    data: dict[str, Any] = {
        "type": "hot-alert",
        "url": url,
        "date": n.date.isoformat(),
        "urgent": n.days_until <= 1,
    }
    if n.booking_url:
        data["booking_url"] = n.booking_url
    return PushPayload(title, body, "hot-alert", _view_actions(n.booking_url, "Book now"), data)


@build_push.register
def _(n: Opportunity) -> PushPayload:
    title = f"✨ Opening on {format_day(n.date)}"
    body = f"🆕 {_plural(len(n.times), 'time')} just opened: {summarize(n.times, 3)}"
    url = "/notification-action?type=opportunity&appointments=" + _inline_appointments(n.date, n.times)
    if n.booking_url:
        url += "&booking_url=" + quote(n.booking_url, safe="")
    data: dict[str, Any] = {"type": "opportunity", "url": url, "date": n.date.isoformat()}
    if n.booking_url:
        data["booking_url"] = n.booking_url
    return PushPayload(title, body, "opportunity", _view_actions(n.booking_url), data, require_interaction=False)


@build_push.register
def _(n: WeeklyDigest) -> PushPayload:
    title = "📝 Your weekly summary"
    if n.days:
        body = f"⭐ {_plural(len(n.days), 'day')} with {_plural(n.total_times, 'open time')}: " + summarize(
            [format_day(d.date) for d in n.days], 5
        )
    else:
        body = "No open slots this week"
    url = (
        f"/weekly-digest?count={len(n.days)}&times={n.total_times}"
        f"&start={n.week_start.isoformat()}&end={n.week_end.isoformat()}"
    )
    data = {
        "type": "digest",
        "url": url,
        "available_count": len(n.days),
        "total_times": n.total_times,
        "week_start": n.week_start.isoformat(),
        "week_end": n.week_end.isoformat(),
    }
    return PushPayload(title, body, "weekly-digest", [{"action": "view", "title": "View"}], data, require_interaction=False)


@build_push.register
def _(n: ExpiryReminder) -> PushPayload:
    title = "⏳ Your alert ends today" if n.days_remaining == 0 else "⏳ Your alert ends tomorrow"
    body = "🔔 Want to keep watching for slots?"
    url = (
        f"/expiry-reminder?subscription={n.subscription_id}"
        f"&expiry={n.expiry_date.isoformat()}&remaining={n.days_remaining}"
    )
    data = {
        "type": "expiry",
        "url": url,
        "expiry": n.expiry_date.isoformat(),
        "remaining": n.days_remaining,
        "subscription_id": n.subscription_id,
    }
    actions = [{"action": "extend", "title": "Extend"}, {"action": "dismiss", "title": "Dismiss"}]
    return PushPayload(title, body, "expiry-reminder", actions, data)


@build_push.register
def _(n: SubscriptionConfirmation) -> PushPayload:
    method_text = {"both": "push + email", "push": "push", "email": "email"}.get(n.method, n.method)
    title = "✅ Alert created"
    body = f"📅 {format_day(n.start)} - {format_day(n.end)} ({method_text})"
    url = (
        f"/subscription-confirmed?start={n.start.isoformat()}&end={n.end.isoformat()}"
        f"&method={n.method}&subscription={n.subscription_id}"
    )
    data = {
        "type": "subscription",
        "url": url,
        "subscription_id": n.subscription_id,
        "date_start": n.start.isoformat(),
        "date_end": n.end.isoformat(),
        "method": n.method,
    }
    return PushPayload(
        title, body, "subscription-confirm", [{"action": "view", "title": "View"}], data, require_interaction=False
    )


@build_push.register
def _(n: Inactivity) -> PushPayload:
    title = "👋 We miss you"
    if n.soonest is not None:
        body = f"📅 {_plural(n.available_days, 'day')} with open slots, soonest {format_day(n.soonest)}"
    else:
        body = f"📅 {_plural(n.available_days, 'day')} with open slots in the next two weeks"
    data = {"type": "inactivity", "url": "/?source=inactivity", "available_days": n.available_days}
    return PushPayload(title, body, "inactivity", [{"action": "view", "title": "View"}], data, require_interaction=False)


# ==================== Email ====================


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


def _link(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path


def _generic_email(to: str, subject: str, heading: str, intro: str, items: list[str], cta_label: str, cta_url: str) -> EmailMessage:
    items_html = "".join(f"<li>{html.escape(item)}</li>" for item in items)
    body = render_template(
        "notification",
        heading=html.escape(heading),
        intro=html.escape(intro),
        items_html=f"<ul>{items_html}</ul>" if items else "",
        cta_label=html.escape(cta_label),
        cta_url=html.escape(cta_url),
    )
    return EmailMessage(to=to, subject=subject, html=body, text=html_to_text(body))


@singledispatch
def build_email(notification, to: str, base_url: str) -> EmailMessage:
    raise TypeError(f"No email for {type(notification).__name__}")


@build_email.register
def _(n: AppointmentFound, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    rows = "".join(
        f"<tr><td><strong>{html.escape(format_day(m.date))}</strong> ({m.date.isoformat()})</td>"
        f"<td>{html.escape(', '.join(m.new_times))}</td></tr>"
        for m in n.matches
    )
    booking = n.booking_url or _link(base_url, push.url)
    body = render_template(
        "appointment_found",
        heading=html.escape(push.title),
        count=len(n.matches),
        rows_html=rows,
        booking_url=html.escape(booking),
        manage_url=html.escape(_link(base_url, "/notifications")),
    )
    if len(n.matches) == 1:
        subject = f"New slot available on {format_day(n.matches[0].date)}"
    else:
        subject = f"{len(n.matches)} dates with new available slots"
    return EmailMessage(to=to, subject=subject, html=body, text=html_to_text(body))


@build_email.register
def _(n: HotAlert, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    return _generic_email(
        to,
        push.title,
        push.title,
        f"Slots just opened on {format_day(n.date)} ({n.date.isoformat()}).",
        list(n.times),
        "Book now" if n.booking_url else "View",
        n.booking_url or _link(base_url, push.url),
    )


@build_email.register
def _(n: Opportunity, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    return _generic_email(
        to,
        push.title,
        push.title,
        f"A slot opened on {format_day(n.date)} ({n.date.isoformat()}). Set up an alert so you never miss one.",
        list(n.times),
        "Book" if n.booking_url else "View",
        n.booking_url or _link(base_url, push.url),
    )


@build_email.register
def _(n: WeeklyDigest, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    items = [f"{format_day(d.date)}: {summarize(d.times, 10)}" for d in n.days]
    return _generic_email(
        to,
        f"Weekly summary {n.week_start.isoformat()} to {n.week_end.isoformat()}",
        push.title,
        push.body,
        items,
        "View all",
        _link(base_url, push.url),
    )


@build_email.register
def _(n: ExpiryReminder, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    return _generic_email(
        to,
        push.title,
        push.title,
        f"Your appointment alert ends on {n.expiry_date.isoformat()}. Extend it to keep getting notified.",
        [],
        "Extend alert",
        _link(base_url, push.url),
    )


@build_email.register
def _(n: SubscriptionConfirmation, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    return _generic_email(
        to,
        "Your appointment alert is set",
        push.title,
        push.body,
        [],
        "Manage alerts",
        _link(base_url, "/notifications"),
    )


@build_email.register
def _(n: Inactivity, to: str, base_url: str) -> EmailMessage:
    push = build_push(n)
    return _generic_email(
        to,
        "Open slots are waiting",
        push.title,
        push.body,
        [],
        "See what's open",
        _link(base_url, push.url),
    )
