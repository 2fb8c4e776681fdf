from __future__ import annotations

import logging
from datetime import date
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..models import Appointment
from ..store import Store
from .dates import booking_url, day_name

log = logging.getLogger(__name__)


class AvailabilitySource(Protocol):
    async def scan(self, dates: list[date]) -> list[Appointment]:
        ...


def parse_snapshot_entry(entry: dict[str, Any], url_template: str = "") -> Appointment:
    """Turn one prober JSON entry into an Appointment."""
    day = date.fromisoformat(str(entry["date"])[:10])
    times = sorted({str(t) for t in entry.get("times") or []})
    available = bool(entry.get("available", bool(times))) and bool(times)
    return Appointment(
        date=day,
        available=available,
        times=times,
        day_name=entry.get("dayName") or day_name(day),
        booking_url=entry.get("bookingUrl") or booking_url(url_template, day),
    )


class HttpAvailabilitySource:
    """Fetch a snapshot from the prober service.

    The prober answers ``GET {AVAILABILITY_URL}?dates=YYYY-MM-DD,...`` with a
    JSON list (or ``{"results": [...]}``) of
    ``{date, dayName, available, times, bookingUrl}`` entries.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.url = settings.AVAILABILITY_URL
        self.timeout = settings.AVAILABILITY_TIMEOUT_SECONDS
        self.url_template = settings.BOOKING_URL_TEMPLATE
        self._client = client

    async def _client_ctx(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def scan(self, dates: list[date]) -> list[Appointment]:
        if not dates:
            return []
        if not self.url:
            log.warning("[Availability] AVAILABILITY_URL not configured, nothing scanned")
            return []

        c = await self._client_ctx()
        r = await c.get(self.url, params={"dates": ",".join(d.isoformat() for d in dates)})
        r.raise_for_status()
        body = r.json()
        entries = body.get("results", []) if isinstance(body, dict) else body

        wanted = set(dates)
        out = []
        for entry in entries:
            try:
                appt = parse_snapshot_entry(entry, self.url_template)
            except (KeyError, ValueError) as e:
                log.warning(f"[Availability] Skipping malformed entry {entry!r}: {e}")
                continue
            if appt.date in wanted:
                out.append(appt)
        log.info(f"[Availability] Scanned {len(dates)} dates, {sum(1 for a in out if a.has_times)} with open times")
        return out


class StoredAvailabilitySource:
    """Serve the last persisted snapshot from appointment_checks."""

    def __init__(self, store: Store):
        self.store = store

    async def scan(self, dates: list[date]) -> list[Appointment]:
        if not dates:
            return []
        wanted = set(dates)
        rows = self.store.load_appointment_checks(min(dates), max(dates))
        return [a for a in rows if a.date in wanted]
