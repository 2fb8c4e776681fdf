"""Tests for availability sources"""
from datetime import date

import httpx
import pytest

from conftest import JUNE_10, NOON_LOCAL, slot
from slotwatch.services.availability import (
    HttpAvailabilitySource,
    StoredAvailabilitySource,
    parse_snapshot_entry,
)


def test_parse_entry_fills_defaults():
    """Missing day name and booking URL are derived from the date"""
    appt = parse_snapshot_entry(
        {"date": "2025-06-10", "times": ["10:00", "09:00", "09:00"]},
        "https://book.example/{date}",
    )
    assert appt.date == JUNE_10
    assert appt.available is True
    assert appt.times == ["09:00", "10:00"]
    assert appt.day_name == "Tuesday"
    assert appt.booking_url == "https://book.example/2025-06-10"


def test_parse_entry_without_times_is_unavailable():
    """A date flagged available with no times is closed"""
    appt = parse_snapshot_entry({"date": "2025-06-10", "available": True, "times": []})
    assert appt.has_times is False


@pytest.mark.asyncio
async def test_http_source(settings):
    """The prober is asked for the scan dates and malformed entries are dropped"""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["dates"] = request.url.params["dates"]
        return httpx.Response(
            200,
            json={
                "results": [
                    {"date": "2025-06-10", "available": True, "times": ["09:00"], "bookingUrl": "https://x/1"},
                    {"date": "2025-06-11", "available": False, "times": []},
                    {"date": "not-a-date", "times": ["09:00"]},
                    {"date": "2025-07-01", "times": ["09:00"]},
                ]
            },
        )

    settings.AVAILABILITY_URL = "https://prober.example/scan"
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = HttpAvailabilitySource(settings, client=client)

    snapshot = await source.scan([JUNE_10, date(2025, 6, 11)])
    await source.close()

    assert seen["dates"] == "2025-06-10,2025-06-11"
    assert [a.date for a in snapshot] == [JUNE_10, date(2025, 6, 11)]
    assert snapshot[0].booking_url == "https://x/1"
    assert snapshot[1].has_times is False


@pytest.mark.asyncio
async def test_http_source_error_status_raises(settings):
    """A failing prober surfaces as an HTTP error"""
    settings.AVAILABILITY_URL = "https://prober.example/scan"
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    source = HttpAvailabilitySource(settings, client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await source.scan([JUNE_10])
    await source.close()


@pytest.mark.asyncio
async def test_stored_source_reads_last_checks(store):
    """Saved checks come back for the requested dates only"""
    store.save_appointment_checks(
        [slot(JUNE_10, "09:00"), slot(date(2025, 6, 11)), slot(date(2025, 6, 12), "12:00")], NOON_LOCAL
    )
    store.save_appointment_checks([slot(JUNE_10, "09:00", "10:00")], NOON_LOCAL)

    snapshot = await StoredAvailabilitySource(store).scan([JUNE_10, date(2025, 6, 11)])

    assert [a.date for a in snapshot] == [JUNE_10, date(2025, 6, 11)]
    assert snapshot[0].times == ["09:00", "10:00"]
    assert snapshot[1].available is False
