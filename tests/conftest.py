"""Shared fixtures: an in-memory database and fake transports."""
from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from slotwatch.config import Settings
from slotwatch.messaging.webpush import PushResult
from slotwatch.models import Appointment
from slotwatch.store import Store
from slotwatch.tables import metadata

# 12:00 in Asia/Jerusalem (UTC+3 in June)
NOON_LOCAL = datetime(2025, 6, 8, 9, 0)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def settings():
    return Settings(
        TIMEZONE="Asia/Jerusalem",
        EMAIL_BACKEND="console",
        PUSH_BACKEND="dummy",
        AVAILABILITY_URL="",
        BOOKING_URL_TEMPLATE="https://book.example/{date}",
        PUBLIC_BASE_URL="https://app.example",
        EMAIL_TIMEOUT_SECONDS=1,
        PUSH_TIMEOUT_SECONDS=1,
        QUEUE_BATCH_LIMIT=10,
        RUN_TIME_BUDGET_SECONDS=25,
        SCAN_DAYS=30,
    )


@pytest.fixture
def email_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def push_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=PushResult(ok=True, status=201, detail="success"))
    return sender


@pytest.fixture
def now():
    return NOON_LOCAL


def make_user(store, email="user@example.com", **prefs):
    user_id = store.create_user(email, created_at=datetime(2025, 1, 1))
    if prefs:
        store.upsert_preferences(user_id, **prefs)
    return user_id


def add_endpoint(store, user_id, name="a"):
    return store.upsert_push_endpoint(
        f"https://push.example/{user_id}/{name}", "p256dh-key", "auth-key", user_id, "desktop", NOON_LOCAL
    )


def slot(day, *times, booking_url=None):
    return Appointment(date=day, available=bool(times), times=list(times), booking_url=booking_url)


JUNE_10 = date(2025, 6, 10)
