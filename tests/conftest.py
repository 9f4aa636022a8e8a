"""Shared fixtures for the test suite."""

from __future__ import annotations

from typing import Callable

import pytest
from dateutil import tz

from dps_event_notifier.db import EventStore
from dps_event_notifier.normalizer import Event, normalize

CHICAGO = tz.gettz("America/Chicago")


@pytest.fixture
def zone():
    return CHICAGO


@pytest.fixture
def store(tmp_path) -> EventStore:
    s = EventStore(str(tmp_path / "events.db"))
    s.init_db()
    return s


@pytest.fixture
def make_event(zone) -> Callable[..., Event]:
    def _make(event_id: str = "A1", title: str = "Hearing X",
              when: str = "2024-05-01T10:00Z", **extra) -> Event:
        raw = {"id": event_id, "title": title, "scheduledAt": when}
        raw.update(extra)
        return normalize(raw, zone)
    return _make
