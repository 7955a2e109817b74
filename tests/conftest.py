"""Shared fixtures: a controllable clock, an in-memory store, a recording notifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from ecobin_ingest.config import AppConfig
from ecobin_ingest.models import GpsFix, RadioIndicators, TelemetryEvent

T0 = datetime(2025, 3, 10, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class MemoryStore:
    """Durable store double; units in ``fail_units`` raise on create."""

    def __init__(self) -> None:
        self.documents: list[dict] = []
        self.fail_units: set[str] = set()
        self._next = 0

    async def create(self, document: dict) -> str:
        if document["unit_id"] in self.fail_units:
            raise RuntimeError("store unavailable")
        self._next += 1
        self.documents.append(document)
        return f"rec-{self._next}"

    def for_unit(self, unit_id: str) -> list[dict]:
        return [d for d in self.documents if d["unit_id"] == unit_id]


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    def notify(self, unit_id: str, message: str, severity: str) -> None:
        self.calls.append((unit_id, message, severity))


def make_event(
    unit_id: str = "bin-001",
    observed_at: datetime = T0,
    weight: Optional[float] = 120.0,
    distance: Optional[float] = 80.0,
    fill_level: Optional[float] = 40.0,
    gps: Optional[GpsFix] = GpsFix(14.5995, 120.9842),
    gps_valid: bool = True,
    satellite_count: Optional[int] = 7,
    error_text: Optional[str] = None,
    radio: RadioIndicators = RadioIndicators(),
) -> TelemetryEvent:
    """A healthy, normal-priority reading unless overridden."""
    return TelemetryEvent(
        unit_id=unit_id,
        observed_at=observed_at,
        weight=weight,
        distance=distance,
        fill_level=fill_level,
        gps=gps,
        gps_valid=gps_valid,
        satellite_count=satellite_count,
        error_text=error_text,
        radio=radio,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()
