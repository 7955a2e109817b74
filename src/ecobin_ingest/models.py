"""Dataclass models for Ecobin telemetry events, records and health state.

All models are designed to be serializable via ``dataclasses.asdict()``
followed by ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class Priority(str, enum.Enum):
    """Persistence urgency tier."""

    CRITICAL = "critical"
    WARNING = "warning"
    NORMAL = "normal"


# Drain order used by flush_all and shutdown.
TIERS = (Priority.CRITICAL, Priority.WARNING, Priority.NORMAL)


class HealthState(str, enum.Enum):
    """Connection health states of a unit."""

    ONLINE = "online"
    SUSPECTED = "suspected"
    OFFLINE = "offline"


class ErrorCategory(str, enum.Enum):
    """Normalized error categories derived from unit error text."""

    MALFUNCTION = "MALFUNCTION"
    SENSOR_FAILURE = "SENSOR_FAILURE"
    COMMUNICATION_LOST = "COMMUNICATION_LOST"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    POWER_FAILURE = "POWER_FAILURE"
    GPS_INVALID = "GPS_INVALID"
    LOW_SATELLITES = "LOW_SATELLITES"
    HIGH_BIN_LEVEL = "HIGH_BIN_LEVEL"
    WEIGHT_ANOMALY = "WEIGHT_ANOMALY"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class GpsFix:
    """A latitude/longitude pair as reported by the unit."""

    lat: float = 0.0
    lng: float = 0.0

    @property
    def is_zero(self) -> bool:
        return self.lat == 0 and self.lng == 0


@dataclass(frozen=True)
class RadioIndicators:
    """Optional modem/radio signals used only by the health scorer.

    Every field may be ``None``; an absent indicator contributes nothing to
    the connection score.
    """

    signal_quality: Optional[int] = None
    registration: Optional[int] = None
    session_active: Optional[bool] = None
    uptime_sec: Optional[int] = None
    message_seq: Optional[int] = None


@dataclass(frozen=True)
class TelemetryEvent:
    """A single telemetry reading from a unit.

    Created once at ingress by the decoder and never mutated afterwards.
    """

    unit_id: str
    observed_at: datetime
    weight: Optional[float] = None
    distance: Optional[float] = None
    fill_level: Optional[float] = None
    gps: Optional[GpsFix] = None
    gps_valid: bool = False
    satellite_count: Optional[int] = None
    error_text: Optional[str] = None
    radio: RadioIndicators = field(default_factory=RadioIndicators)


@dataclass
class ValidationResult:
    """Outcome of range checks on a :class:`TelemetryEvent`."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


@dataclass
class Classification:
    """Priority tier plus the reasons that produced it."""

    priority: Priority = Priority.NORMAL
    reasons: list[str] = field(default_factory=list)

    @property
    def should_save_immediately(self) -> bool:
        return self.priority is Priority.CRITICAL

    @property
    def should_buffer(self) -> bool:
        return not self.should_save_immediately


@dataclass(frozen=True)
class ClassifiedRecord:
    """An accepted event together with its classification.

    Either persisted immediately (critical) or held in a buffer slot.
    """

    event: TelemetryEvent
    priority: Priority
    status: str
    error_category: Optional[ErrorCategory]
    reasons: tuple[str, ...]
    buffered_at: datetime

    @property
    def unit_id(self) -> str:
        return self.event.unit_id

    def to_document(self, created_at: datetime) -> dict:
        """Build the payload handed to the durable store."""
        ev = self.event
        gps = ev.gps or GpsFix()
        return {
            "unit_id": ev.unit_id,
            "weight": ev.weight or 0.0,
            "distance": ev.distance or 0.0,
            "fill_level": ev.fill_level or 0.0,
            "gps": {"lat": gps.lat, "lng": gps.lng},
            "gps_valid": ev.gps_valid,
            "satellite_count": ev.satellite_count or 0,
            "status": self.status,
            "error_category": self.error_category.value if self.error_category else None,
            "error_text": ev.error_text,
            "priority": self.priority.value,
            "reasons": list(self.reasons),
            "observed_at": ev.observed_at.isoformat(),
            "created_at": created_at.isoformat(),
        }


@dataclass
class DuplicateTrackerEntry:
    """Per ``(unit, category)`` occurrence tracking."""

    last_seen: datetime
    count: int = 1
    day_count: int = 1
    day: str = ""


@dataclass
class DuplicateVerdict:
    """Result of a duplicate check; ``reason`` is set only when suppressed."""

    is_duplicate: bool = False
    category: Optional[ErrorCategory] = None
    reason: Optional[str] = None
    seconds_since_last: Optional[float] = None
    count: int = 0
    day_count: int = 0


@dataclass
class ConnectionState:
    """Per-unit health state machine memory."""

    state: Optional[HealthState] = None
    last_score: int = 0
    low_count: int = 0
    mid_count: int = 0
    last_uptime: Optional[int] = None
    last_message_seq: Optional[int] = None
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None


@dataclass(frozen=True)
class OfflineTransition:
    """Emitted once when a unit moves into ``offline``."""

    unit_id: str
    reason: str
    score: int
    at: datetime
    notified: bool = False


@dataclass
class ProcessResult:
    """Synchronous outcome of ingesting one event."""

    accepted: bool
    action: str
    reason: Optional[str] = None
    priority: Optional[Priority] = None
    record_id: Optional[str] = None
    category: Optional[ErrorCategory] = None
    buffer_size: Optional[int] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class FlushResult:
    """Outcome of draining one batch from a tier."""

    tier: Priority
    attempted: int = 0
    saved: int = 0
    failed: int = 0
    remaining: int = 0


@dataclass
class MalformedEvent:
    """Wrapper for input that cannot be decoded into a telemetry event."""

    event_type: str = "malformed"
    received_at: str = ""
    error: Optional[dict] = field(default_factory=dict)
