"""Decode raw telemetry payloads into :class:`TelemetryEvent` objects.

Decoding pipeline::

    raw string / bytes / dict
      │
      ├─ JSON parse failure   → MalformedEvent(code="parse_error")
      ├─ not a JSON object    → MalformedEvent(code="schema_mismatch")
      └─ object               → TelemetryEvent

Units in the field report the same reading under several spellings
(firmware revisions differ), so every field is looked up through a list of
aliases. A value that does not parse is treated as absent rather than as an
error; range checks belong to the validator.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional, Union

import orjson

from ecobin_ingest.models import GpsFix, MalformedEvent, RadioIndicators, TelemetryEvent

# Maximum bytes of raw payload preserved in malformed events.
MAX_RAW_PAYLOAD_BYTES = 4096

_UNIT_ID = ("binId", "bin_id", "unit_id", "unitId")
_WEIGHT = ("weight",)
_DISTANCE = ("distance",)
_FILL_LEVEL = ("binLevel", "bin_level", "fill_level", "fillLevel")
_SATELLITES = ("satellites", "satellite_count", "satelliteCount")
_GPS_VALID = ("gpsValid", "gps_valid")
_ERROR_TEXT = ("errorMessage", "error_message", "error_text", "errorText")
_SIGNAL = ("csq", "signal_quality")
_REGISTRATION = ("creg", "cereg", "cgreg", "registration")
_SESSION = ("pdpActive", "pdp_active", "pdp", "session_active")
_UPTIME = ("uptimeSec", "uptime_sec", "uptime")
_MSG_SEQ = ("msgSeq", "seq", "message_seq")
_TIMESTAMPS = ("timestamp", "last_active", "gps_timestamp", "created_at", "observed_at")


def decode_event(
    raw: Union[str, bytes, dict],
    received_at: datetime,
) -> Union[TelemetryEvent, MalformedEvent]:
    """Decode a single telemetry payload.

    Parameters
    ----------
    raw:
        A JSON document (``str``/``bytes``) or an already-parsed ``dict``.
    received_at:
        Ingress time; used as ``observed_at`` when the payload carries no
        parseable timestamp.

    Returns
    -------
    TelemetryEvent
        When the payload is a JSON object. Missing fields stay ``None``
        (an empty unit id is left for the validator to reject).
    MalformedEvent
        When the payload cannot be parsed or is not an object.
    """
    if isinstance(raw, dict):
        doc = raw
    else:
        try:
            doc = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            return _malformed("parse_error", str(exc), raw, received_at)
        if not isinstance(doc, dict):
            return _malformed(
                "schema_mismatch",
                f"Expected a JSON object, got {type(doc).__name__}",
                raw,
                received_at,
            )

    gps = _gps(doc.get("gps"))
    unit_id = _first(doc, _UNIT_ID)

    return TelemetryEvent(
        unit_id=str(unit_id).strip() if unit_id is not None else "",
        observed_at=_timestamp(doc) or received_at,
        weight=_as_float(_first(doc, _WEIGHT)),
        distance=_as_float(_first(doc, _DISTANCE)),
        fill_level=_as_float(_first(doc, _FILL_LEVEL)),
        gps=gps,
        gps_valid=_first(doc, _GPS_VALID) is True,
        satellite_count=_as_int(_first(doc, _SATELLITES)),
        error_text=_error_text(_first(doc, _ERROR_TEXT)),
        radio=RadioIndicators(
            signal_quality=_as_int(_first(doc, _SIGNAL)),
            registration=_as_int(_first(doc, _REGISTRATION)),
            session_active=_as_bool(_first(doc, _SESSION)),
            uptime_sec=_as_int(_first(doc, _UPTIME)),
            message_seq=_as_int(_first(doc, _MSG_SEQ)),
        ),
    )


# ── helpers ─────────────────────────────────────────────────────────


def _first(doc: dict, keys: tuple[str, ...]) -> Any:
    """Return the first present, non-null, non-empty value among *keys*."""
    for key in keys:
        value = doc.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # inf, -inf and NaN count as absent.
    return number if math.isfinite(number) else None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return None if number is None else int(number)


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


def _error_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _gps(value: Any) -> Optional[GpsFix]:
    if not isinstance(value, dict):
        return None
    lat = _as_float(value.get("lat"))
    lng = _as_float(value.get("lng", value.get("lon")))
    if lat is None or lng is None:
        return None
    return GpsFix(lat=lat, lng=lng)


def _timestamp(doc: dict) -> Optional[datetime]:
    """First parseable timestamp among the known timestamp fields."""
    for key in _TIMESTAMPS:
        parsed = parse_timestamp(doc.get(key))
        if parsed is not None:
            return parsed
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch seconds/milliseconds into aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _malformed(
    code: str,
    message: str,
    raw: str | bytes,
    received_at: datetime,
) -> MalformedEvent:
    """Build a :class:`MalformedEvent` with truncation handling."""
    raw_str = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str[:MAX_RAW_PAYLOAD_BYTES]

    return MalformedEvent(
        event_type="malformed",
        received_at=received_at.isoformat(),
        error={
            "code": code,
            "message": message,
            "raw_payload": raw_str,
            "raw_payload_truncated": truncated,
        },
    )
