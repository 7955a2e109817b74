"""Range checks on decoded telemetry.

Errors reject the event outright (reason ``validation_failed``); warnings
are non-fatal and feed the classifier's ``data_warnings`` rule.
"""

from __future__ import annotations

from ecobin_ingest.config import ValidationConfig
from ecobin_ingest.models import TelemetryEvent, ValidationResult


def validate(event: TelemetryEvent, cfg: ValidationConfig) -> ValidationResult:
    """Check *event* against the configured field ranges.

    Absent optional fields are not checked. Validation has no side effects.
    """
    result = ValidationResult()

    if not event.unit_id:
        result.errors.append("unit id is required")

    if event.weight is not None and not cfg.min_weight <= event.weight <= cfg.max_weight:
        result.errors.append(f"Weight out of range: {event.weight:g}kg")

    if event.fill_level is not None and not (
        cfg.min_fill_level <= event.fill_level <= cfg.max_fill_level
    ):
        result.errors.append(f"Bin level out of range: {event.fill_level:g}%")

    if event.gps is not None and event.gps.is_zero:
        result.warnings.append("GPS coordinates invalid (0,0)")

    if event.satellite_count is not None and event.satellite_count < cfg.min_satellites:
        result.warnings.append(f"Low satellite count: {event.satellite_count}")

    return result
