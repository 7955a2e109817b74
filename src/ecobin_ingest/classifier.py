"""Assign a priority tier to a validated telemetry event.

Rules, evaluated in order (each tier carries the reasons that raised it)::

    1. category in critical_errors          → critical  (critical_error)
    2. category in warning_errors           → warning   (warning_error)
    3. fill ≥ critical_fill_level           → critical  (critical_bin_level)
       fill ≥ warning_fill_level, normal    → warning   (warning_bin_level)
    4. weight ≥ critical_weight             → critical  (critical_weight)
       weight ≥ warning_weight, normal      → warning   (warning_weight)
    5. weight = fill = distance = 0         → critical  (sensor_failure)
    6. validation warnings, normal          → warning   (data_warnings)
    7. GPS unreliable, normal               → warning   (gps_issues)

Rules 3–5 may upgrade a lower tier to critical but never downgrade.
"""

from __future__ import annotations

from typing import Optional

from ecobin_ingest.config import ClassificationConfig, ValidationConfig
from ecobin_ingest.dedup import gps_unreliable
from ecobin_ingest.models import (
    Classification,
    ErrorCategory,
    Priority,
    TelemetryEvent,
    ValidationResult,
)


def classify(
    event: TelemetryEvent,
    validation: ValidationResult,
    category: Optional[ErrorCategory],
    cfg: ClassificationConfig,
    validation_cfg: ValidationConfig,
) -> Classification:
    """Compute the priority tier and trigger reasons for *event*.

    Parameters
    ----------
    event:
        A decoded event that passed validation.
    validation:
        Its validation result; warnings feed rule 6.
    category:
        The normalized error category, or ``None``. Only categories derived
        from explicit error text take part in rules 1–2.
    cfg:
        Tier thresholds and error vocabularies.
    validation_cfg:
        Supplies ``min_satellites`` for rule 7.
    """
    result = Classification()

    def _raise_to(priority: Priority, reason: str) -> None:
        result.priority = priority
        result.reasons.append(reason)

    if event.error_text and category is not None:
        if category.value in cfg.critical_errors:
            _raise_to(Priority.CRITICAL, "critical_error")
        elif category.value in cfg.warning_errors:
            _raise_to(Priority.WARNING, "warning_error")

    fill = event.fill_level
    if fill is not None:
        if fill >= cfg.critical_fill_level:
            _raise_to(Priority.CRITICAL, "critical_bin_level")
        elif fill >= cfg.warning_fill_level and result.priority is Priority.NORMAL:
            _raise_to(Priority.WARNING, "warning_bin_level")

    weight = event.weight
    if weight is not None:
        if weight >= cfg.critical_weight:
            _raise_to(Priority.CRITICAL, "critical_weight")
        elif weight >= cfg.warning_weight and result.priority is Priority.NORMAL:
            _raise_to(Priority.WARNING, "warning_weight")

    # All three sensors reading exactly zero means total sensor loss.
    if weight == 0 and fill == 0 and event.distance == 0:
        _raise_to(Priority.CRITICAL, "sensor_failure")

    if validation.has_warnings and result.priority is Priority.NORMAL:
        _raise_to(Priority.WARNING, "data_warnings")

    if (
        gps_unreliable(event, validation_cfg.min_satellites)
        and result.priority is Priority.NORMAL
    ):
        _raise_to(Priority.WARNING, "gps_issues")

    return result


def determine_status(
    category: Optional[ErrorCategory],
    priority: Priority,
    cfg: ClassificationConfig,
    has_error_text: bool = True,
) -> str:
    """Status label stored alongside the record."""
    if has_error_text and category is not None:
        if category.value in cfg.critical_errors:
            return "CRITICAL_ERROR"
        if category.value in cfg.warning_errors:
            return "WARNING"

    if priority is Priority.CRITICAL:
        return "CRITICAL"
    if priority is Priority.WARNING:
        return "WARNING"
    return "OK"
