"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

All intervals and windows are expressed in seconds.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from ecobin_ingest.errors import ConfigurationError

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class ValidationConfig:
    """Field ranges checked by the validator."""

    min_weight: float = 0.0
    max_weight: float = 1000.0
    min_fill_level: float = 0.0
    max_fill_level: float = 100.0
    min_satellites: int = 3


@dataclass
class ClassificationConfig:
    """Thresholds and error vocabularies that decide the priority tier."""

    critical_fill_level: float = 95.0
    warning_fill_level: float = 85.0
    critical_weight: float = 900.0
    warning_weight: float = 700.0
    critical_errors: list[str] = field(default_factory=lambda: [
        "MALFUNCTION", "SENSOR_FAILURE", "COMMUNICATION_LOST", "POWER_FAILURE",
    ])
    warning_errors: list[str] = field(default_factory=lambda: [
        "GPS_INVALID", "LOW_SATELLITES", "HIGH_BIN_LEVEL", "WEIGHT_ANOMALY",
    ])


@dataclass
class IntervalsConfig:
    """Timer periods for the flushers, the health tick, and cleanup."""

    normal_seconds: float = 7200.0
    warning_seconds: float = 1800.0
    critical_seconds: float = 300.0
    health_check_seconds: float = 120.0
    cleanup_seconds: float = 86400.0


@dataclass
class BufferConfig:
    """Tier buffer bounds."""

    max_buffer_size: int = 1000
    batch_size: int = 100
    retention_seconds: float = 86400.0
    store_timeout_seconds: float = 30.0


@dataclass
class DuplicateConfig:
    """Duplicate-error window and per-day ceilings."""

    window_seconds: float = 3600.0
    max_per_day: int = 1
    max_offline_per_day: int = 2
    connectivity_categories: list[str] = field(
        default_factory=lambda: ["COMMUNICATION_LOST", "CONNECTION_ERROR"]
    )


@dataclass
class RateLimitConfig:
    """Daily ceilings for outbound alert notifications."""

    max_notifications_per_unit: int = 5
    max_global_notifications: int = 50
    reset_hour: int = 0


@dataclass
class HealthConfig:
    """Connection health scoring and hysteresis parameters."""

    fresh_seconds: float = 120.0
    offline_timeout_seconds: float = 300.0
    online_score: int = 60
    suspect_score: int = 30
    offline_after_low_checks: int = 2
    min_satellites: int = 3
    registered_states: list[int] = field(default_factory=lambda: [1, 5])
    record_offline_events: bool = True


@dataclass
class RotationConfig:
    """File rotation thresholds."""

    interval_seconds: int = 3600
    max_size_bytes: int = 52428800


@dataclass
class FlushConfig:
    """Durability of the active file: fsync after this many records."""

    sync_every_n_records: int = 50


@dataclass
class FileStoreConfig:
    """File-mode record store settings."""

    output_dir: str = "/var/lib/ecobin/history"
    file_prefix: str = "bin-history"
    rotation: RotationConfig = field(default_factory=RotationConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)


@dataclass
class StoreConfig:
    """Store section wrapper."""

    file: FileStoreConfig = field(default_factory=FileStoreConfig)


@dataclass
class AlertsConfig:
    """Where offline alerts are delivered.

    With an empty ``file_path`` alerts go to the ``ecobin_ingest.alerts``
    logger only.
    """

    enabled: bool = True
    file_path: str = ""


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/ecobin-ingest/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)


@dataclass
class AppConfig:
    """Top-level application configuration."""

    instance_id: str = "ingest-01"
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    intervals: IntervalsConfig = field(default_factory=IntervalsConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _section(cls: type, raw: dict[str, Any]):
    """Build dataclass *cls* from the keys of *raw* it recognises."""
    return cls(**{k: raw[k] for k in raw if k in cls.__dataclass_fields__})


def config_from_dict(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    store_file_raw = raw.get("store", {}).get("file", {})
    logging_raw = raw.get("logging", {})

    return AppConfig(
        instance_id=raw.get("instance_id", "ingest-01"),
        validation=_section(ValidationConfig, raw.get("validation", {})),
        classification=_section(ClassificationConfig, raw.get("classification", {})),
        intervals=_section(IntervalsConfig, raw.get("intervals", {})),
        buffer=_section(BufferConfig, raw.get("buffer", {})),
        duplicates=_section(DuplicateConfig, raw.get("duplicates", {})),
        rate_limits=_section(RateLimitConfig, raw.get("rate_limits", {})),
        health=_section(HealthConfig, raw.get("health", {})),
        store=StoreConfig(
            file=FileStoreConfig(
                output_dir=store_file_raw.get("output_dir", "/var/lib/ecobin/history"),
                file_prefix=store_file_raw.get("file_prefix", "bin-history"),
                rotation=_section(RotationConfig, store_file_raw.get("rotation", {})),
                flush=_section(FlushConfig, store_file_raw.get("flush", {})),
            ),
        ),
        alerts=_section(AlertsConfig, raw.get("alerts", {})),
        logging=LoggingConfig(
            level=logging_raw.get("level", "info"),
            format=logging_raw.get("format", "json"),
            file=_section(LogFileConfig, logging_raw.get("file", {})),
        ),
    )


def check_config(cfg: AppConfig) -> list[str]:
    """Semantic checks the JSON schema cannot express.

    Returns
    -------
    list[str]
        Non-fatal warnings (also logged).

    Raises
    ------
    ConfigurationError
        When any interval, threshold or ceiling is unusable.
    """
    problems: list[str] = []
    warnings: list[str] = []

    iv = cfg.intervals
    for name in ("normal_seconds", "warning_seconds", "critical_seconds",
                 "health_check_seconds", "cleanup_seconds"):
        if getattr(iv, name) <= 0:
            problems.append(f"intervals.{name} must be positive")
    if iv.warning_seconds >= iv.normal_seconds:
        warnings.append("intervals.warning_seconds should be less than intervals.normal_seconds")

    v = cfg.validation
    if v.max_weight <= v.min_weight:
        problems.append("validation.max_weight must be greater than validation.min_weight")
    if v.max_fill_level <= v.min_fill_level:
        problems.append("validation.max_fill_level must be greater than validation.min_fill_level")

    c = cfg.classification
    if c.warning_fill_level > c.critical_fill_level:
        problems.append("classification.warning_fill_level exceeds critical_fill_level")
    if c.warning_weight > c.critical_weight:
        problems.append("classification.warning_weight exceeds critical_weight")

    b = cfg.buffer
    if b.max_buffer_size <= 0:
        problems.append("buffer.max_buffer_size must be positive")
    if b.batch_size <= 0:
        problems.append("buffer.batch_size must be positive")
    if b.store_timeout_seconds <= 0:
        problems.append("buffer.store_timeout_seconds must be positive")

    d = cfg.duplicates
    if d.window_seconds <= 0:
        problems.append("duplicates.window_seconds must be positive")
    if d.max_per_day < 1 or d.max_offline_per_day < 1:
        problems.append("duplicates daily ceilings must be at least 1")

    if not 0 <= cfg.rate_limits.reset_hour <= 23:
        problems.append("rate_limits.reset_hour must be between 0 and 23")

    h = cfg.health
    if h.fresh_seconds > h.offline_timeout_seconds:
        problems.append("health.fresh_seconds exceeds health.offline_timeout_seconds")
    if h.suspect_score >= h.online_score:
        problems.append("health.suspect_score must be below health.online_score")
    if h.offline_after_low_checks < 1:
        problems.append("health.offline_after_low_checks must be at least 1")

    if problems:
        raise ConfigurationError(problems)
    for w in warnings:
        logger.warning("Config: %s", w)
    return warnings


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    ConfigurationError
        If the values are semantically unusable.
    """
    raw_bytes = Path(path).read_bytes()
    raw: dict[str, Any] = orjson.loads(raw_bytes)

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp: Optional[Path] = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    cfg = config_from_dict(interpolated)
    check_config(cfg)
    return cfg
