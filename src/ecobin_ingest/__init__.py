"""Ecobin telemetry ingestion: validation, dedup, tiered buffering, connection health."""

__version__ = "0.3.0"
