"""Exception taxonomy for the ingestion pipeline.

Ingestion-time problems are reported back to callers as reason codes on
:class:`~ecobin_ingest.models.ProcessResult`; these exceptions mark the
points where they originate. Flush-time failures are logged and counted,
never re-raised.
"""

from __future__ import annotations

from typing import Optional

from ecobin_ingest.models import ErrorCategory


class EcobinError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(EcobinError):
    """The event failed range checks and is rejected without retry."""

    reason = "validation_failed"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class DuplicateFiltered(EcobinError):
    """An intentional suppression of a repeated error, not a failure."""

    def __init__(self, unit_id: str, category: ErrorCategory, reason: str) -> None:
        super().__init__(f"{unit_id}: {category.value} suppressed ({reason})")
        self.unit_id = unit_id
        self.category = category
        self.reason = reason


class PersistenceError(EcobinError):
    """The durable store rejected, failed, or timed out on a record."""

    def __init__(self, unit_id: str, cause: Optional[BaseException] = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown"
        super().__init__(f"Failed to persist record for {unit_id}: {detail}")
        self.unit_id = unit_id
        self.cause = cause


class ConfigurationError(EcobinError):
    """Invalid interval or threshold; fatal at startup."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Invalid configuration: " + "; ".join(problems))
        self.problems = list(problems)
