"""Alert delivery collaborators.

A notifier exposes ``notify(unit_id, message, severity)``, either as a
plain function or a coroutine. Dispatch is fire-and-forget: failures are
logged and never reach the pipeline.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import orjson

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("ecobin_ingest.alerts")


class Notifier(Protocol):
    def notify(self, unit_id: str, message: str, severity: str) -> Any: ...


class LogNotifier:
    """Emit alerts on the ``ecobin_ingest.alerts`` logger."""

    def notify(self, unit_id: str, message: str, severity: str) -> None:
        level = logging.ERROR if severity in ("high", "critical") else logging.WARNING
        alert_logger.log(level, "[%s] unit %s: %s", severity, unit_id, message)


class NdjsonNotifier:
    """Append alerts as NDJSON lines to a file for a downstream relay."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, unit_id: str, message: str, severity: str) -> None:
        line = orjson.dumps(
            {
                "type": "bin_offline",
                "unit_id": unit_id,
                "message": message,
                "severity": severity,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            option=orjson.OPT_APPEND_NEWLINE,
        )
        with open(self._path, "ab") as fh:
            fh.write(line)


class AlertDispatcher:
    """Fire-and-forget wrapper around a :class:`Notifier`."""

    def __init__(self, notifier: Optional[Notifier]) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, unit_id: str, message: str, severity: str) -> None:
        if self._notifier is None:
            return
        try:
            outcome = self._notifier.notify(unit_id, message, severity)
        except Exception:
            logger.exception("Notifier failed for unit %s", unit_id)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(self._guard(unit_id, outcome))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _guard(self, unit_id: str, awaitable) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Notifier failed for unit %s", unit_id)

    async def drain(self) -> None:
        """Wait for in-flight async notifications (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
