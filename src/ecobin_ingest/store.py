"""Durable record stores: rotating NDJSON files and stdout.

Any object with an ``async create(document) -> str`` method can act as the
durable store; these two cover local deployments and debugging.

NdjsonFileStore
    Appends each record to an ``.ndjson.active`` segment, opened on the first
    write. A full or old segment is sealed: ``fsync``, then an atomic
    ``os.rename`` to ``.ndjson``. The next record opens a fresh segment.

StdoutStore
    Writes NDJSON lines to ``sys.stdout.buffer``. Useful for debugging and
    dry-run validation.
"""

from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional, Protocol

import orjson

logger = logging.getLogger(__name__)


class DurableStore(Protocol):
    """The record-creation surface the pipeline relies on."""

    async def create(self, document: dict) -> str:
        """Persist *document* and return its record id, or raise."""
        ...


def _encode(record_id: str, document: dict) -> bytes:
    return orjson.dumps({"id": record_id, **document}, option=orjson.OPT_APPEND_NEWLINE)


class StdoutStore:
    """Write records as NDJSON directly to stdout."""

    async def create(self, document: dict) -> str:
        """Write *document* to ``sys.stdout.buffer``.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        record_id = uuid.uuid4().hex
        try:
            sys.stdout.buffer.write(_encode(record_id, document))
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise
        return record_id

    def close(self) -> None:
        """No-op for stdout."""


class NdjsonFileStore:
    """Append-only NDJSON segments with size and age rotation.

    Parameters
    ----------
    output_dir:
        Directory for segment files; created if missing.
    prefix, instance_id:
        Filename parts: ``{prefix}-{instance_id}-{stamp}-{n}.ndjson``.
    rotation_seconds, rotation_bytes:
        Seal the active segment once it is this old or this large.
    sync_every:
        ``fsync`` the active segment after this many records.
    """

    def __init__(
        self,
        output_dir: str,
        prefix: str = "bin-history",
        instance_id: str = "ingest-01",
        rotation_seconds: int = 3600,
        rotation_bytes: int = 52428800,
        sync_every: int = 50,
    ) -> None:
        self._dir = Path(output_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._name_base = f"{prefix}-{instance_id}"
        self._rotation_seconds = rotation_seconds
        self._rotation_bytes = rotation_bytes
        self._sync_every = sync_every

        self._fh: Optional[BinaryIO] = None
        self._path: Optional[Path] = None
        self._size = 0
        self._opened_at = 0.0
        self._segments = 0
        self._closed = False
        self.records_written = 0

    async def create(self, document: dict) -> str:
        """Append *document* as one line and return its new id.

        Raises
        ------
        OSError
            If the store is closed or the write fails.
        """
        if self._closed:
            raise OSError("record store is closed")
        if self._fh is None:
            self._open_segment()

        record_id = uuid.uuid4().hex
        line = _encode(record_id, document)
        self._fh.write(line)
        self._fh.flush()
        self._size += len(line)
        self.records_written += 1
        if self.records_written % self._sync_every == 0:
            os.fsync(self._fh.fileno())

        age = time.monotonic() - self._opened_at
        if self._size >= self._rotation_bytes or age >= self._rotation_seconds:
            self._seal()
        return record_id

    def close(self) -> None:
        """Seal the active segment; later writes raise."""
        if not self._closed:
            self._closed = True
            self._seal()

    def _open_segment(self) -> None:
        self._segments += 1
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        self._path = self._dir / f"{self._name_base}-{stamp}-{self._segments:04d}.ndjson.active"
        self._fh = open(self._path, "ab")
        self._size = 0
        self._opened_at = time.monotonic()
        logger.info("Opened segment %s", self._path.name)

    def _seal(self) -> None:
        if self._fh is None:
            return
        os.fsync(self._fh.fileno())
        self._fh.close()
        final = self._path.with_suffix("")
        os.rename(self._path, final)
        logger.info("Sealed %s (%d bytes)", final.name, self._size)
        self._fh = None
        self._path = None
