"""Tests for the store module (StdoutStore and NdjsonFileStore)."""

import asyncio
from pathlib import Path
from unittest.mock import MagicMock, patch

import orjson
import pytest

from ecobin_ingest.store import NdjsonFileStore, StdoutStore


def _file_store(tmp_path: Path, **kwargs) -> NdjsonFileStore:
    params = dict(
        output_dir=str(tmp_path),
        prefix="test",
        instance_id="inst-01",
        rotation_seconds=3600,
        rotation_bytes=1_000_000,
    )
    params.update(kwargs)
    return NdjsonFileStore(**params)


class TestStdoutStore:
    """Tests for :class:`StdoutStore`."""

    def test_create_writes_ndjson_line(self) -> None:
        store = StdoutStore()
        mock_stdout = MagicMock()
        with patch("ecobin_ingest.store.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            record_id = asyncio.run(store.create({"unit_id": "bin-001"}))

        written = mock_stdout.buffer.write.call_args[0][0]
        assert orjson.loads(written) == {"id": record_id, "unit_id": "bin-001"}
        assert written.endswith(b"\n")
        mock_stdout.buffer.flush.assert_called_once()


class TestNdjsonFileStore:
    """Tests for :class:`NdjsonFileStore`."""

    def test_no_file_before_first_record(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path)
        store.close()
        assert list(tmp_path.iterdir()) == []

    def test_create_assigns_ids(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path)

        async def scenario() -> list[str]:
            return [
                await store.create({"unit_id": "bin-001", "priority": "normal"}),
                await store.create({"unit_id": "bin-002", "priority": "critical"}),
            ]

        ids = asyncio.run(scenario())
        store.close()

        assert len(set(ids)) == 2
        (final,) = tmp_path.glob("*.ndjson")
        assert final.name.startswith("test-inst-01-")
        lines = [orjson.loads(line) for line in final.read_bytes().splitlines()]
        assert [line["id"] for line in lines] == ids
        assert lines[1]["priority"] == "critical"
        assert store.records_written == 2

    def test_record_readable_before_close(self, tmp_path: Path) -> None:
        """Each line reaches the OS as soon as create returns."""
        store = _file_store(tmp_path)
        try:
            record_id = asyncio.run(store.create({"unit_id": "bin-001"}))
            (active,) = tmp_path.glob("*.ndjson.active")
            assert orjson.loads(active.read_bytes())["id"] == record_id
        finally:
            store.close()

    def test_size_rotation_seals_segment(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path, rotation_bytes=100)

        async def scenario() -> None:
            await store.create({"unit_id": "bin-001", "error_text": "x" * 120})
            await store.create({"unit_id": "bin-002"})

        try:
            asyncio.run(scenario())
            sealed = list(tmp_path.glob("*.ndjson"))
            active = list(tmp_path.glob("*.ndjson.active"))
            assert len(sealed) == 1
            assert len(active) == 1
            assert sealed[0].name.endswith("-0001.ndjson")
            assert active[0].name.endswith("-0002.ndjson.active")
        finally:
            store.close()
        assert len(list(tmp_path.glob("*.ndjson"))) == 2

    def test_age_rotation(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path, rotation_seconds=0)
        asyncio.run(store.create({"unit_id": "bin-001"}))
        assert list(tmp_path.glob("*.ndjson.active")) == []
        assert len(list(tmp_path.glob("*.ndjson"))) == 1
        store.close()

    def test_fsync_cadence(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path, sync_every=2)

        async def scenario() -> None:
            for i in range(5):
                await store.create({"unit_id": f"bin-{i}"})

        with patch("ecobin_ingest.store.os.fsync") as fsync:
            asyncio.run(scenario())
            assert fsync.call_count == 2
            store.close()
            assert fsync.call_count == 3

    def test_close_renames(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path)
        asyncio.run(store.create({"unit_id": "bin-001"}))
        store.close()
        store.close()

        assert list(tmp_path.glob("*.ndjson.active")) == []
        assert len(list(tmp_path.glob("*.ndjson"))) == 1

    def test_write_after_close_raises(self, tmp_path: Path) -> None:
        store = _file_store(tmp_path)
        store.close()
        with pytest.raises(OSError):
            asyncio.run(store.create({"unit_id": "bin-001"}))
