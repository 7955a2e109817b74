"""Tests for the click CLI."""

import logging
from datetime import datetime, timezone
from pathlib import Path

import orjson
import pytest
from click.testing import CliRunner

from ecobin_ingest.cli import main

ROOT = Path(__file__).resolve().parent.parent
EXAMPLE = ROOT / "config" / "config.example.json"


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """The run path installs root handlers; keep them from leaking into other tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _json_out(result) -> dict:
    assert result.exit_code == 0, result.output
    return orjson.loads(result.output)


def test_classify_critical() -> None:
    event = '{"binId": "bin-9", "binLevel": 97, "weight": 100, "gpsValid": true, "satellites": 8, "gps": {"lat": 1, "lng": 2}}'
    out = _json_out(CliRunner().invoke(main, ["classify", event]))
    assert out["action"] == "save_immediately"
    assert out["priority"] == "critical"
    assert out["reasons"] == ["critical_bin_level"]
    assert out["status"] == "CRITICAL"


def test_classify_error_text() -> None:
    event = '{"binId": "bin-9", "binLevel": 20, "errorMessage": "Battery low", "gpsValid": true, "satellites": 8, "gps": {"lat": 1, "lng": 2}}'
    out = _json_out(CliRunner().invoke(main, ["classify", event]))
    assert out["error_category"] == "POWER_FAILURE"
    assert out["status"] == "CRITICAL_ERROR"


def test_classify_invalid() -> None:
    out = _json_out(CliRunner().invoke(main, ["classify", '{"binId": "b", "binLevel": 150}']))
    assert out["action"] == "filtered"
    assert out["reason"] == "validation_failed"


def test_classify_malformed_exits_2() -> None:
    result = CliRunner().invoke(main, ["classify", "-"], input="{nope")
    assert result.exit_code == 2
    assert "malformed_input" in result.output


def test_classify_from_file(tmp_path: Path) -> None:
    path = tmp_path / "event.json"
    path.write_bytes(orjson.dumps({"binId": "bin-1", "binLevel": 88, "gpsValid": True,
                                   "satellites": 5, "gps": {"lat": 1, "lng": 2}}))
    out = _json_out(CliRunner().invoke(main, ["classify", str(path)]))
    assert out["priority"] == "warning"


def test_score_breakdown() -> None:
    now = datetime.now(timezone.utc).isoformat()
    sample = orjson.dumps({
        "binId": "bin-1", "timestamp": now, "satellites": 8, "gpsValid": True,
        "csq": 20, "creg": 1, "pdpActive": True, "uptimeSec": 900, "msgSeq": 4,
    }).decode()
    result = CliRunner().invoke(main, ["score", sample, "--prev-uptime", "600", "--prev-seq", "3"])
    out = _json_out(result)
    assert out["score"] == 100
    assert out["rules"]["fresh_heartbeat"] == 40
    assert out["rules"]["sequence_advanced"] == 5


def test_validate_config(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        main,
        ["-c", str(EXAMPLE), "--validate-config"],
        env={"ECOBIN_HISTORY_DIR": str(tmp_path)},
    )
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_bad_config_path_exits_1(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["-c", str(tmp_path / "missing.json"), "--validate-config"])
    assert result.exit_code == 1
    assert "Config error" in result.output
