"""Click CLI for ecobin-ingest.

Entry point registered in ``pyproject.toml`` as ``ecobin-ingest``.

Subcommands::

    ecobin-ingest                      # run the pipeline on NDJSON telemetry (stdin or --input)
    ecobin-ingest classify EVENT       # show how one event would be handled
    ecobin-ingest score SAMPLE         # show the connection score breakdown for one sample

Signals while running: SIGTERM/SIGINT flush all buffers and exit, SIGHUP
reloads the config file.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import orjson

from ecobin_ingest import __version__
from ecobin_ingest.classifier import classify, determine_status
from ecobin_ingest.config import AppConfig, LogFileConfig, load_config
from ecobin_ingest.decoder import decode_event
from ecobin_ingest.dedup import category_for
from ecobin_ingest.errors import ConfigurationError
from ecobin_ingest.health import compute_score, score_breakdown
from ecobin_ingest.models import ConnectionState, MalformedEvent
from ecobin_ingest.notifier import LogNotifier, NdjsonNotifier
from ecobin_ingest.pipeline import TelemetryPipeline
from ecobin_ingest.store import NdjsonFileStore, StdoutStore
from ecobin_ingest.validator import validate

logger = logging.getLogger("ecobin_ingest")

DEFAULT_CONFIG = "/etc/ecobin/config.json"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON to stderr."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    fmt: str = "json",
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with JSON (or text) output on stderr + optional file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if fmt == "json":
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        log_dir = Path(log_file_config.path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def _load_or_exit(cfg_path: str, overrides: dict[str, str] | None = None) -> AppConfig:
    try:
        return load_config(cfg_path, overrides=overrides)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc


def _read_json_arg(value: str) -> bytes:
    """Accept inline JSON, ``-`` for stdin, or a path to a JSON file."""
    if value == "-":
        return sys.stdin.buffer.read()
    if value.lstrip().startswith("{"):
        return value.encode("utf-8")
    return Path(value).read_bytes()


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-i", "--input", "input_path", default=None,
              help="NDJSON telemetry file (default: stdin).")
@click.option("-o", "--output", "output_mode", type=click.Choice(["stdout", "file"]),
              default=None, help="Record store (default: file).")
@click.option("-d", "--output-dir", default=None, help="Override store output directory.")
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--dry-run", is_flag=True, help="Process 5 events, flush, then exit.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    input_path: Optional[str],
    output_mode: Optional[str],
    output_dir: Optional[str],
    config_path: Optional[str],
    log_level: Optional[str],
    dry_run: bool,
    validate_only: bool,
) -> None:
    """ecobin-ingest: bin telemetry triage, tiered buffering and connection health."""
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    cfg_path = config_path or os.environ.get("ECOBIN_CONFIG", DEFAULT_CONFIG)
    cfg = _load_or_exit(cfg_path)

    effective_level = (
        log_level
        or os.environ.get("ECOBIN_LOG_LEVEL")
        or cfg.logging.level
    )
    effective_output = (
        output_mode
        or os.environ.get("ECOBIN_OUTPUT")
        or "file"
    )
    if output_dir:
        cfg.store.file.output_dir = output_dir
    elif os.environ.get("ECOBIN_OUTPUT_DIR"):
        cfg.store.file.output_dir = os.environ["ECOBIN_OUTPUT_DIR"]

    _setup_logging(effective_level, cfg.logging.format, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting ecobin-ingest %s (instance=%s, output=%s)",
        __version__,
        cfg.instance_id,
        effective_output,
    )

    asyncio.run(_run_pipeline(cfg, cfg_path, effective_output, input_path, dry_run))


# ── async pipeline ──────────────────────────────────────────────────


async def _run_pipeline(
    cfg: AppConfig,
    cfg_path: str,
    output_mode: str,
    input_path: Optional[str],
    dry_run: bool,
) -> None:
    """Read NDJSON lines → pipeline.process, until EOF or a shutdown signal."""
    loop = asyncio.get_running_loop()

    if output_mode == "stdout":
        store = StdoutStore()
    else:
        fc = cfg.store.file
        store = NdjsonFileStore(
            output_dir=fc.output_dir,
            prefix=fc.file_prefix,
            instance_id=cfg.instance_id,
            rotation_seconds=fc.rotation.interval_seconds,
            rotation_bytes=fc.rotation.max_size_bytes,
            sync_every=fc.flush.sync_every_n_records,
        )
    notifier = NdjsonNotifier(cfg.alerts.file_path) if cfg.alerts.file_path else LogNotifier()

    pipeline = TelemetryPipeline(cfg, store, notifier=notifier)
    stop = asyncio.Event()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    def _handle_reload() -> None:
        logger.info("Received SIGHUP, reloading %s", cfg_path)
        loop.create_task(_reload(pipeline, cfg_path))

    for sig, handler in ((signal.SIGTERM, _handle_signal),
                         (signal.SIGINT, _handle_signal),
                         (getattr(signal, "SIGHUP", None), _handle_reload)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            pass  # Windows

    source = open(input_path, "rb") if input_path else sys.stdin.buffer
    lines: asyncio.Queue = asyncio.Queue(maxsize=1000)
    _start_reader(source, lines, loop)

    event_count = 0
    await pipeline.start()
    try:
        while not stop.is_set():
            getter = asyncio.ensure_future(lines.get())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if stopper not in done:
                stopper.cancel()
            if getter not in done:
                getter.cancel()
                break
            line = getter.result()
            if line is None:
                logger.info("End of input")
                break
            if not line.strip():
                continue

            result = await pipeline.process(line)
            logger.debug("Processed event: %s %s", result.action, result.reason or "")

            event_count += 1
            if dry_run and event_count >= 5:
                logger.info("Dry run complete, received %d events", event_count)
                break
    finally:
        await pipeline.shutdown()
        if source is not sys.stdin.buffer:
            source.close()
        if hasattr(store, "close"):
            store.close()
        logger.info(
            "Pipeline stopped (processed %d events, stats=%s)",
            event_count,
            orjson.dumps(pipeline.stats()).decode(),
        )


def _start_reader(source, lines: asyncio.Queue, loop: asyncio.AbstractEventLoop) -> None:
    """Feed *source* lines into *lines* from a daemon thread; ``None`` marks EOF."""

    def _put(item: Optional[bytes]) -> None:
        asyncio.run_coroutine_threadsafe(lines.put(item), loop).result()

    def _read() -> None:
        try:
            for raw in iter(source.readline, b""):
                _put(raw)
        except (ValueError, OSError) as exc:
            logger.warning("Input closed: %s", exc)
        except RuntimeError:
            return  # loop already closed
        try:
            _put(None)
        except RuntimeError:
            pass

    threading.Thread(target=_read, name="ndjson-reader", daemon=True).start()


async def _reload(pipeline: TelemetryPipeline, cfg_path: str) -> None:
    try:
        new_cfg = load_config(cfg_path)
        await pipeline.reload_config(new_cfg)
    except (ConfigurationError, ValueError, OSError) as exc:
        logger.error("Config reload rejected, keeping current config: %s", exc)
    except Exception:
        logger.exception("Config reload failed, keeping current config")


# ── offline inspection subcommands ──────────────────────────────────


def _config_or_default(config_path: Optional[str]) -> AppConfig:
    return _load_or_exit(config_path) if config_path else AppConfig()


@main.command("classify")
@click.argument("event")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
def classify_cmd(event: str, config_path: Optional[str]) -> None:
    """Decode, validate and classify EVENT (JSON, file path, or -) without storing it."""
    cfg = _config_or_default(config_path)
    now = datetime.now(timezone.utc)
    decoded = decode_event(_read_json_arg(event), now)
    if isinstance(decoded, MalformedEvent):
        click.echo(orjson.dumps({"action": "filtered", "reason": "malformed_input",
                                 "error": decoded.error}).decode())
        raise SystemExit(2)

    validation = validate(decoded, cfg.validation)
    out: dict = {"unit_id": decoded.unit_id, "errors": validation.errors,
                 "warnings": validation.warnings}
    if not validation.is_valid:
        out.update(action="filtered", reason="validation_failed")
    else:
        category = category_for(decoded, cfg.validation.min_satellites)
        result = classify(decoded, validation, category, cfg.classification, cfg.validation)
        out.update(
            action="save_immediately" if result.should_save_immediately else "buffer",
            priority=result.priority.value,
            reasons=result.reasons,
            error_category=category.value if category else None,
            status=determine_status(category, result.priority, cfg.classification,
                                    has_error_text=bool(decoded.error_text)),
        )
    click.echo(orjson.dumps(out, option=orjson.OPT_INDENT_2).decode())


@main.command("score")
@click.argument("sample")
@click.option("--prev-uptime", type=int, default=None, help="Uptime seen at the previous check.")
@click.option("--prev-seq", type=int, default=None, help="Message sequence seen at the previous check.")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
def score_cmd(
    sample: str,
    prev_uptime: Optional[int],
    prev_seq: Optional[int],
    config_path: Optional[str],
) -> None:
    """Show the connection health score breakdown for SAMPLE (JSON, file path, or -)."""
    cfg = _config_or_default(config_path)
    now = datetime.now(timezone.utc)
    decoded = decode_event(_read_json_arg(sample), now)
    if isinstance(decoded, MalformedEvent):
        click.echo(f"Malformed sample: {decoded.error.get('message')}", err=True)
        raise SystemExit(2)

    prev = ConnectionState(last_uptime=prev_uptime, last_message_seq=prev_seq)
    age = max(0.0, (now - decoded.observed_at).total_seconds())
    parts = score_breakdown(decoded, age, prev, cfg.health)
    click.echo(orjson.dumps({
        "unit_id": decoded.unit_id,
        "age_seconds": round(age, 1),
        "rules": dict(parts),
        "score": compute_score(decoded, age, prev, cfg.health),
    }, option=orjson.OPT_INDENT_2).decode())
