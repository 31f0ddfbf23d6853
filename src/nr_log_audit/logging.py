from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else on a record came from extra=.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

# Shown inline by the plain formatter, in this order.
CONTEXT_FIELDS = ("account_id", "window", "page", "error")

NOISY_LOGGERS = ("urllib3", "requests")


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    json_logs: bool = False


def _json_safe(value: Any, depth: int = 3) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if depth <= 0:
        return False
    if isinstance(value, dict):
        return all(isinstance(k, str) and _json_safe(v, depth - 1) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return all(_json_safe(v, depth - 1) for v in value)
    return False


def _timestamp(record: logging.LogRecord, timespec: str) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec=timespec)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; extra= fields become top-level keys when serialisable."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "timestamp": _timestamp(record, "milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS or key in payload or value is None:
                continue
            if _json_safe(value):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


class PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        message = record.getMessage()
        step = getattr(record, "step", None)
        phase = getattr(record, "phase", None)
        if step or phase:
            message = f"[{step or 'unknown'}:{phase or 'unknown'}] {message}"

        context = [f"{k}={getattr(record, k)}" for k in CONTEXT_FIELDS if getattr(record, k, None) is not None]
        if context:
            message += f" ({', '.join(context)})"
        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            message += f" (duration_ms={duration_ms})"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return f"{_timestamp(record, 'seconds')} {record.levelname} {record.name}: {message}"


def setup_logging(config: Optional[LogConfig] = None) -> None:
    """
    Configure the root logger once; later calls are no-ops.

    Logs go to stderr so stdout carries only command output (list-accounts,
    list-regions). level and json_logs arrive already merged from the config
    file, NR_AUDIT_* environment and flags.
    """
    if getattr(setup_logging, "_configured", False):
        return
    config = config or LogConfig()

    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter() if config.json_logs else PlainFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    setattr(setup_logging, "_configured", True)


def _run_file_handlers(log_path: Path) -> list:
    target = str(log_path.resolve())
    return [
        h
        for h in logging.getLogger().handlers
        if isinstance(h, logging.FileHandler) and h.baseFilename == target
    ]


def add_run_log_file(log_path: Path) -> None:
    """Mirror root logging into log_path (the run's audit.log) using the console format."""
    if _run_file_handlers(log_path):
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(root.level)
    console_formatter = root.handlers[0].formatter if root.handlers else None
    handler.setFormatter(console_formatter or PlainFormatter())
    root.addHandler(handler)


def remove_run_log_file(log_path: Path) -> None:
    root = logging.getLogger()
    for handler in _run_file_handlers(log_path):
        root.removeHandler(handler)
        handler.close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class StepTimers:
    """Wall-clock duration of named steps, in milliseconds."""

    def __init__(self) -> None:
        self._started: Dict[str, float] = {}

    def start(self, step: str) -> None:
        self._started[step] = time.monotonic()

    def stop(self, step: str) -> Optional[int]:
        started = self._started.pop(step, None)
        return None if started is None else int((time.monotonic() - started) * 1000)


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[StepTimers] = None,
    **extra: Any,
) -> None:
    """
    Log a step transition with structured fields step, phase and event.
    With timers, phase "start" starts the step's clock and "complete" or
    "error" adds duration_ms.
    """
    fields: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}", **extra}
    if timers is not None:
        if phase == "start":
            timers.start(step)
        elif phase in ("complete", "error"):
            duration_ms = timers.stop(step)
            if duration_ms is not None:
                fields["duration_ms"] = duration_ms
    logger.log(level, message, extra=fields)
