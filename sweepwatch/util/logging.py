"""Logging for sweepwatch processes.

Everything logs under the ``sweepwatch`` logger. The console gets one line
per record with the structured context (process id, subscriber, cleanup
step, ...) appended as ``key=value`` pairs; ``--log-json`` adds a JSON-lines
file carrying the same fields. RateLimitedLog keeps per-line and per-overflow
conditions from flooding either sink.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

ROOT_LOGGER = "sweepwatch"

# extra={} keys copied into formatted output, in display order
CONTEXT_FIELDS = (
    "session_id",
    "pid",
    "subscriber_id",
    "signal_id",
    "step",
    "error_type",
    "duration_ms",
)

_configured = False


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}


def _component(record: logging.LogRecord) -> str:
    prefix = ROOT_LOGGER + "."
    return record.name[len(prefix):] if record.name.startswith(prefix) else record.name


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        output: Dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
        }
        output.update(_context(record))
        suppressed = getattr(record, "suppressed", 0)
        if suppressed:
            output["suppressed"] = suppressed
        if record.exc_info:
            output["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(output, default=str)


class ConsoleFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"[{ts}] {level} [{_component(record)}] {record.getMessage()}"
        context = _context(record)
        if context:
            line += "  " + " ".join(f"{k}={v}" for k, v in context.items())
        suppressed = getattr(record, "suppressed", 0)
        if suppressed:
            line += f" (+{suppressed} suppressed)"
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


def configure_logging(
    *,
    level: Optional[str] = None,
    json_file: Optional[str] = None,
    use_color: bool = True,
) -> None:
    """(Re)install the console handler and, optionally, a JSON-lines file handler.

    ``level`` defaults to SWEEPWATCH_LOG_LEVEL, or DEBUG when SWEEPWATCH_DEBUG
    is truthy. Color is only used when stderr is a terminal.
    """
    global _configured

    if level is None:
        if os.environ.get("SWEEPWATCH_DEBUG", "").strip().lower() in ("1", "true", "yes"):
            level = "DEBUG"
        else:
            level = os.environ.get("SWEEPWATCH_LOG_LEVEL", "INFO")
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric_level)
    root.propagate = False
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ConsoleFormatter(use_color=use_color and sys.stderr.isatty()))
    root.addHandler(console)

    if json_file:
        try:
            file_handler = logging.FileHandler(json_file, mode="a", encoding="utf-8")
        except OSError as exc:
            root.warning("Cannot open JSON log file %s: %s", json_file, exc)
        else:
            file_handler.setFormatter(JSONFormatter())
            root.addHandler(file_handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``sweepwatch`` namespace; configures defaults on first use."""
    if not _configured:
        configure_logging()
    if name == "__main__":
        name = ROOT_LOGGER + ".main"
    elif name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    error_type: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log the exception being handled, with ``error_type`` and extra context."""
    if error_type:
        extra["error_type"] = error_type
    logger.exception(message, extra=extra)


class RateLimitedLog:
    """Emit at most one record per key per interval.

    Occurrences that fall inside the quiet interval are counted and the
    count is attached to the next emitted record as ``suppressed``.
    """

    def __init__(
        self,
        logger: logging.Logger,
        interval: float = 10.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = logger
        self.interval = float(interval)
        self._clock = clock
        self._last: Dict[str, float] = {}
        self._suppressed: Dict[str, int] = {}
        self._lock = threading.Lock()

    def log(self, level: int, key: str, msg: str, *args: Any, **extra: Any) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < self.interval:
                self._suppressed[key] = self._suppressed.get(key, 0) + 1
                return False
            self._last[key] = now
            suppressed = self._suppressed.pop(key, 0)
        extra["suppressed"] = suppressed
        self.logger.log(level, msg, *args, extra=extra)
        return True

    def debug(self, key: str, msg: str, *args: Any, **extra: Any) -> bool:
        return self.log(logging.DEBUG, key, msg, *args, **extra)

    def warning(self, key: str, msg: str, *args: Any, **extra: Any) -> bool:
        return self.log(logging.WARNING, key, msg, *args, **extra)

    def error(self, key: str, msg: str, *args: Any, **extra: Any) -> bool:
        return self.log(logging.ERROR, key, msg, *args, **extra)

    def suppressed(self, key: str) -> int:
        with self._lock:
            return self._suppressed.get(key, 0)
