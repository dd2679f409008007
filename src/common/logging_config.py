"""
Logging configuration for the GPU passthrough tools.

Console output goes to stderr so that stdout stays clean for --json and
rendered config blocks. An optional rotating file log keeps full debug
detail, as plain text or JSON lines.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
import json
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_PREFIX = "gpupass"

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d] %(message)s"


def level_for_verbosity(verbose: int) -> int:
    """Map a -v count to a console level: none=WARNING, -v=INFO, -vv=DEBUG."""
    if verbose <= 0:
        return logging.WARNING
    if verbose == 1:
        return logging.INFO
    return logging.DEBUG


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "extra_data", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; LogContext values land under "data"."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
            code = getattr(record.exc_info[1], "code", None)
            if isinstance(code, str):
                entry["error_code"] = code

        context = _context_of(record)
        if context:
            entry["data"] = context

        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends LogContext values as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = _context_of(record)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items() if v is not None)
            if pairs:
                text = f"{text} [{pairs}]"
        return text


class ColoredFormatter(ContextFormatter):
    """Context formatter with the level name colored for terminals."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        plain = record.levelname
        record.levelname = f"{self.COLORS.get(record.levelno, '')}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
):
    """
    Configure the root logger for a command line run.

    Safe to call more than once: handlers from an earlier call are replaced,
    which is how the CLIs add the file log after settings are loaded.

    Args:
        level: Console level
        log_file: Rotating log file that always records DEBUG
        json_logs: Write the log file as JSON lines
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG if log_file else level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    formatter_cls = ColoredFormatter if sys.stderr.isatty() else ContextFormatter
    console.setFormatter(formatter_cls(CONSOLE_FORMAT))
    root_logger.addHandler(console)

    if not log_file:
        return

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=2 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JSONFormatter() if json_logs else logging.Formatter(FILE_FORMAT))
    root_logger.addHandler(file_handler)


class LogContext:
    """
    Attach key/value context to every record logged inside the block.

    Contexts nest: an inner block sees the outer values plus its own, and
    inner keys win on conflict.

    Example:
        with LogContext(container_id="101", vendor="amd"):
            logger.info("Writing passthrough block")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._previous = None

    def __enter__(self):
        self._previous = previous = logging.getLogRecordFactory()
        context = self.context

        def record_factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            record.extra_data = {**_context_of(record), **context}
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, *args):
        logging.setLogRecordFactory(self._previous)


def get_logger(name: str) -> logging.Logger:
    """Return ``gpupass.<name>``."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")
