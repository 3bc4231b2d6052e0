"""
Logging setup for SyncLedger.

Provides structured logging with:
- Rich colored console output on stderr (stdout stays clean for --json)
- JSON lines for log shippers, on the console or in a rotating file
- Per-call context fields

Components never reach for a global logger; they accept a
``logging.Logger`` and fall back to ``get_logger(<component>)``. Structured
fields travel in ``extra={"context": {...}}`` and are emitted by the JSON
formatter.
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


console = Console(stderr=True)

logger = logging.getLogger("syncledger")

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

SIMPLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _console_handler(format_style: str) -> logging.Handler:
    if format_style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(SIMPLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """
    Configure the ``syncledger`` logger tree.

    Safe to call more than once (each CLI command calls it); previous
    handlers are replaced.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a rotating JSON-lines log file
        format_style: "rich", "json", or "simple"
        max_file_size_mb: Max log file size before rotation
        backup_count: Number of rotated files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(log_level)
    logger.propagate = False

    handler = _console_handler(format_style)
    handler.setLevel(log_level)
    logger.addHandler(handler)

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the record's context fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = getattr(record, "context", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                entry.setdefault(key, value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str = "syncledger") -> logging.Logger:
    """Get a logger namespaced under the package logger."""
    if name != "syncledger" and not name.startswith("syncledger."):
        name = f"syncledger.{name}"
    return logging.getLogger(name)


def context(**fields: Any) -> dict[str, Any]:
    """Build the ``extra`` mapping for a structured log call."""
    return {"context": fields}
