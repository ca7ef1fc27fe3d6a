"""Logging setup shared by the CLI and the pipeline.

Pipeline code tags records with ``extra={"region": slug}`` (directly or via a
``LoggerAdapter``); both formatters surface that tag.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

HUMAN_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
HUMAN_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


@dataclass(frozen=True)
class LogOptions:
    """Console verbosity and optional JSON log file."""

    verbose: int = 0
    quiet: bool = False
    log_file: Path | None = None
    json_console: bool = False

    @property
    def console_level(self) -> int:
        if self.quiet:
            return logging.WARNING
        return logging.DEBUG if self.verbose > 0 else logging.INFO


def _record_time(record: logging.LogRecord) -> str:
    moment = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``region`` is promoted to a top-level key."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _record_time(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = {
            key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS
        }
        region = extra.pop("region", None)
        if region:
            payload["region"] = region
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanFormatter(logging.Formatter):
    """Timestamped console lines, prefixed with the region when known."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(HUMAN_FORMAT, datefmt=HUMAN_DATE_FORMAT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        region = getattr(record, "region", None)
        if region:
            record.message = f"[{region}] {record.message}"
        return super().formatMessage(record)


def _console_handler(options: LogOptions) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(options.console_level)
    handler.setFormatter(JsonFormatter() if options.json_console else HumanFormatter())
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(JsonFormatter())
    return handler


def configure_logging(options: LogOptions) -> logging.Logger:
    """Replace the root logger's handlers according to ``options``."""
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    root.addHandler(_console_handler(options))
    if options.log_file:
        root.addHandler(_file_handler(options.log_file))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
