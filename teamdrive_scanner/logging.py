"""Logging setup shared by the scanner CLIs and crawl threads."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, Literal

LogFormat = Literal["text", "json"]
LogDestination = Literal["auto", "stdout", "stderr"]

TEXT_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

# Third-party loggers that are chatty at INFO once dozens of workers share them.
_QUIET_LOGGERS = ("googleapiclient.discovery", "google_auth_httplib2", "psycopg.pool")

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record; `extra=` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload, default=str)


def configure_logging(
    *,
    level: str | int = "INFO",
    fmt: LogFormat = "text",
    destination: LogDestination = "auto",
) -> logging.Logger:
    """Install handlers on the root logger; safe to call repeatedly.

    ``auto`` sends records below WARNING to stdout and the rest to stderr.
    """

    resolved_level = _resolve_level(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(resolved_level)

    formatter: logging.Formatter = JsonFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT)
    for handler in _build_handlers(destination):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    quiet_level = max(resolved_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return root


def _resolve_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.upper())
    if not isinstance(resolved, int):  # logging returns the input string when it fails
        raise ValueError(f"Unknown log level: {value}")
    return resolved


def _build_handlers(destination: LogDestination) -> tuple[logging.Handler, ...]:
    if destination == "stdout":
        return (logging.StreamHandler(sys.stdout),)
    if destination == "stderr":
        return (logging.StreamHandler(sys.stderr),)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    return (stdout_handler, stderr_handler)


__all__ = ["LogDestination", "LogFormat", "JsonFormatter", "TEXT_FORMAT", "configure_logging"]
