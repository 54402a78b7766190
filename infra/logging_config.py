"""Centralized logging configuration.

Supports human-friendly text logs and structured JSON logs. The ingest CLI
calls ``setup_logging`` once at startup; library modules only ever use
``logging.getLogger(__name__)`` or ``StructuredLogger``.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings

# Run-scoped context merged into every JSON log line (data path, worker count...).
run_ctx: ContextVar[dict[str, Any] | None] = ContextVar("run_ctx", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
        "message", "asctime",
    }
)


def set_run_context(**kwargs: Any) -> None:
    """Add values to the run context included in subsequent JSON log entries."""
    current = dict(run_ctx.get() or {})
    current.update(kwargs)
    run_ctx.set(current)


def clear_run_context() -> None:
    """Reset the run context."""
    run_ctx.set({})


def get_run_context() -> dict[str, Any]:
    """Return a copy of the current run context."""
    return dict(run_ctx.get() or {})


def _utc_iso8601(created: float) -> str:
    # Example: 2026-01-24T18:03:12.123Z
    return (
        datetime.fromtimestamp(created, UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured ``extra`` fields become top-level keys."""

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_iso8601(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in base:
                base[key] = value
        for key, value in self._extra_fields.items():
            base.setdefault(key, value)
        for key, value in get_run_context().items():
            base.setdefault(key, value)
        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-friendly logs with UTC timestamps."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")


class StructuredLogger:
    """
    Event-style logger: an event name plus keyword fields.

    Usage:
        logger = StructuredLogger(__name__)
        logger.warning("record_failed", record_id="abc", stage="authors")

    With JSON logs the fields are emitted as top-level keys; text logs render
    them as ``key=value`` pairs after the event name.
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event: str, exc_info: bool = False, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{event} {rendered}" if rendered else event
        self._logger.log(level, message, extra={"event": event, **fields}, exc_info=exc_info)

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, **fields)

    def exception(self, event: str, **fields: Any) -> None:
        """Log at ERROR with the active exception attached."""
        self._log(logging.ERROR, event, exc_info=True, **fields)


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """
    Configure the root logger once for the process.

    Env vars (see infra.config):
      - PAPERGRAPH_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - PAPERGRAPH_LOG_JSON:  1/0 (default 0)
      - PAPERGRAPH_LOG_OVERRIDE: 1/0 (default 0). If 0, handlers are only
        installed when the root logger has none.
    """
    config = get_settings(reload=True).logging
    resolved_level = (level or config.level).upper()
    use_json = config.json_logs if json_logs is None else json_logs
    override = config.override_root_handlers if override_root_handlers is None else override_root_handlers

    root = logging.getLogger()
    root.setLevel(getattr(logging, resolved_level, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(extra_fields=extra_fields) if use_json else TextFormatter())

    if override:
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(handler)
    elif not root.handlers:
        root.addHandler(handler)

    logging.getLogger("psycopg2").setLevel(logging.WARNING)
