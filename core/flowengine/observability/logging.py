"""
Logging setup with per-task trace context.

Plain logger.info() calls pick up the identifiers of the run and node
they happen in. The context lives in a ContextVar; every asyncio task
(one per branch) gets its own copy, so concurrent branches log with their
own node_id.

Flow:
    WorkflowExecutor._walk()  -> execution_id, workflow_id, organization_id
    WorkflowExecutor._visit() -> node_id, node_type (per branch task)
    NodeExecutor.execute()    -> logger.info("...") carries all of it

Two renderings: JSON lines for production, a coloured one-line format for
development.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# (context key, prefix label, shortening) for the human-readable prefix
_PREFIX_FIELDS = (
    ("execution_id", "exec", lambda v: v[-8:]),
    ("workflow_id", "wf", str),
    ("node_id", "node", str),
)

# Loggers of libraries we call; they go through the root handler in JSON mode
_LIBRARY_LOGGERS = ("httpx", "httpcore", "aiohttp.access")


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, trace context and extras."""

    EXTRA_FIELDS = ("event", "node_id", "node_type", "duration_ms", "status")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **get_trace_context(),
        }
        for name in self.EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """`[INFO    ] [exec:1a2b3c4d | node:fetch] message` with a coloured level."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = get_trace_context()
        parts = [
            f"{label}:{shorten(context[key])}"
            for key, label, shorten in _PREFIX_FIELDS
            if context.get(key)
        ]
        prefix = f"[{' | '.join(parts)}] " if parts else ""
        color = self.COLORS.get(record.levelname, "")

        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",
    stream: TextIO | None = None,
) -> None:
    """
    Install one root handler. Call once at startup (CLI, server, tests).

    format is "json", "human" or "auto"; auto picks JSON when LOG_FORMAT=json
    or ENV=production.
    """
    resolved = _resolve_format(format)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter() if resolved == "json" else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if resolved == "json":
        for name in _LIBRARY_LOGGERS:
            library_logger = logging.getLogger(name)
            library_logger.handlers.clear()
            library_logger.propagate = True


def set_trace_context(**fields: Any) -> None:
    """Merge fields into the current task's trace context."""
    trace_context.set({**(trace_context.get() or {}), **fields})


def get_trace_context() -> dict[str, Any]:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
