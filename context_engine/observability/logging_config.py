"""
Structured logging configuration for the Sequence Context Engine.

Standard library logging with a JSON formatter for production and a
colored formatter for local development. Every record emitted while a
sequence is active carries its instance_id and organization_id, bound
with bind_log_context() and stored in contextvars so concurrent
sequences in one event loop never see each other's ids.

Environments (CONTEXT_ENGINE_ENV):
- production: JSON to stdout (machine-readable)
- development/staging/test: Colored text to stderr (human-readable)

Usage:
    from context_engine.observability.logging_config import (
        bind_log_context, configure_logging,
    )

    configure_logging()

    logger = logging.getLogger(__name__)
    with bind_log_context(instance_id="post_meeting_intelligence-...", organization_id="org-1"):
        logger.info("skill_merged", extra={"skill_id": "transcription"})
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

ENV_VAR = "CONTEXT_ENGINE_ENV"

# ─── Sequence Log Context ─────────────────────────────────────────────

_CONTEXT_KEYS = ("instance_id", "organization_id")

_log_context: ContextVar[dict[str, str]] = ContextVar("context_engine_log_context", default={})


def get_log_context() -> dict[str, str]:
    """The ids currently bound for log records (empty when none)."""
    return dict(_log_context.get())


def set_log_context(**ids: Optional[str]) -> None:
    """Bind ids for the current context; None values are ignored."""
    current = dict(_log_context.get())
    current.update({k: v for k, v in ids.items() if k in _CONTEXT_KEYS and v})
    _log_context.set(current)


def clear_log_context() -> None:
    _log_context.set({})


@contextlib.contextmanager
def bind_log_context(**ids: Optional[str]) -> Iterator[None]:
    """Bind ids for the duration of a with-block, restoring the previous ones after."""
    current = dict(_log_context.get())
    current.update({k: v for k, v in ids.items() if k in _CONTEXT_KEYS and v})
    token = _log_context.set(current)
    try:
        yield
    finally:
        _log_context.reset(token)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """
    Injects the bound instance_id / organization_id into every record.

    Values passed explicitly through extra={...} win over bound ones.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


# ─── JSON Formatter (Production) ──────────────────────────────────────


_STANDARD_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: timestamp, level, logger, message plus any
    extra fields.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "context_engine.state_manager",
         "message": "...", "instance_id": "...", "skill_id": "transcription"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ─── Dev Formatter (Local Development) ────────────────────────────────


class DevFormatter(logging.Formatter):
    """
    Colorful, human-readable logs for local development.

    Format: [HH:MM:SS] LEVEL logger: message [key=value key=value]
    """

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    _EXTRA_KEYS = (
        "instance_id", "skill_id", "status", "step",
        "backend", "duration_ms", "total_used",
    )

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        timestamp = self.formatTime(record, "%H:%M:%S")

        extras = []
        for key in self._EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                extras.append(f"{key}={value}")

        extra_str = f" [{' '.join(extras)}]" if extras else ""

        formatted = (
            f"{self.RESET}[{timestamp}] "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}{extra_str}"
        )

        if record.exc_info and record.exc_info[1]:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


# ─── Configuration ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Configure the root logger based on environment.

    Args:
        env: Override environment. If None, reads CONTEXT_ENGINE_ENV
             (defaults to "development").
        level: Log level (default: INFO).
    """
    env = (env or os.environ.get(ENV_VAR, "development")).lower().strip()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if env == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(DevFormatter())

    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    # Silence noisy libraries
    for name in ("httpx", "httpcore", "supabase", "hpack"):
        logging.getLogger(name).setLevel(logging.WARNING)
