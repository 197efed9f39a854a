"""Logging setup for the audit engine and its workers.

Records carry audit context through ``extra=``: the job, the platform being
analyzed, and the static tool or AI model involved. Production formats each
record as one JSON object; development prints a compact colored line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_CONTEXT_FIELDS = ("job_id", "owner_id", "platform", "tool", "model", "duration_ms")

# Third-party loggers that only matter at WARNING and above
_QUIET_LOGGERS = ("httpcore", "httpx", "anthropic", "openai", "asyncio", "celery.redirected", "kombu")


def audit_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields present on ``record``."""
    return {key: getattr(record, key) for key in _CONTEXT_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service: str = "omniaudit") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(audit_context(record))

        if record.exc_info and record.exc_info[1]:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Colored single-line output with a ``[job/platform]`` prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        line = f"{color}{ts} [{record.levelname:>8s}]{self.RESET} {record.name}: "

        scope = [str(v) for v in (getattr(record, "job_id", None), getattr(record, "platform", None)) if v]
        if scope:
            scope[0] = scope[0][:8]
            line += f"[{'/'.join(scope)}] "
        line += record.getMessage()

        via = getattr(record, "tool", None) or getattr(record, "model", None)
        if via:
            line += f" (via {via})"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(env: str = "development", log_level: str = "INFO", service: str = "omniaudit") -> None:
    """Install the engine's handler on the root logger.

    Staging and production get :class:`JSONFormatter`; anything else gets
    :class:`DevFormatter`. Existing root handlers are replaced.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter(service) if env in ("staging", "production") else DevFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
