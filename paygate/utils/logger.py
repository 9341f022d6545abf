"""
Structured logging for the reconciliation service.

Every record may carry keyword fields (job id, payment reference, poll
attempt, ...). The console shows a compact line; the rotating log file gets one
JSON object per record so job lifecycles can be reconstructed with ``jq``.
Business events go to the ``paygate.audit`` logger and timings to
``paygate.performance``.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# Loggers that receive the configured handlers
LOG_ROOTS: Dict[str, Optional[str]] = {
    "paygate": None,
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
}

# Fields placed first in the JSON object when present
_LEADING_FIELDS = ("job_id", "request_id", "event_type", "operation")

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s | %(message)s%(context)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, structured fields merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        fields: Dict[str, Any] = dict(getattr(record, "extra_data", None) or {})
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _LEADING_FIELDS:
            if key in fields:
                entry[key] = fields.pop(key)
        entry.update(fields)
        entry["source"] = f"{record.module}.{record.funcName}:{record.lineno}"
        entry["thread"] = record.threadName
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human readable line with structured fields appended as ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = getattr(record, "extra_data", None) or {}
        record.context = (" " + " ".join(f"{k}={v}" for k, v in fields.items())) if fields else ""
        return super().format(record)


class StructuredLogger:
    """Thin wrapper taking structured fields as keyword arguments.

    ``None`` values are dropped so callers can pass optional context freely.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log(self, level: int, message: str, exc_info: bool = False, **fields):
        if not self.logger.isEnabledFor(level):
            return
        extra_data = {k: v for k, v in fields.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": extra_data})

    def debug(self, message: str, **fields):
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields):
        self.log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields):
        self.log(logging.CRITICAL, message, **fields)


def _build_config(log_level: str, log_file: Optional[str], enable_console: bool) -> Dict[str, Any]:
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
            "level": log_level,
        }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    names = list(handlers)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {"()": ConsoleFormatter, "format": CONSOLE_FORMAT, "datefmt": "%H:%M:%S"},
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": list(names), "propagate": False}
            for name, level in LOG_ROOTS.items()
        },
        "root": {"level": log_level, "handlers": list(names)},
    }


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure handlers for the service loggers.

    Args:
        log_level: Level name applied to the ``paygate`` tree and the root logger
        log_file: Path of the rotating JSON log; parent directories are created
        enable_console: Emit compact lines on stdout
    """
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(_build_config(log_level.upper(), log_file, enable_console))


def get_logger(name: str) -> StructuredLogger:
    """Return a ``StructuredLogger`` under the ``paygate`` namespace."""
    if name == "paygate" or name.startswith("paygate."):
        return StructuredLogger(name)
    return StructuredLogger(f"paygate.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    job_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Record a job lifecycle event on the audit logger.

    Args:
        event_type: e.g. ``job_submitted``, ``job_completed``, ``uncompensated_work``
        details: Event specific fields, merged into the record
        job_id: Job the event belongs to
        request_id: HTTP request that triggered it, when there was one
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        job_id=job_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Record how long ``operation`` took, in milliseconds."""
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
