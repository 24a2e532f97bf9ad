"""Structured logging configuration with run correlation.

Every record emitted while a procurement run is in progress carries that
run's ID, and the provider being worked on when there is one, so the
interleaved per-provider output of concurrent phases can be pulled apart.
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import TwinkleSettings

# Context variables for correlation tracking
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
provider_var: ContextVar[Optional[str]] = ContextVar("provider", default=None)

# Attributes every LogRecord has; anything else arrived through ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
    "run_id",
    "provider",
}


class CorrelationIDFilter(logging.Filter):
    """Stamps the current run and provider onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_var.get()
        record.provider = provider_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in ("run_id", "provider"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update({k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS})
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure root logging for a process that drives procurement runs.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON records on stdout when True, plain text otherwise
        log_file: Optional path that also receives JSON records
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    correlation = CorrelationIDFilter()

    console = logging.StreamHandler(sys.stdout)
    console.addFilter(correlation)
    console.setFormatter(
        StructuredFormatter()
        if json_format
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s [run=%(run_id)s] %(message)s")
    )
    root_logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.addFilter(correlation)
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_logging_from_settings(settings: TwinkleSettings, log_file: Optional[str] = None) -> None:
    """Configure logging from ``TWINKLE_LOG_LEVEL`` and ``TWINKLE_LOG_JSON``."""
    setup_logging(level=settings.log_level, json_format=settings.log_json, log_file=log_file)


__all__ = [
    "CorrelationIDFilter",
    "StructuredFormatter",
    "setup_logging",
    "setup_logging_from_settings",
    "run_id_var",
    "provider_var",
]
