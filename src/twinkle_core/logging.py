"""
Masking helpers and an operation-timing decorator.

A run carries payer credentials and signed payment headers, and its event
stream is handed to arbitrary observers. Anything destined for a log record
or an event payload goes through ``mask_sensitive_data`` first.

Usage:
    from twinkle_core.logging import mask_sensitive_data, log_operation

    logger.warning("Purchase failed", extra={"data": mask_sensitive_data({
        "endpoint": endpoint,
        "payer_credential": credential,
    })})

    @log_operation("procurement_run")
    async def run(self, config): ...
"""
from __future__ import annotations

import logging
import re
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, ParamSpec, Sequence, TypeVar

from .constants import LoggingConfig

T = TypeVar("T")
P = ParamSpec("P")

# Substrings that mark a key as secret whatever its exact spelling
_SECRET_MARKERS = ("secret", "password", "private", "credential")

# Inline secrets inside free text. Tx hashes share the width of a raw key,
# so a 32-byte hex value is only masked when it is labelled as a key.
_INLINE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b((?:private_?key|pk)[=:]\s*)0x[0-9a-f]{64}\b", re.IGNORECASE), r"\1***"),
    (re.compile(r"(Bearer\s+)[\w.-]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(https?://)[^:/\s]+:[^@/\s]+@", re.IGNORECASE), r"\1***:***@"),
)


def mask_value(value: str, show_chars: int = 4) -> str:
    """Keep ``show_chars`` at each end of a long value, hide the rest."""
    if not value or len(value) <= show_chars * 2:
        return LoggingConfig.MASK_PATTERN
    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    if key in LoggingConfig.SENSITIVE_FIELDS:
        return True
    normalized = key.lower().replace("-", "_")
    if normalized in LoggingConfig.SENSITIVE_FIELDS:
        return True
    return any(marker in normalized for marker in _SECRET_MARKERS)


def _mask_text(text: str) -> str:
    if len(text) > LoggingConfig.MAX_LOG_MESSAGE_LENGTH:
        text = text[: LoggingConfig.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"
    for pattern, replacement in _INLINE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingConfig.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Return a copy of ``data`` with secret-looking values replaced.

    Dict values under sensitive keys (or ``additional_fields``) become
    ``mask_pattern``; strings are scanned for inline secrets; lists and
    tuples are walked keeping their type. Nesting deeper than ``_max_depth``
    is returned untouched.
    """
    if _depth > _max_depth:
        return data

    def walk(value: Any) -> Any:
        return mask_sensitive_data(value, additional_fields, mask_pattern, _depth + 1, _max_depth)

    if isinstance(data, dict):
        extra = set(additional_fields or ())
        return {
            key: mask_pattern if is_sensitive_key(str(key)) or key in extra else walk(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(walk(item) for item in data)
    if isinstance(data, str):
        return _mask_text(data)
    return data


def log_operation(
    operation_name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
    log_args: bool = False,
    log_exceptions: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Log start, completion or failure, and duration of a coroutine."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        log = logger or logging.getLogger(func.__module__)
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            started = time.perf_counter()
            start_data: dict[str, Any] = {"function": func.__name__}
            if log_args:
                start_data["kwargs"] = mask_sensitive_data(kwargs)
            log.info(f"Starting {op_name}", extra={"data": start_data})

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if log_exceptions:
                    log.error(
                        f"Failed {op_name}: {type(e).__name__}",
                        extra={"data": {
                            "duration_ms": (time.perf_counter() - started) * 1000,
                            "error_type": type(e).__name__,
                            "error_message": str(e),
                        }},
                    )
                raise

            log.info(
                f"Completed {op_name}",
                extra={"data": {"duration_ms": (time.perf_counter() - started) * 1000}},
            )
            return result

        return wrapper

    return decorator


__all__ = [
    "mask_sensitive_data",
    "mask_value",
    "is_sensitive_key",
    "log_operation",
]
