"""
Centralized constants and configuration values for Twinkle Core.

This module provides a single source of truth for the protocol constants,
timeouts and defaults used throughout the twinkle-core package.

Usage:
    from twinkle_core.constants import ProtocolDefaults, LoggingConfig

All values are organized into logical namespaces using classes.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Final


# =============================================================================
# Procurement Protocol Defaults
# =============================================================================

class ProtocolDefaults:
    """Defaults for a single procurement run."""

    QUALITY_THRESHOLD: Final[float] = 5.0
    SCORE_MIN: Final[float] = 0.0
    SCORE_MAX: Final[float] = 10.0
    DEFAULT_SCORE: Final[float] = 5.0

    ESCROW_UNIT_AMOUNT: Final[Decimal] = Decimal("0.10")
    ASSET: Final[str] = "USDC"

    INTENT_TTL_SECONDS: Final[int] = 600
    ESCROW_DEADLINE_SECONDS: Final[int] = 3600
    ESCROW_GRACE_MULTIPLE: Final[int] = 2

    DEFAULT_SERVICE: Final[str] = "data-query"

    REPUTATION_PAID_SCORE: Final[int] = 80
    REPUTATION_REFUNDED_SCORE: Final[int] = -40
    REPUTATION_PAID_TAGS: Final[tuple[str, str]] = ("quality", "reliable")
    REPUTATION_REFUNDED_TAGS: Final[tuple[str, str]] = ("quality", "poor")

    NO_SYNTHESIS: Final[str] = "No passing results to synthesize."
    SYNTHESIS_FALLBACK: Final[str] = "Analysis synthesis completed."


# =============================================================================
# Decrypt Polling
# =============================================================================

class DecryptPolling:
    """Fixed-interval polling of the decryption oracle."""

    INTERVAL_SECONDS: Final[float] = 1.0
    MAX_ATTEMPTS: Final[int] = 15
    TIMEOUT_SECONDS: Final[float] = 30.0


# =============================================================================
# Retry Configuration
# =============================================================================

class RetryConfig:
    """Retry configuration for various operations."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 60.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1


# =============================================================================
# Timeouts
# =============================================================================

class Timeouts:
    """Network timeouts in seconds."""

    PURCHASE_HTTP: Final[float] = 30.0


# =============================================================================
# Logging Configuration
# =============================================================================

class LoggingConfig:
    """Logging-related constants."""

    # Sensitive fields to mask in logs and published events
    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "token",
        "api_key",
        "apiKey",
        "private_key",
        "privateKey",
        "buyer_pk",
        "buyerPk",
        "payer_credential",
        "payerCredential",
        "signature",
        "authorization",
        "credential",
        "credentials",
    })

    MASK_PATTERN: Final[str] = "***REDACTED***"

    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000

    # Preview length for committed payloads in events
    PREVIEW_LENGTH: Final[int] = 100


__all__ = [
    "ProtocolDefaults",
    "DecryptPolling",
    "RetryConfig",
    "Timeouts",
    "LoggingConfig",
]
