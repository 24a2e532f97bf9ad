"""Unified exception hierarchy for Twinkle.

All Twinkle-specific exceptions inherit from TwinkleException, enabling:
- Consistent error handling across the procurement run
- Structured error payloads with machine-readable error codes
- A clear split between per-provider (recoverable) and fatal failures

Usage:
    from twinkle_core.exceptions import (
        TwinkleException,
        CommitFailedError,
        AlreadySettledError,
    )

    try:
        receipt = await orchestrator.run(config)
    except CommitFailedError as e:
        logger.error("Run aborted: %s", e.to_dict())

All exceptions have:
- error_code: Machine-readable error code (e.g., "COMMIT_FAILED")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a serializable payload
"""
from __future__ import annotations

from typing import Any, Optional


class TwinkleException(Exception):
    """Base exception for all Twinkle errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "TWINKLE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Lookup Errors
# =============================================================================

class ValidationError(TwinkleException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotFoundError(TwinkleException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class ConfigurationError(TwinkleException):
    """Invalid or incomplete configuration."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Commitment Errors (fatal when the layer was selected)
# =============================================================================

class CommitmentError(TwinkleException):
    """Base class for encrypted-commitment errors."""

    error_code = "COMMITMENT_ERROR"


class CommitFailedError(CommitmentError):
    """The commitment primitive reported a non-successful transaction."""

    error_code = "COMMIT_FAILED"

    def __init__(
        self,
        message: str,
        layer: Optional[str] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if layer:
            details["layer"] = layer
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, details=details)


class DecryptTimeoutError(CommitmentError):
    """Decryption did not become available within the polling budget."""

    error_code = "DECRYPT_TIMEOUT"

    def __init__(
        self,
        tx_hash: str,
        timeout_seconds: float,
        attempts: int,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["tx_hash"] = tx_hash
        details["timeout_seconds"] = timeout_seconds
        details["attempts"] = attempts
        super().__init__(
            f"Decrypt timeout after {timeout_seconds}s ({attempts} attempts) for {tx_hash}",
            details=details,
        )


# =============================================================================
# Escrow Errors
# =============================================================================

class EscrowError(TwinkleException):
    """Base class for escrow-related errors."""

    error_code = "ESCROW_ERROR"


class EscrowStateError(EscrowError):
    """Requested escrow operation is illegal in the current state."""

    error_code = "ESCROW_STATE_ERROR"

    def __init__(
        self,
        message: str,
        escrow_id: Optional[int] = None,
        status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if escrow_id is not None:
            details["escrow_id"] = escrow_id
        if status:
            details["status"] = status
        super().__init__(message, details=details)


class AlreadySettledError(EscrowStateError):
    """Escrow already reached a terminal status."""

    error_code = "ALREADY_SETTLED"


class DeliveryProofMismatchError(EscrowError):
    """Delivery proof presented at settlement does not match the submitted response."""

    error_code = "DELIVERY_PROOF_MISMATCH"

    def __init__(self, escrow_id: int, details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        details["escrow_id"] = escrow_id
        super().__init__(f"Delivery proof mismatch for escrow #{escrow_id}", details=details)


class LedgerTransactionError(EscrowError):
    """Ledger transaction failed or could not be parsed."""

    error_code = "LEDGER_TRANSACTION_FAILED"


# =============================================================================
# Mandate Errors
# =============================================================================

class MandateError(TwinkleException):
    """Base class for mandate-related errors."""

    error_code = "MANDATE_ERROR"


class NoIntentError(MandateError):
    """A cart was requested before the chain has an intent."""

    error_code = "NO_INTENT"

    def __init__(self, message: str = "Must create intent before cart") -> None:
        super().__init__(message)


class MandateChainError(MandateError):
    """Mandate chain integrity or completion rule violated."""

    error_code = "MANDATE_CHAIN_INVALID"


# =============================================================================
# Provider Errors (recoverable per provider)
# =============================================================================

class ProviderUnavailableError(TwinkleException):
    """Purchase from a provider failed; the provider is dropped for this run."""

    error_code = "PROVIDER_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)


__all__ = [
    "TwinkleException",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
    "CommitmentError",
    "CommitFailedError",
    "DecryptTimeoutError",
    "EscrowError",
    "EscrowStateError",
    "AlreadySettledError",
    "DeliveryProofMismatchError",
    "LedgerTransactionError",
    "MandateError",
    "NoIntentError",
    "MandateChainError",
    "ProviderUnavailableError",
]
