"""Canonical configuration surface for Twinkle procurement runs."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DecryptPolling, ProtocolDefaults, Timeouts


class TwinkleSettings(BaseSettings):
    """Main Twinkle configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TWINKLE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Quality gate
    quality_threshold: float = Field(default=ProtocolDefaults.QUALITY_THRESHOLD, ge=0, le=10)

    # Escrow
    escrow_unit_amount: Decimal = ProtocolDefaults.ESCROW_UNIT_AMOUNT
    asset: str = ProtocolDefaults.ASSET
    token_address: str = ""
    escrow_deadline_seconds: int = Field(default=ProtocolDefaults.ESCROW_DEADLINE_SECONDS, gt=0)
    escrow_grace_multiple: int = Field(default=ProtocolDefaults.ESCROW_GRACE_MULTIPLE, ge=1)

    # Mandates
    intent_ttl_seconds: int = Field(default=ProtocolDefaults.INTENT_TTL_SECONDS, gt=0)

    # Commitment polling
    decrypt_poll_interval_seconds: float = Field(default=DecryptPolling.INTERVAL_SECONDS, ge=0)
    decrypt_max_attempts: int = Field(default=DecryptPolling.MAX_ATTEMPTS, ge=1)
    decrypt_timeout_seconds: float = Field(default=DecryptPolling.TIMEOUT_SECONDS, gt=0)

    # Purchase
    use_x402: bool = False
    purchase_timeout_seconds: float = Field(default=Timeouts.PURCHASE_HTTP, gt=0)
    payer_credential: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("escrow_unit_amount")
    @classmethod
    def validate_unit_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("escrow_unit_amount must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def require_credential_outside_dev(self) -> "TwinkleSettings":
        if self.use_x402 and self.environment != "dev" and not self.payer_credential:
            raise ValueError(
                "TWINKLE_PAYER_CREDENTIAL is required when TWINKLE_USE_X402 is enabled "
                f"outside dev (environment={self.environment})"
            )
        return self


@lru_cache
def load_settings(env_file: str | None = None) -> TwinkleSettings:
    """Load TwinkleSettings once per process to keep runs consistent."""
    env_path = Path(env_file) if env_file else None
    return TwinkleSettings(_env_file=env_path)


__all__ = ["TwinkleSettings", "load_settings"]
