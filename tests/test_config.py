"""Tests for TwinkleSettings."""
from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from twinkle_core.config import TwinkleSettings


class TestTwinkleSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TWINKLE_QUALITY_THRESHOLD", raising=False)
        settings = TwinkleSettings(_env_file=None)

        assert settings.quality_threshold == 5.0
        assert settings.escrow_unit_amount == Decimal("0.10")
        assert settings.decrypt_max_attempts == 15
        assert settings.decrypt_poll_interval_seconds == 1.0
        assert settings.use_x402 is False

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TWINKLE_QUALITY_THRESHOLD", "7.5")
        monkeypatch.setenv("TWINKLE_ESCROW_UNIT_AMOUNT", "0.25")

        settings = TwinkleSettings(_env_file=None)

        assert settings.quality_threshold == 7.5
        assert settings.escrow_unit_amount == Decimal("0.25")

    def test_threshold_bounds(self):
        with pytest.raises(PydanticValidationError):
            TwinkleSettings(_env_file=None, quality_threshold=11)

    def test_unit_amount_positive(self):
        with pytest.raises(PydanticValidationError):
            TwinkleSettings(_env_file=None, escrow_unit_amount=Decimal("0"))

    def test_log_level_normalized(self):
        assert TwinkleSettings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_x402_requires_credential_outside_dev(self):
        with pytest.raises(PydanticValidationError):
            TwinkleSettings(_env_file=None, environment="prod", use_x402=True)

    def test_x402_allowed_in_dev_without_credential(self):
        settings = TwinkleSettings(_env_file=None, environment="dev", use_x402=True)
        assert settings.use_x402 is True
