"""Tests for log masking and run correlation."""
from __future__ import annotations

import json
import logging

import pytest

from twinkle_core.config import TwinkleSettings
from twinkle_core.constants import LoggingConfig
from twinkle_core.logging import log_operation, mask_sensitive_data, mask_value
from twinkle_core.logging_config import (
    CorrelationIDFilter,
    StructuredFormatter,
    run_id_var,
    setup_logging,
    setup_logging_from_settings,
)


class TestMasking:
    def test_masks_credential_keys(self):
        masked = mask_sensitive_data({
            "endpoint": "http://a.test",
            "payer_credential": "0xdeadbeef",
            "nested": {"privateKey": "0x1", "amount": "0.10"},
        })

        assert masked["endpoint"] == "http://a.test"
        assert masked["payer_credential"] == LoggingConfig.MASK_PATTERN
        assert masked["nested"]["privateKey"] == LoggingConfig.MASK_PATTERN
        assert masked["nested"]["amount"] == "0.10"

    def test_tx_hashes_are_not_masked(self):
        tx = "0x" + "ab" * 32
        assert mask_sensitive_data({"txHash": tx}) == {"txHash": tx}

    def test_inline_bearer_and_url_credentials(self):
        text = mask_sensitive_data("Bearer abc.def https://user:pw@host/path")
        assert "abc.def" not in text
        assert "user:pw" not in text

    def test_inline_private_key(self):
        text = mask_sensitive_data("private_key=0x" + "11" * 32)
        assert "11" * 32 not in text

    def test_mask_value(self):
        assert mask_value("0123456789abcdef") == "0123...cdef"
        assert mask_value("short") == LoggingConfig.MASK_PATTERN

    def test_tuples_stay_tuples(self):
        assert mask_sensitive_data(("a", "b")) == ("a", "b")


class TestLogOperation:
    @pytest.mark.asyncio
    async def test_logs_start_and_completion(self, caplog):
        @log_operation("sample_op")
        async def op() -> int:
            return 1

        with caplog.at_level(logging.INFO):
            assert await op() == 1

        messages = [r.getMessage() for r in caplog.records]
        assert "Starting sample_op" in messages
        assert "Completed sample_op" in messages

    @pytest.mark.asyncio
    async def test_logs_and_reraises(self, caplog):
        @log_operation("failing_op")
        async def op() -> None:
            raise ValueError("boom")

        with caplog.at_level(logging.INFO), pytest.raises(ValueError):
            await op()

        assert any(r.getMessage() == "Failed failing_op: ValueError" for r in caplog.records)


class TestStructuredFormatter:
    def test_run_id_included(self):
        record = logging.LogRecord("twinkle", logging.INFO, __file__, 1, "hello %s", ("x",), None)
        token = run_id_var.set("run_abc")
        try:
            CorrelationIDFilter().filter(record)
        finally:
            run_id_var.reset(token)

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello x"
        assert data["run_id"] == "run_abc"
        assert "provider" not in data

    def test_extra_fields_kept(self):
        record = logging.makeLogRecord({"msg": "purchase failed", "data": {"endpoint": "http://a"}})
        data = json.loads(StructuredFormatter().format(record))
        assert data["data"] == {"endpoint": "http://a"}


class TestSetupLogging:
    def test_installs_json_console_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level="debug")

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            handler = root.handlers[0]
            assert isinstance(handler.formatter, StructuredFormatter)
            assert any(isinstance(f, CorrelationIDFilter) for f in handler.filters)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_settings_choose_level_and_format(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging_from_settings(
                TwinkleSettings(_env_file=None, log_level="warning", log_json=False)
            )

            assert root.level == logging.WARNING
            assert not isinstance(root.handlers[0].formatter, StructuredFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
