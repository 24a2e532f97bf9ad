"""Tests for encrypted commitments and decrypt verification."""
from __future__ import annotations

import pytest

from twinkle_core.commitment import (
    CommitmentLayer,
    InMemoryCommitmentPrimitive,
    Layer,
    json_hex,
    normalize_hex,
    payloads_match,
    to_hex,
)
from twinkle_core.escrow import InMemoryEscrowLedger, SettlementDecision
from twinkle_core.events import EventLog, EventType
from twinkle_core.exceptions import CommitFailedError, DecryptTimeoutError


def _layer(primitive: InMemoryCommitmentPrimitive, events: EventLog | None = None, **kwargs) -> CommitmentLayer:
    kwargs.setdefault("poll_interval", 0.0)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("timeout_seconds", 2.0)
    return CommitmentLayer(primitive, events or EventLog(), **kwargs)


class TestHexHelpers:
    def test_to_hex(self):
        assert to_hex("hi") == "6869"

    def test_json_hex_is_compact(self):
        assert bytes.fromhex(json_hex({"a": 1, "b": [1, 2]})).decode() == '{"a":1,"b":[1,2]}'

    def test_normalize_hex(self):
        assert normalize_hex(" 0xABcd ") == "abcd"

    def test_exact_match(self):
        assert payloads_match("0xabcd", "ABCD")

    def test_mismatch(self):
        assert not payloads_match("0xabce", "abcd")

    def test_padded_payload_is_accepted(self):
        # Containment check: padded calldata around the committed bytes still verifies
        assert payloads_match("0x0000abcd0000", "abcd")


class TestCommitmentLayer:
    @pytest.mark.asyncio
    async def test_commit_query_round_trip(self):
        events = EventLog()
        layer = _layer(InMemoryCommitmentPrimitive(), events)

        result = await layer.commit_query("eth risk next week")

        assert result.layer is Layer.QUERY
        assert result.verified is True
        assert result.decrypted_at is not None
        assert result.data_preview == to_hex("eth risk next week")[:40]
        assert [e.event_type for e in events.all()] == [
            EventType.BITE_ENCRYPTING,
            EventType.BITE_COMMITTED,
            EventType.BITE_VERIFIED,
        ]
        assert all(e.phase == 3 for e in events.all())
        committed = events.of_type(EventType.BITE_COMMITTED)[0]
        assert committed.commitment["txHash"] == result.tx_hash

    @pytest.mark.asyncio
    async def test_strategy_preview_is_truncated(self):
        events = EventLog()
        layer = _layer(InMemoryCommitmentPrimitive(), events)

        await layer.commit_strategy({"query": "x" * 500})

        encrypting = events.of_type(EventType.BITE_ENCRYPTING)[0]
        assert encrypting.phase == 2
        assert len(encrypting.data["preview"]) == 100

    @pytest.mark.asyncio
    async def test_settlement_batch_is_one_commitment(self):
        primitive = InMemoryCommitmentPrimitive()
        layer = _layer(primitive)
        decisions = [
            SettlementDecision(escrow_id=1, provider="A", action="pay", score=8.0),
            SettlementDecision(escrow_id=2, provider="B", action="refund", score=2.0),
        ]

        result = await layer.commit_settlements(decisions)

        assert result.verified is True
        assert len(primitive.sent) == 1
        payload = bytes.fromhex(normalize_hex(primitive.sent[0][2])).decode()
        assert payload == '[{"escrowId":1,"action":"pay","score":8.0},{"escrowId":2,"action":"refund","score":2.0}]'

    @pytest.mark.asyncio
    async def test_tampered_payload_not_verified(self):
        primitive = InMemoryCommitmentPrimitive()
        layer = _layer(primitive)
        payload = to_hex("original")

        receipt = await layer.commit(payload, Layer.QUERY)
        primitive.set_decrypted(receipt.tx_hash, "0x" + to_hex("tampered"))
        check = await layer.decrypt_and_verify(receipt.tx_hash, payload)

        assert check.verified is False

    @pytest.mark.asyncio
    async def test_padded_decryption_still_verifies(self):
        primitive = InMemoryCommitmentPrimitive()
        layer = _layer(primitive)
        payload = to_hex("original")

        receipt = await layer.commit(payload, Layer.QUERY)
        primitive.set_decrypted(receipt.tx_hash, "0x00" + payload + "00")
        check = await layer.decrypt_and_verify(receipt.tx_hash, payload)

        assert check.verified is True

    @pytest.mark.asyncio
    async def test_decrypt_polls_until_available(self):
        primitive = InMemoryCommitmentPrimitive(decrypt_after_polls=2)
        layer = _layer(primitive, max_attempts=5)
        payload = to_hex("slow")

        receipt = await layer.commit(payload, Layer.QUERY)
        check = await layer.decrypt_and_verify(receipt.tx_hash, payload)

        assert check.verified is True
        assert check.attempts == 3

    @pytest.mark.asyncio
    async def test_decrypt_timeout_after_attempts(self):
        primitive = InMemoryCommitmentPrimitive(decrypt_after_polls=10)
        layer = _layer(primitive, max_attempts=3)

        with pytest.raises(DecryptTimeoutError) as exc_info:
            await layer.commit_query("never decrypted")

        assert exc_info.value.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_decrypt_timeout_wall_clock(self):
        primitive = InMemoryCommitmentPrimitive(decrypt_after_polls=1000)
        layer = _layer(primitive, poll_interval=0.05, max_attempts=1000, timeout_seconds=0.2)

        with pytest.raises(DecryptTimeoutError):
            await layer.commit_query("slow network")

    @pytest.mark.asyncio
    async def test_failed_commit_raises(self):
        events = EventLog()
        layer = _layer(InMemoryCommitmentPrimitive(fail_commits=True), events)

        with pytest.raises(CommitFailedError) as exc_info:
            await layer.commit_query("q")

        assert exc_info.value.details["layer"] == "query"
        assert events.of_type(EventType.BITE_COMMITTED) == []
        assert layer.stats().count == 0

    @pytest.mark.asyncio
    async def test_primitive_exception_wrapped(self):
        class Broken(InMemoryCommitmentPrimitive):
            async def commit(self, data_hex):
                raise ConnectionError("rpc down")

        with pytest.raises(CommitFailedError):
            await _layer(Broken()).commit("ab", Layer.STRATEGY)

    @pytest.mark.asyncio
    async def test_send_encrypted_executes_target(self):
        primitive = InMemoryCommitmentPrimitive()
        ledger = InMemoryEscrowLedger()
        primitive.register_target(ledger)
        events = EventLog()
        layer = _layer(primitive, events)
        data = ledger.encode_create("0xreq", "0xseller", "", "0.10", 10_000)

        receipt = await layer.send_encrypted(ledger.address, data)

        assert await ledger.escrow_id_for(receipt.tx_hash) == 1
        assert [e.event_type for e in events.all()] == [
            EventType.BITE_ENCRYPTING,
            EventType.BITE_COMMITTED,
        ]
        assert all(e.phase == 6 for e in events.all())

    @pytest.mark.asyncio
    async def test_stats(self):
        primitive = InMemoryCommitmentPrimitive()
        ledger = InMemoryEscrowLedger()
        primitive.register_target(ledger)
        layer = _layer(primitive)

        await layer.commit_strategy({"q": 1})
        await layer.commit_query("q")
        await layer.send_encrypted(ledger.address, ledger.encode_create("0x1", "0x2", "", "1", 1))
        await layer.send_encrypted(ledger.address, ledger.encode_create("0x3", "0x4", "", "1", 1))

        stats = layer.stats()
        assert stats.count == 4
        assert stats.messages == 2
        assert stats.to_dict()["distinctLayers"] == ["strategy", "query", "escrow"]
