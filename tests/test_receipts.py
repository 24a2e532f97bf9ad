"""Tests for receipt aggregation."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from twinkle_core.brain import EncryptionDecision
from twinkle_core.commitment import ALL_LAYERS, CommitmentResult, Layer
from twinkle_core.mandates import MandateChain
from twinkle_core.receipts import (
    ActResult,
    ProviderResult,
    build_marketplace_receipt,
    build_receipt,
    format_amount,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DECISION = EncryptionDecision(
    layers=ALL_LAYERS,
    reasoning="all",
    threat_model=("front-running",),
    sensitivity="high",
)


def _provider(name: str, paid: bool, encrypted: bool = True, x402: bool = False) -> ProviderResult:
    return ProviderResult(
        name=name,
        agent_id=1,
        address="0x1",
        endpoint=f"http://{name}.test",
        price="0.02",
        purchase_protocol_used=x402,
        purchase_cost="20000" if x402 else "0",
        escrow_id=1,
        escrow_amount=Decimal("0.10"),
        escrow_encrypted=encrypted,
        escrow_tx_reference="0xescrow",
        delivery_hash="0xhash",
        quality_score=8.0 if paid else 2.0,
        passed=paid,
        reasoning="ok",
        settlement_action="paid" if paid else "refunded",
        settlement_tx_reference="0xsettle",
        reputation_score=80 if paid else -40,
        reputation_tags=("quality", "reliable" if paid else "poor"),
    )


def _commit(layer: Layer) -> CommitmentResult:
    return CommitmentResult(
        layer=layer,
        tx_hash="0x" + layer.value,
        sent_at=NOW,
        received_at=NOW + timedelta(milliseconds=250),
        data_preview="abcd",
        decrypted_at=NOW + timedelta(seconds=2),
        verified=True,
    )


def _receipt(providers, **commits):
    return build_receipt(
        query="q",
        started_at=NOW,
        encryption_decision=DECISION,
        providers=providers,
        synthesis="done",
        mandate_chain=MandateChain(chain_id="chain_1"),
        **commits,
    )


class TestFormatAmount:
    def test_two_decimals(self):
        assert format_amount(Decimal("0")) == "0.00"
        assert format_amount(Decimal("0.3")) == "0.30"
        assert format_amount(Decimal("0.125")) == "0.13"


class TestBuildReceipt:
    def test_totals(self):
        receipt = _receipt(
            [_provider("a", True), _provider("b", False), _provider("c", True, x402=True)],
            strategy_commit=_commit(Layer.STRATEGY),
            query_commit=_commit(Layer.QUERY),
            settlements_commit=_commit(Layer.SETTLEMENT),
        )
        totals = receipt.totals

        assert totals.paid_amount == Decimal("0.20")
        assert totals.refunded_amount == Decimal("0.10")
        assert totals.paid_amount + totals.refunded_amount == Decimal("0.10") * 3
        assert totals.escrows_created == 3
        assert totals.agents_paid == 2
        assert totals.agents_refunded == 1
        assert totals.commit_message_count == 3
        assert totals.encryption_count == 6
        assert totals.purchase_protocol_usage_count == 1

    def test_encryption_count_without_encrypted_escrows(self):
        receipt = _receipt(
            [_provider("a", True, encrypted=False)],
            query_commit=_commit(Layer.QUERY),
        )
        assert receipt.totals.encryption_count == 1
        assert list(receipt.commitments) == ["query"]

    def test_empty_run_serializes_zero_amounts(self):
        data = _receipt([]).to_dict()

        assert data["totals"]["paidAmount"] == "0.00"
        assert data["totals"]["refundedAmount"] == "0.00"
        assert data["providers"] == []
        assert data["commitments"] == {}

    def test_provider_lookup(self):
        receipt = _receipt([_provider("a", True), _provider("b", False)])
        assert receipt.provider("b").settlement_action == "refunded"
        assert receipt.provider("missing") is None

    def test_serialized_shape(self):
        receipt = _receipt(
            [_provider("a", True, x402=True)],
            strategy_commit=_commit(Layer.STRATEGY),
        )
        data = receipt.to_dict()
        provider = data["providers"][0]

        assert data["id"].startswith("twinkle-receipt-")
        assert data["encryptionDecision"]["layers"] == ["strategy", "escrow", "query", "settlement"]
        assert data["commitments"]["strategy"]["timing"]["receiptMs"] - data["commitments"]["strategy"]["timing"]["sendMs"] == 250
        assert provider["x402"]["x402Used"] is True
        assert provider["escrow"]["amount"] == "0.10"
        assert provider["settlement"] == {"action": "paid", "txHash": "0xsettle"}
        assert provider["reputation"] == {"score": 80, "tags": ["quality", "reliable"]}
        assert data["mandateChain"]["chainId"] == "chain_1"


class TestMarketplaceReceipt:
    def test_aggregates_acts(self):
        first = _receipt([_provider("a", True), _provider("b", False)], query_commit=_commit(Layer.QUERY))
        second = _receipt([_provider("c", True, x402=True)])

        marketplace = build_marketplace_receipt(NOW, [
            ActResult(category="defi", receipt=first, duration_ms=10),
            ActResult(category="macro", receipt=second, duration_ms=12),
        ])
        totals = marketplace.totals

        assert totals.agents_hired == 3
        assert totals.escrows_created == 3
        assert totals.agents_paid == 2
        assert totals.agents_refunded == 1
        assert totals.paid_amount == Decimal("0.20")
        assert totals.encryption_count == first.totals.encryption_count + second.totals.encryption_count
        assert totals.purchase_protocol_usage_count == 1
        assert marketplace.synthesis == "[defi] done\n\n[macro] done"
        assert len(marketplace.mandate_chains) == 2
        assert marketplace.to_dict()["totals"]["paidAmount"] == "0.20"
