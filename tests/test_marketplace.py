"""Tests for multi-act marketplace runs."""
from __future__ import annotations

from decimal import Decimal

import pytest

from twinkle_core.marketplace import Act, Marketplace

from conftest import make_providers


@pytest.mark.asyncio
async def test_acts_run_in_sequence(make_harness):
    harness = make_harness({"Alpha": 8, "Beta": 3, "Gamma": 9})
    alpha, beta, gamma = harness.providers
    acts = [
        Act(category="defi", query="Best lending yields", budget="0.50", providers=[alpha, beta]),
        Act(category="macro", query="Rate cut odds", budget="0.50", providers=[gamma]),
    ]

    marketplace = Marketplace(harness.orchestrator, quality_threshold=5.0, on_event=harness.collect)
    receipt = await marketplace.run(acts)

    assert [a.category for a in receipt.acts] == ["defi", "macro"]
    assert receipt.acts[0].receipt.category == "defi"
    assert [p.name for p in receipt.acts[1].receipt.providers] == ["Gamma"]

    totals = receipt.totals
    assert totals.agents_hired == 3
    assert totals.agents_paid == 2
    assert totals.agents_refunded == 1
    assert totals.paid_amount == Decimal("0.20")
    assert totals.refunded_amount == Decimal("0.10")
    assert receipt.synthesis.startswith("[defi] ")
    assert "\n\n[macro] " in receipt.synthesis

    # Each act is its own run with its own chain
    chain_ids = {c.chain_id for c in receipt.mandate_chains}
    assert len(chain_ids) == 2
    starts = [e for e in harness.events if e.event_type.value == "agent.start"]
    assert [e.data["category"] for e in starts] == ["defi", "macro"]


@pytest.mark.asyncio
async def test_act_category_becomes_cart_service(make_harness):
    harness = make_harness({"Alpha": 8})
    receipt = await Marketplace(harness.orchestrator).run([
        Act(category="sentiment", query="Crowd mood", budget="0.10", providers=harness.providers),
    ])

    chain = receipt.mandate_chains[0]
    cart = next(m for m in chain.mandates if m.mandate_type == "cart")
    assert cart.items[0].service == "sentiment"


@pytest.mark.asyncio
async def test_no_acts(make_harness):
    harness = make_harness({"Alpha": 8})
    receipt = await Marketplace(harness.orchestrator).run([])

    assert receipt.acts == ()
    assert receipt.to_dict()["totals"]["paidAmount"] == "0.00"
    assert receipt.synthesis == ""


def test_act_holds_providers():
    providers = make_providers("Alpha", "Beta")
    act = Act(category="defi", query="q", budget="1", providers=providers)
    assert [p.name for p in act.providers] == ["Alpha", "Beta"]
