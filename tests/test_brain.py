"""Tests for oracle defaults applied by AgentBrain."""
from __future__ import annotations

import math

import pytest

from twinkle_core.brain import AgentBrain, DEFAULT_REASONING
from twinkle_core.commitment import ALL_LAYERS, Layer
from twinkle_core.constants import ProtocolDefaults


class Oracle:
    """Returns (or raises) a fixed value from every oracle method."""

    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def _respond(self, *args, **kwargs):
        self.calls += 1
        if isinstance(self.value, Exception):
            raise self.value
        return self.value

    analyze = _respond
    select = _respond
    score = _respond
    synthesize = _respond


class TestEncryptionPolicy:
    @pytest.mark.asyncio
    async def test_no_oracle_means_all_layers(self):
        decision = await AgentBrain().analyze_encryption_needs("q")

        assert decision.layers == ALL_LAYERS
        assert decision.reasoning == DEFAULT_REASONING
        assert decision.sensitivity == "high"
        assert decision.threat_model == ("Strategy front-running", "Provider collusion")

    @pytest.mark.asyncio
    async def test_oracle_subset_respected(self):
        brain = AgentBrain(encryption=Oracle({
            "layers": ["query", "settlement"],
            "reasoning": "query is sensitive",
            "threatModel": ["snooping"],
            "sensitivityLevel": "medium",
        }))

        decision = await brain.analyze_encryption_needs("q")

        assert decision.layers == (Layer.QUERY, Layer.SETTLEMENT)
        assert decision.uses(Layer.QUERY)
        assert not decision.uses(Layer.STRATEGY)
        assert decision.sensitivity == "medium"
        assert decision.to_dict()["threatModel"] == ["snooping"]

    @pytest.mark.asyncio
    async def test_unknown_layers_dropped(self):
        brain = AgentBrain(encryption=Oracle({"layers": ["escrow", "bogus", "escrow"]}))
        decision = await brain.analyze_encryption_needs("q")
        assert decision.layers == (Layer.ESCROW,)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        {"layers": ["bogus"]},
        {"layers": []},
        {"layers": "strategy"},
        "not a mapping",
        None,
        RuntimeError("llm down"),
    ])
    async def test_unusable_response_means_all_layers(self, response):
        decision = await AgentBrain(encryption=Oracle(response)).analyze_encryption_needs("q")
        assert decision.layers == ALL_LAYERS

    @pytest.mark.asyncio
    async def test_bad_sensitivity_defaults_high(self):
        brain = AgentBrain(encryption=Oracle({"layers": ["query"], "sensitivityLevel": "extreme"}))
        assert (await brain.analyze_encryption_needs("q")).sensitivity == "high"


class TestProviderSelection:
    CANDIDATES = [{"name": "Alpha", "price": "0.02"}, {"name": "Beta", "price": "0.03"}]

    @pytest.mark.asyncio
    async def test_default_selects_everyone(self):
        selections = await AgentBrain().select_providers(self.CANDIDATES, "1.00", "q")
        assert [s.to_dict() for s in selections] == [
            {"name": "Alpha", "reason": "Within budget"},
            {"name": "Beta", "reason": "Within budget"},
        ]

    @pytest.mark.asyncio
    async def test_oracle_reasons_kept(self):
        brain = AgentBrain(selection=Oracle([{"name": "Beta", "reason": "cheaper"}]))
        selections = await brain.select_providers(self.CANDIDATES, "1.00", "q")
        assert [(s.name, s.reason) for s in selections] == [("Beta", "cheaper")]

    @pytest.mark.asyncio
    async def test_malformed_selection_falls_back(self):
        brain = AgentBrain(selection=Oracle([{"reason": "no name"}]))
        selections = await brain.select_providers(self.CANDIDATES, "1.00", "q")
        assert [s.name for s in selections] == ["Alpha", "Beta"]

    @pytest.mark.asyncio
    async def test_failing_selection_falls_back(self):
        brain = AgentBrain(selection=Oracle(RuntimeError("down")))
        assert len(await brain.select_providers(self.CANDIDATES, "1.00", "q")) == 2


class TestQualityGate:
    @pytest.mark.asyncio
    async def test_passed_derived_from_score(self):
        # Oracle claims passed but the score is under the threshold
        brain = AgentBrain(quality=Oracle({"score": 3, "passed": True, "reasoning": "thin"}))

        verdict = await brain.evaluate_quality({}, "Alpha", 5.0)

        assert verdict.score == 3.0
        assert verdict.passed is False
        assert verdict.reasoning == "thin"

    @pytest.mark.asyncio
    async def test_score_equal_to_threshold_passes(self):
        brain = AgentBrain(quality=Oracle({"score": 5}))
        assert (await brain.evaluate_quality({}, "Alpha", 5.0)).passed is True

    @pytest.mark.asyncio
    async def test_score_clamped(self):
        high = await AgentBrain(quality=Oracle({"score": 14})).evaluate_quality({}, "A", 5.0)
        low = await AgentBrain(quality=Oracle({"score": -3})).evaluate_quality({}, "A", 5.0)

        assert high.score == 10.0
        assert low.score == 0.0
        assert not low.passed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"score": "nine"},
        {"score": True},
        {"score": math.nan},
        {},
        None,
        RuntimeError("llm down"),
    ])
    async def test_unusable_score_defaults_to_five(self, payload):
        verdict = await AgentBrain(quality=Oracle(payload)).evaluate_quality({}, "A", 7.0)

        assert verdict.score == ProtocolDefaults.DEFAULT_SCORE
        assert verdict.passed is False
        assert verdict.reasoning == "Score: 5/7"

    @pytest.mark.asyncio
    async def test_no_oracle_uses_default(self):
        verdict = await AgentBrain().evaluate_quality({}, "A", 5.0)
        assert verdict.score == 5.0
        assert verdict.passed is True


class TestSynthesis:
    @pytest.mark.asyncio
    async def test_empty_results_skip_oracle(self):
        oracle = Oracle("should not be used")
        text = await AgentBrain(synthesis=oracle).synthesize([], "q")

        assert text == ProtocolDefaults.NO_SYNTHESIS
        assert oracle.calls == 0

    @pytest.mark.asyncio
    async def test_oracle_text(self):
        text = await AgentBrain(synthesis=Oracle("Bullish overall.")).synthesize([{"name": "A"}], "q")
        assert text == "Bullish overall."

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["", None, RuntimeError("down")])
    async def test_fallback_text(self, value):
        text = await AgentBrain(synthesis=Oracle(value)).synthesize([{"name": "A"}], "q")
        assert text == ProtocolDefaults.SYNTHESIS_FALLBACK
