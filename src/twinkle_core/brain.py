"""Decision oracles used by a procurement run.

The oracles themselves (LLM-backed or rule-based) are opaque collaborators
that return loosely-structured payloads. AgentBrain is the only place that
interprets them, and it substitutes a safe default whenever an oracle is
missing, raises, or returns something unusable. Oracle trouble never fails
a run.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence

from .commitment import ALL_LAYERS, Layer
from .constants import ProtocolDefaults

logger = logging.getLogger(__name__)

Sensitivity = Literal["high", "medium", "low"]

DEFAULT_REASONING = "Full encryption applied for maximum privacy."
DEFAULT_THREAT_MODEL = ("Strategy front-running", "Provider collusion")
DEFAULT_SELECTION_REASON = "Within budget"
_SENSITIVITIES = ("high", "medium", "low")


# =============================================================================
# Oracle ports
# =============================================================================

class EncryptionPolicyOracle(Protocol):
    async def analyze(self, query: str) -> Optional[Mapping[str, Any]]:
        """Return ``{layers, reasoning, threatModel, sensitivityLevel}``."""
        ...


class ProviderSelectionOracle(Protocol):
    async def select(
        self,
        candidates: Sequence[Mapping[str, Any]],
        budget: str,
        query: str,
    ) -> Optional[Sequence[Mapping[str, Any]]]:
        """Return ``[{name, reason}]``."""
        ...


class QualityScoringOracle(Protocol):
    async def score(
        self,
        delivery: Any,
        provider_name: str,
        threshold: float,
        category: Optional[str] = None,
    ) -> Optional[Mapping[str, Any]]:
        """Return ``{score, passed, reasoning}``."""
        ...


class SynthesisOracle(Protocol):
    async def synthesize(self, results: Sequence[Mapping[str, Any]], query: str) -> Optional[str]:
        ...


# =============================================================================
# Decisions
# =============================================================================

@dataclass(frozen=True, slots=True)
class EncryptionDecision:
    layers: tuple[Layer, ...]
    reasoning: str
    threat_model: tuple[str, ...]
    sensitivity: Sensitivity

    def uses(self, layer: Layer) -> bool:
        return layer in self.layers

    def to_dict(self) -> dict[str, Any]:
        return {
            "layers": [layer.value for layer in self.layers],
            "reasoning": self.reasoning,
            "threatModel": list(self.threat_model),
            "sensitivityLevel": self.sensitivity,
        }


@dataclass(frozen=True, slots=True)
class ProviderSelection:
    name: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class QualityVerdict:
    score: float
    passed: bool
    reasoning: str


def _fmt(value: float) -> str:
    return f"{value:g}"


def _as_score(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or math.isnan(raw):
        return ProtocolDefaults.DEFAULT_SCORE
    return float(min(ProtocolDefaults.SCORE_MAX, max(ProtocolDefaults.SCORE_MIN, raw)))


class AgentBrain:
    """Applies safe defaults around the four decision oracles."""

    def __init__(
        self,
        encryption: Optional[EncryptionPolicyOracle] = None,
        selection: Optional[ProviderSelectionOracle] = None,
        quality: Optional[QualityScoringOracle] = None,
        synthesis: Optional[SynthesisOracle] = None,
    ) -> None:
        self._encryption = encryption
        self._selection = selection
        self._quality = quality
        self._synthesis = synthesis

    async def analyze_encryption_needs(self, query: str) -> EncryptionDecision:
        parsed: Mapping[str, Any] = {}
        if self._encryption is not None:
            try:
                parsed = await self._encryption.analyze(query) or {}
            except Exception:
                logger.warning("Encryption policy oracle unavailable; applying all layers", exc_info=True)
                parsed = {}
        if not isinstance(parsed, Mapping):
            parsed = {}

        raw_layers = parsed.get("layers")
        layers: list[Layer] = []
        if isinstance(raw_layers, (list, tuple)):
            valid = {layer.value: layer for layer in ALL_LAYERS}
            for name in raw_layers:
                layer = valid.get(name) if isinstance(name, str) else None
                if layer is not None and layer not in layers:
                    layers.append(layer)

        threat_model = parsed.get("threatModel")
        if not isinstance(threat_model, (list, tuple)) or not threat_model:
            threat_model = DEFAULT_THREAT_MODEL
        sensitivity = parsed.get("sensitivityLevel")
        if sensitivity not in _SENSITIVITIES:
            sensitivity = "high"

        return EncryptionDecision(
            layers=tuple(layers) if layers else ALL_LAYERS,
            reasoning=parsed.get("reasoning") or DEFAULT_REASONING,
            threat_model=tuple(str(t) for t in threat_model),
            sensitivity=sensitivity,
        )

    async def select_providers(
        self,
        candidates: Sequence[Mapping[str, Any]],
        budget: str,
        query: str,
    ) -> list[ProviderSelection]:
        """Annotate candidates with a selection reason. Advisory only."""
        fallback = [ProviderSelection(str(c["name"]), DEFAULT_SELECTION_REASON) for c in candidates]
        if self._selection is None:
            return fallback
        try:
            raw = await self._selection.select(candidates, budget, query)
        except Exception:
            logger.warning("Provider selection oracle unavailable", exc_info=True)
            return fallback

        if not isinstance(raw, (list, tuple)):
            return fallback
        selections = []
        for item in raw:
            if not isinstance(item, Mapping) or not item.get("name"):
                return fallback
            selections.append(
                ProviderSelection(str(item["name"]), str(item.get("reason") or DEFAULT_SELECTION_REASON))
            )
        return selections

    async def evaluate_quality(
        self,
        delivery: Any,
        provider_name: str,
        threshold: float,
        category: Optional[str] = None,
    ) -> QualityVerdict:
        """Score a delivery. ``passed`` is always derived from the clamped score."""
        parsed: Mapping[str, Any] = {}
        if self._quality is not None:
            try:
                parsed = await self._quality.score(delivery, provider_name, threshold, category) or {}
            except Exception:
                logger.warning("Quality oracle unavailable for %s", provider_name, exc_info=True)
                parsed = {}
        if not isinstance(parsed, Mapping):
            parsed = {}

        score = _as_score(parsed.get("score"))
        return QualityVerdict(
            score=score,
            passed=score >= threshold,
            reasoning=parsed.get("reasoning") or f"Score: {_fmt(score)}/{_fmt(threshold)}",
        )

    async def synthesize(self, results: Sequence[Mapping[str, Any]], query: str) -> str:
        if not results:
            return ProtocolDefaults.NO_SYNTHESIS
        if self._synthesis is None:
            return ProtocolDefaults.SYNTHESIS_FALLBACK
        try:
            text = await self._synthesis.synthesize(results, query)
        except Exception:
            logger.warning("Synthesis oracle unavailable", exc_info=True)
            return ProtocolDefaults.SYNTHESIS_FALLBACK
        return text or ProtocolDefaults.SYNTHESIS_FALLBACK


__all__ = [
    "EncryptionPolicyOracle",
    "ProviderSelectionOracle",
    "QualityScoringOracle",
    "SynthesisOracle",
    "EncryptionDecision",
    "ProviderSelection",
    "QualityVerdict",
    "AgentBrain",
]
