"""
Pytest configuration for twinkle-core tests.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("TWINKLE_ENVIRONMENT", "dev")

from twinkle_core.brain import AgentBrain
from twinkle_core.commitment import InMemoryCommitmentPrimitive
from twinkle_core.config import TwinkleSettings
from twinkle_core.escrow import InMemoryEscrowLedger
from twinkle_core.events import AgentEvent
from twinkle_core.identity import InMemoryIdentityRegistry
from twinkle_core.orchestrator import ProcurementOrchestrator, ProviderSpec
from twinkle_core.purchase import PurchaseResult

BUYER = "0x" + "b0" * 20


@pytest.fixture
def settings() -> TwinkleSettings:
    """Settings with polling shrunk so decrypt loops finish immediately."""
    return TwinkleSettings(
        _env_file=None,
        environment="dev",
        decrypt_poll_interval_seconds=0.0,
        decrypt_max_attempts=3,
        decrypt_timeout_seconds=2.0,
    )


def make_providers(*names: str, price: str = "0.02") -> list[ProviderSpec]:
    return [
        ProviderSpec(
            name=name,
            endpoint=f"http://{name.lower()}.providers.test",
            price=price,
            address=f"0x{index + 1:040x}",
            capabilities=("market-data",),
        )
        for index, name in enumerate(names)
    ]


class StaticEncryptionOracle:
    def __init__(self, response: Any) -> None:
        self.response = response

    async def analyze(self, query: str) -> Any:
        return self.response


class ScoreByProvider:
    """Quality oracle returning a scripted score per provider name."""

    def __init__(self, scores: dict[str, Any]) -> None:
        self.scores = scores
        self.calls: list[str] = []

    async def score(self, delivery, provider_name, threshold, category=None):
        self.calls.append(provider_name)
        return {"score": self.scores[provider_name], "passed": True, "reasoning": "scripted"}


class FakePurchaser:
    """Purchase capability keyed by endpoint; exceptions are raised."""

    def __init__(self, responses: dict[str, Any], protocol_used: Optional[set[str]] = None) -> None:
        self.responses = responses
        self.protocol_used = protocol_used or set()
        self.calls: list[tuple[str, str, Optional[str]]] = []

    async def purchase(self, endpoint, query, payer_credential=None):
        self.calls.append((endpoint, query, payer_credential))
        result = self.responses[endpoint]
        if isinstance(result, Exception):
            raise result
        if endpoint in self.protocol_used:
            return PurchaseResult(data=result, cost="20000", protocol_used=True)
        return PurchaseResult(data=result, cost="0", protocol_used=False)


@dataclass
class Harness:
    orchestrator: ProcurementOrchestrator
    providers: list[ProviderSpec]
    primitive: InMemoryCommitmentPrimitive
    ledger: InMemoryEscrowLedger
    identity: InMemoryIdentityRegistry
    purchaser: FakePurchaser
    quality: ScoreByProvider
    events: list[AgentEvent] = field(default_factory=list)

    def collect(self, event: AgentEvent) -> None:
        self.events.append(event)

    def events_of(self, value: str) -> list[AgentEvent]:
        return [e for e in self.events if e.event_type.value == value]


@pytest.fixture
def make_harness(settings):
    """Factory wiring an orchestrator to in-memory collaborators."""

    def _make(
        scores: dict[str, Any],
        encryption: Any = None,
        failures: Optional[dict[str, Exception]] = None,
        protocol_used: Optional[set[str]] = None,
        primitive: Optional[InMemoryCommitmentPrimitive] = None,
        synthesis: Any = None,
    ) -> Harness:
        providers = make_providers(*scores)
        failures = failures or {}
        responses: dict[str, Any] = {}
        for spec in providers:
            responses[spec.endpoint] = failures.get(spec.name) or {
                "provider": spec.name,
                "analysis": {"summary": f"{spec.name} view", "confidence": 0.8},
            }

        primitive = primitive or InMemoryCommitmentPrimitive(address=BUYER)
        ledger = InMemoryEscrowLedger(buyer=BUYER)
        primitive.register_target(ledger)
        identity = InMemoryIdentityRegistry()
        quality = ScoreByProvider(scores)
        purchaser = FakePurchaser(
            responses,
            protocol_used={p.endpoint for p in providers if p.name in (protocol_used or set())},
        )
        brain = AgentBrain(
            encryption=StaticEncryptionOracle(encryption) if encryption is not None else None,
            quality=quality,
            synthesis=synthesis,
        )
        orchestrator = ProcurementOrchestrator(
            brain=brain,
            commitment_primitive=primitive,
            ledger=ledger,
            identity=identity,
            purchaser=purchaser,
            buyer_address=BUYER,
            settings=settings,
        )
        return Harness(
            orchestrator=orchestrator,
            providers=providers,
            primitive=primitive,
            ledger=ledger,
            identity=identity,
            purchaser=purchaser,
            quality=quality,
        )

    return _make
