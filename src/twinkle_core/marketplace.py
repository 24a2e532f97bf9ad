"""Multi-act marketplace: several procurement runs, one combined receipt."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .events import AgentEvent
from .orchestrator import ProcurementOrchestrator, ProviderSpec, RunConfig
from .receipts import ActResult, MarketplaceReceipt, build_marketplace_receipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Act:
    """One category of work with its own query, budget and providers."""

    category: str
    query: str
    budget: str
    providers: Sequence[ProviderSpec]


class Marketplace:
    """Runs acts strictly in sequence, each as an independent run."""

    def __init__(
        self,
        orchestrator: ProcurementOrchestrator,
        *,
        quality_threshold: Optional[float] = None,
        use_x402: Optional[bool] = None,
        payer_credential: Optional[str] = None,
        on_event: Optional[Callable[[AgentEvent], Any]] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._quality_threshold = quality_threshold
        self._use_x402 = use_x402
        self._payer_credential = payer_credential
        self._on_event = on_event

    async def run(self, acts: Sequence[Act]) -> MarketplaceReceipt:
        started_at = datetime.now(timezone.utc)
        results: list[ActResult] = []

        for index, act in enumerate(acts, start=1):
            logger.info(
                "Act %d/%d: %s (%d providers, budget %s)",
                index, len(acts), act.category, len(act.providers), act.budget,
            )
            act_started = datetime.now(timezone.utc)
            receipt = await self._orchestrator.run(
                RunConfig(
                    query=act.query,
                    budget=act.budget,
                    providers=act.providers,
                    quality_threshold=self._quality_threshold,
                    use_x402=self._use_x402,
                    payer_credential=self._payer_credential,
                    category=act.category,
                    on_event=self._on_event,
                )
            )
            duration_ms = int((datetime.now(timezone.utc) - act_started).total_seconds() * 1000)
            results.append(ActResult(category=act.category, receipt=receipt, duration_ms=duration_ms))

        marketplace = build_marketplace_receipt(started_at, results)
        logger.info(
            "Marketplace complete: %d acts, %d hired, %d paid, %d refunded",
            len(results),
            marketplace.totals.agents_hired,
            marketplace.totals.agents_paid,
            marketplace.totals.agents_refunded,
        )
        return marketplace


__all__ = ["Act", "Marketplace"]
