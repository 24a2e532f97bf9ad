"""Procurement orchestration tying mandates, commitments, escrows and oracles.

A run walks eleven ordered phases:

 0. intent mandate
 1. encryption policy
 2. strategy commitment (if selected)
 3. query commitment (if selected)
 4. provider registration, cart mandates, advisory selection
 5. purchase, concurrently per provider; failures drop the provider
 6. escrow creation (encrypted if selected) and locked payment mandates
 7. delivery submission and quality gate, concurrently per provider
 8. settlement batch commitment (if selected)
 9. settlement, payment mandate release/refund, reputation
10. synthesis, chain completion, receipt

Purchase failures are the only errors caught here. Commitment and ledger
errors abort the run and leave partial state for reconciliation.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar
from uuid import uuid4

from .brain import AgentBrain, EncryptionDecision, QualityVerdict
from .commitment import CommitmentLayer, CommitmentPrimitive, CommitmentResult, Layer
from .config import TwinkleSettings, load_settings
from .constants import ProtocolDefaults
from .escrow import (
    EscrowAccessor,
    EscrowCreation,
    EscrowLedger,
    SettlementDecision,
    SettlementOutcome,
    delivery_hash,
    hash_text,
)
from .events import AgentEvent, EventLog, EventType
from .exceptions import ConfigurationError, TwinkleException, ValidationError
from .identity import AgentMetadata, IdentityRegistry, ReputationEntry
from .logging import log_operation, mask_sensitive_data
from .logging_config import provider_var, run_id_var
from .mandates import CartMandate, MandateTracker, PaymentMandate
from .purchase import PurchaseCapability, PurchaseResult
from .receipts import AgentReceipt, ProviderResult, build_receipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """A candidate provider for a run."""

    name: str
    endpoint: str
    price: str
    address: str
    capabilities: tuple[str, ...] = ()

    def candidate(self) -> dict[str, Any]:
        return {"name": self.name, "price": self.price, "capabilities": list(self.capabilities)}


@dataclass(slots=True)
class RunConfig:
    """Per-run arguments. Unset values fall back to TwinkleSettings."""

    query: str
    budget: str
    providers: Sequence[ProviderSpec]
    quality_threshold: Optional[float] = None
    use_x402: Optional[bool] = None
    payer_credential: Optional[str] = None
    category: Optional[str] = None
    intent_ttl_seconds: Optional[int] = None
    escrow_unit_amount: Optional[Decimal] = None
    on_event: Optional[Callable[[AgentEvent], Any]] = None

    def __post_init__(self) -> None:
        if not self.query or not self.query.strip():
            raise ValidationError("Query must not be empty", field="query")
        try:
            budget = Decimal(str(self.budget))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid budget: {self.budget!r}", field="budget") from e
        if budget <= 0:
            raise ValidationError("Budget must be positive", field="budget")
        if self.escrow_unit_amount is not None:
            try:
                self.escrow_unit_amount = Decimal(str(self.escrow_unit_amount))
            except InvalidOperation as e:
                raise ValidationError(
                    f"Invalid escrow unit amount: {self.escrow_unit_amount!r}",
                    field="escrow_unit_amount",
                ) from e
            if self.escrow_unit_amount <= 0:
                raise ValidationError("Escrow unit amount must be positive", field="escrow_unit_amount")
        names = [p.name for p in self.providers]
        if len(names) != len(set(names)):
            raise ValidationError("Provider names must be unique within a run", field="providers")


@dataclass(slots=True)
class _Engagement:
    """Mutable per-provider progress through one run."""

    spec: ProviderSpec
    agent_id: int
    cart: CartMandate
    purchase: Optional[PurchaseResult] = None
    analysis: Any = None
    delivery_hash: str = ""
    escrow: Optional[EscrowCreation] = None
    payment: Optional[PaymentMandate] = None
    verdict: Optional[QualityVerdict] = None
    settlement: Optional[SettlementOutcome] = None
    reputation_score: int = 0
    reputation_tags: tuple[str, ...] = ()


@dataclass(slots=True)
class _RunContext:
    run_id: str
    config: RunConfig
    events: EventLog
    mandates: MandateTracker
    commitment: CommitmentLayer
    escrows: EscrowAccessor
    threshold: float
    use_x402: bool
    unit_amount: Decimal
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    phase: int = 0


async def _gather_or_cancel(coros: Sequence[Awaitable[T]]) -> list[T]:
    """Await every coroutine; on the first error cancel the rest, then re-raise."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _analysis_of(data: Any) -> Any:
    if isinstance(data, dict) and "analysis" in data:
        return data["analysis"]
    return data


class ProcurementOrchestrator:
    """Drives a procurement run end to end."""

    def __init__(
        self,
        *,
        brain: AgentBrain,
        commitment_primitive: CommitmentPrimitive,
        ledger: EscrowLedger,
        identity: IdentityRegistry,
        purchaser: PurchaseCapability,
        buyer_address: str,
        settings: Optional[TwinkleSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._brain = brain
        self._primitive = commitment_primitive
        self._ledger = ledger
        self._identity = identity
        self._purchaser = purchaser
        self._buyer_address = buyer_address
        self._settings = settings or load_settings()
        self._clock = clock

    def _context(self, config: RunConfig, events: EventLog) -> _RunContext:
        settings = self._settings
        use_x402 = settings.use_x402 if config.use_x402 is None else config.use_x402
        if use_x402 and not (config.payer_credential or settings.payer_credential):
            raise ConfigurationError("Pay-per-call purchase requires a payer credential")

        commitment = CommitmentLayer(
            self._primitive,
            events,
            poll_interval=settings.decrypt_poll_interval_seconds,
            max_attempts=settings.decrypt_max_attempts,
            timeout_seconds=settings.decrypt_timeout_seconds,
        )
        return _RunContext(
            run_id=f"run_{uuid4().hex[:12]}",
            config=config,
            events=events,
            mandates=MandateTracker(),
            commitment=commitment,
            escrows=EscrowAccessor(
                self._ledger,
                commitment,
                token_address=settings.token_address,
                grace_multiple=settings.escrow_grace_multiple,
                clock=self._clock,
            ),
            threshold=(
                settings.quality_threshold
                if config.quality_threshold is None
                else config.quality_threshold
            ),
            use_x402=use_x402,
            unit_amount=(
                settings.escrow_unit_amount
                if config.escrow_unit_amount is None
                else config.escrow_unit_amount
            ),
        )

    @log_operation("procurement_run")
    async def run(self, config: RunConfig, events: Optional[EventLog] = None) -> AgentReceipt:
        """Execute one run and return its receipt.

        Raises the triggering error after emitting a fatal agent.error; there is no
        partial receipt.
        """
        events = events or EventLog()
        if config.on_event is not None:
            events.subscribe("*", config.on_event)

        ctx = self._context(config, events)
        token = run_id_var.set(ctx.run_id)
        try:
            return await self._execute(ctx)
        except TwinkleException as e:
            logger.error("Run %s aborted in phase %d: %s", ctx.run_id, ctx.phase, e.message)
            await events.emit(EventType.AGENT_ERROR, ctx.phase, {"fatal": True, **e.to_dict()})
            raise
        except Exception as e:
            logger.exception("Run %s aborted in phase %d by %s", ctx.run_id, ctx.phase, type(e).__name__)
            await events.emit(EventType.AGENT_ERROR, ctx.phase, {
                "fatal": True,
                "error": "UNEXPECTED_ERROR",
                "message": str(e),
                "exceptionType": type(e).__name__,
            })
            raise
        finally:
            run_id_var.reset(token)

    async def _execute(self, ctx: _RunContext) -> AgentReceipt:
        config = ctx.config
        settings = self._settings

        # Phase 0: intent
        intent = ctx.mandates.create_intent(
            description=config.query,
            budget=config.budget,
            asset=settings.asset,
            ttl_seconds=config.intent_ttl_seconds or settings.intent_ttl_seconds,
        )
        await ctx.events.emit(EventType.AP2_INTENT, 0, {
            "mandateId": intent.mandate_id,
            "chainId": ctx.mandates.chain_id,
            "description": intent.description,
            "budget": intent.budget.to_dict(),
        })
        await ctx.events.emit(EventType.AGENT_START, 0, {
            "runId": ctx.run_id,
            "query": config.query,
            "budget": config.budget,
            "buyerAddress": self._buyer_address,
            "providerCount": len(config.providers),
            "useX402": ctx.use_x402,
            "category": config.category,
            "mandateChainId": ctx.mandates.chain_id,
        })

        # Phase 1: encryption policy
        ctx.phase = 1
        decision = await self._brain.analyze_encryption_needs(config.query)
        await ctx.events.emit(EventType.ENCRYPTION_DECISION, 1, decision.to_dict())
        logger.info(
            "Encryption layers: %s (sensitivity=%s)",
            ",".join(layer.value for layer in decision.layers),
            decision.sensitivity,
        )

        # Phases 2-3: strategy and query commitments
        strategy_commit: Optional[CommitmentResult] = None
        query_commit: Optional[CommitmentResult] = None
        if decision.uses(Layer.STRATEGY):
            ctx.phase = 2
            strategy_commit = await ctx.commitment.commit_strategy({
                "query": config.query,
                "budget": config.budget,
                "providers": [
                    {"name": p.name, "price": p.price, "endpoint": p.endpoint}
                    for p in config.providers
                ],
                "qualityThreshold": ctx.threshold,
                "useX402": ctx.use_x402,
                "timestamp": int(self._clock() * 1000),
            })
        if decision.uses(Layer.QUERY):
            ctx.phase = 3
            query_commit = await ctx.commitment.commit_query(config.query)

        # Phase 4: discovery
        ctx.phase = 4
        engagements = await self._discover(ctx)

        # Phase 5: purchase
        ctx.phase = 5
        purchased = await _gather_or_cancel([self._purchase(ctx, e) for e in engagements])
        delivered = [e for e, ok in zip(engagements, purchased) if ok]

        # Phase 6: escrows
        ctx.phase = 6
        for engagement in delivered:
            await self._create_escrow(ctx, engagement, encrypted=decision.uses(Layer.ESCROW))

        # Phase 7: delivery + quality gate
        ctx.phase = 7
        await _gather_or_cancel([self._evaluate(ctx, e) for e in delivered])
        decisions = [
            SettlementDecision(
                escrow_id=e.escrow.escrow_id,
                provider=e.spec.name,
                action="pay" if e.verdict.passed else "refund",
                score=e.verdict.score,
            )
            for e in delivered
        ]

        # Phase 8: settlement batch commitment
        settlements_commit: Optional[CommitmentResult] = None
        if decision.uses(Layer.SETTLEMENT):
            ctx.phase = 8
            settlements_commit = await ctx.commitment.commit_settlements(decisions)

        # Phase 9: settlement
        ctx.phase = 9
        for engagement, settlement_decision in zip(delivered, decisions):
            await self._settle(ctx, engagement, settlement_decision)

        # Phase 10: synthesis + receipt
        ctx.phase = 10
        return await self._finish(
            ctx, decision, delivered, strategy_commit, query_commit, settlements_commit,
        )

    async def _discover(self, ctx: _RunContext) -> list[_Engagement]:
        config = ctx.config
        engagements: list[_Engagement] = []
        agent_ids: dict[str, int] = {}

        for spec in config.providers:
            agent_id = await self._identity.register(
                spec.address,
                AgentMetadata(
                    name=spec.name,
                    uri=f"twinkle://{spec.name.lower()}",
                    capabilities=list(spec.capabilities),
                    price=spec.price,
                ),
            )
            agent_ids[spec.name] = agent_id
            await ctx.events.emit(EventType.PROVIDER_DISCOVERED, 4, {
                "name": spec.name,
                "agentId": agent_id,
                "address": spec.address,
                "price": spec.price,
            })

        # Advisory: recorded on the event stream, engagement is not filtered
        selections = await self._brain.select_providers(
            [p.candidate() for p in config.providers], config.budget, config.query,
        )
        await ctx.events.emit(EventType.PROVIDER_SELECTED, 4, {
            "selected": [s.name for s in selections],
            "reasons": [s.to_dict() for s in selections],
        })

        for spec in config.providers:
            cart = ctx.mandates.create_cart(
                provider=spec.address,
                provider_name=spec.name,
                price=spec.price,
                asset=self._settings.asset,
                service=config.category or ProtocolDefaults.DEFAULT_SERVICE,
                endpoint=spec.endpoint,
            )
            await ctx.events.emit(EventType.AP2_CART, 4, {
                "mandateId": cart.mandate_id,
                "parentId": cart.parent_id,
                "provider": cart.provider_name,
                "price": cart.total_price.to_dict(),
            })
            engagements.append(_Engagement(spec=spec, agent_id=agent_ids[spec.name], cart=cart))
        return engagements

    async def _purchase(self, ctx: _RunContext, engagement: _Engagement) -> bool:
        spec = engagement.spec
        provider_var.set(spec.name)
        await ctx.events.emit(EventType.X402_CHALLENGE, 5, {
            "provider": spec.name,
            "endpoint": spec.endpoint,
            "price": spec.price,
            "useX402": ctx.use_x402,
        })

        credential = None
        if ctx.use_x402:
            credential = ctx.config.payer_credential or self._settings.payer_credential
        try:
            result = await self._purchaser.purchase(spec.endpoint, ctx.config.query, credential)
        except Exception as e:
            # Recoverable: the provider is dropped from the rest of the run
            logger.warning(
                "Purchase from %s failed: %s", spec.name, e,
                extra={"data": mask_sensitive_data({"endpoint": spec.endpoint, "error": str(e)})},
            )
            await ctx.events.emit(EventType.AGENT_ERROR, 5, {"provider": spec.name, "error": str(e)})
            return False

        engagement.purchase = result
        engagement.analysis = _analysis_of(result.data)
        engagement.delivery_hash = delivery_hash(engagement.analysis)

        if result.protocol_used:
            await ctx.events.emit(EventType.X402_PAYMENT, 5, {
                "provider": spec.name,
                "cost": result.cost,
            })
        await ctx.events.emit(EventType.X402_SUCCESS, 5, {
            "provider": spec.name,
            "hasAnalysis": engagement.analysis is not None,
            "x402Used": result.protocol_used,
            "x402Cost": result.cost,
        })
        return True

    async def _create_escrow(self, ctx: _RunContext, engagement: _Engagement, encrypted: bool) -> None:
        spec = engagement.spec
        now = self._clock()
        request_hash = hash_text(f"{ctx.config.query}-{spec.name}-{int(now * 1000)}")
        deadline = int(now) + self._settings.escrow_deadline_seconds

        creation = await ctx.escrows.create(
            seller=spec.address,
            amount=ctx.unit_amount,
            deadline=deadline,
            request_hash=request_hash,
            encrypted=encrypted,
        )
        engagement.escrow = creation
        await ctx.events.emit(EventType.ESCROW_CREATED, 6, {
            "provider": spec.name,
            "escrowId": creation.escrow_id,
            "amount": str(ctx.unit_amount),
            "biteEncrypted": encrypted,
            "txHash": creation.tx_reference,
        })

        payment = ctx.mandates.create_payment(
            cart_id=engagement.cart.mandate_id,
            escrow_id=creation.escrow_id,
            tx_reference=creation.tx_reference,
            amount=ctx.unit_amount,
            asset=self._settings.asset,
            provider=spec.address,
            realized_cost=engagement.purchase.cost if engagement.purchase else None,
        )
        engagement.payment = payment
        await ctx.events.emit(EventType.AP2_PAYMENT, 6, {
            "mandateId": payment.mandate_id,
            "parentId": payment.parent_id,
            "escrowId": creation.escrow_id,
            "status": payment.status,
        })

    async def _evaluate(self, ctx: _RunContext, engagement: _Engagement) -> None:
        spec = engagement.spec
        provider_var.set(spec.name)
        escrow_id = engagement.escrow.escrow_id

        await ctx.escrows.submit_delivery(escrow_id, engagement.delivery_hash)
        await ctx.events.emit(EventType.ESCROW_RESPONSE, 7, {
            "provider": spec.name,
            "escrowId": escrow_id,
            "deliveryHash": engagement.delivery_hash,
        })

        verdict = await self._brain.evaluate_quality(
            engagement.analysis, spec.name, ctx.threshold, ctx.config.category,
        )
        engagement.verdict = verdict
        await ctx.events.emit(EventType.QUALITY_EVALUATED, 7, {
            "provider": spec.name,
            "score": verdict.score,
            "passed": verdict.passed,
            "reasoning": verdict.reasoning,
        })

    async def _settle(
        self,
        ctx: _RunContext,
        engagement: _Engagement,
        decision: SettlementDecision,
    ) -> None:
        spec = engagement.spec
        outcome = await ctx.escrows.settle(
            decision.escrow_id,
            "paid" if decision.action == "pay" else "refunded",
            delivery_proof=delivery_hash(engagement.analysis),
        )
        engagement.settlement = outcome
        action = "pay" if outcome.paid else "refund"
        await ctx.events.emit(EventType.ESCROW_SETTLED, 9, {
            "provider": spec.name,
            "escrowId": decision.escrow_id,
            "action": action,
            "txHash": outcome.tx_reference,
        })

        payment_outcome = "released" if outcome.paid else "refunded"
        ctx.mandates.settle_payment(engagement.payment.mandate_id, payment_outcome, outcome.tx_reference)
        await ctx.events.emit(EventType.AP2_SETTLED, 9, {
            "mandateId": engagement.payment.mandate_id,
            "escrowId": decision.escrow_id,
            "outcome": payment_outcome,
            "txHash": outcome.tx_reference,
        })

        if outcome.paid:
            score = ProtocolDefaults.REPUTATION_PAID_SCORE
            tags = ProtocolDefaults.REPUTATION_PAID_TAGS
        else:
            score = ProtocolDefaults.REPUTATION_REFUNDED_SCORE
            tags = ProtocolDefaults.REPUTATION_REFUNDED_TAGS
        await self._identity.submit_reputation(
            ReputationEntry(agent_id=engagement.agent_id, value=score, tag1=tags[0], tag2=tags[1])
        )
        engagement.reputation_score = score
        engagement.reputation_tags = tags
        await ctx.events.emit(EventType.REPUTATION_UPDATED, 9, {
            "provider": spec.name,
            "agentId": engagement.agent_id,
            "score": score,
            "tags": list(tags),
        })

    async def _finish(
        self,
        ctx: _RunContext,
        decision: EncryptionDecision,
        delivered: list[_Engagement],
        strategy_commit: Optional[CommitmentResult],
        query_commit: Optional[CommitmentResult],
        settlements_commit: Optional[CommitmentResult],
    ) -> AgentReceipt:
        results = [self._result(e) for e in delivered]
        passing = [
            {"name": r.name, "analysis": r.analysis}
            for r in results
            if r.passed
        ]
        synthesis = await self._brain.synthesize(passing, ctx.config.query)
        await ctx.events.emit(EventType.SYNTHESIS_COMPLETE, 10, {
            "inputCount": len(passing),
            "synthesis": synthesis,
        })

        intent = ctx.mandates.intent
        if any(r.paid for r in results):
            outcome = "success"
        elif intent is not None and intent.is_expired():
            outcome = "expired"
        else:
            outcome = "failure"
        chain = ctx.mandates.complete(outcome)
        await ctx.events.emit(EventType.AP2_COMPLETE, 10, {
            "chainId": chain.chain_id,
            "outcome": chain.outcome,
            "mandateCount": len(chain.mandates),
        })

        violations = ctx.mandates.verify()
        if violations:
            logger.error("Mandate chain %s has violations: %s", chain.chain_id, violations)

        receipt = build_receipt(
            query=ctx.config.query,
            started_at=ctx.started_at,
            encryption_decision=decision,
            providers=results,
            synthesis=synthesis,
            mandate_chain=chain,
            strategy_commit=strategy_commit,
            query_commit=query_commit,
            settlements_commit=settlements_commit,
            receipt_id=f"twinkle-receipt-{ctx.run_id}",
            category=ctx.config.category,
            encryption_stats=ctx.commitment.stats(),
        )
        logger.info(
            "Run %s complete: paid=%s refunded=%s encryptions=%d outcome=%s",
            ctx.run_id,
            receipt.totals.paid_amount,
            receipt.totals.refunded_amount,
            receipt.totals.encryption_count,
            chain.outcome,
        )
        await ctx.events.emit(EventType.AGENT_RECEIPT, 10, {"receipt": receipt.to_dict()})
        return receipt

    def _result(self, engagement: _Engagement) -> ProviderResult:
        spec = engagement.spec
        escrow = engagement.escrow
        verdict = engagement.verdict
        settlement = engagement.settlement
        purchase = engagement.purchase
        return ProviderResult(
            name=spec.name,
            agent_id=engagement.agent_id,
            address=spec.address,
            endpoint=spec.endpoint,
            price=spec.price,
            purchase_protocol_used=purchase.protocol_used,
            purchase_cost=purchase.cost,
            escrow_id=escrow.escrow_id,
            escrow_amount=engagement.payment.amount.amount,
            escrow_encrypted=escrow.encrypted,
            escrow_tx_reference=escrow.tx_reference,
            delivery_hash=engagement.delivery_hash,
            quality_score=verdict.score,
            passed=verdict.passed,
            reasoning=verdict.reasoning,
            settlement_action="paid" if settlement.paid else "refunded",
            settlement_tx_reference=settlement.tx_reference,
            reputation_score=engagement.reputation_score,
            reputation_tags=engagement.reputation_tags,
            analysis=engagement.analysis,
            escrow_commitment=escrow.commitment,
        )


__all__ = ["ProviderSpec", "RunConfig", "ProcurementOrchestrator"]
