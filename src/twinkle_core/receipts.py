"""Receipt assembly: the auditable summary of one procurement run."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional, Sequence
from uuid import uuid4

from .brain import EncryptionDecision
from .commitment import CommitmentResult, CommitmentStats
from .mandates import MandateChain

_CENTS = Decimal("0.01")


def format_amount(value: Decimal) -> str:
    """Two-decimal rendering used for every receipt amount."""
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class ProviderResult:
    """Summary of one provider's lifecycle, built once after settlement."""

    name: str
    agent_id: int
    address: str
    endpoint: str
    price: str
    purchase_protocol_used: bool
    purchase_cost: str
    escrow_id: int
    escrow_amount: Decimal
    escrow_encrypted: bool
    escrow_tx_reference: str
    delivery_hash: str
    quality_score: float
    passed: bool
    reasoning: str
    settlement_action: Literal["paid", "refunded"]
    settlement_tx_reference: str
    reputation_score: int
    reputation_tags: tuple[str, ...]
    analysis: Any = None
    escrow_commitment: Optional[CommitmentResult] = None

    @property
    def paid(self) -> bool:
        return self.settlement_action == "paid"

    def to_dict(self) -> dict[str, Any]:
        escrow: dict[str, Any] = {
            "id": self.escrow_id,
            "amount": format_amount(self.escrow_amount),
            "biteEncrypted": self.escrow_encrypted,
            "txHash": self.escrow_tx_reference,
        }
        if self.escrow_commitment is not None:
            escrow["timing"] = self.escrow_commitment.to_dict()["timing"]
        return {
            "name": self.name,
            "agentId": self.agent_id,
            "address": self.address,
            "x402": {
                "amount": self.price,
                "paid": True,
                "endpoint": self.endpoint,
                "x402Used": self.purchase_protocol_used,
                "x402Cost": self.purchase_cost,
            },
            "escrow": escrow,
            "delivery": {
                "hash": self.delivery_hash,
                "qualityScore": self.quality_score,
                "passed": self.passed,
                "reasoning": self.reasoning,
                "analysis": self.analysis,
            },
            "settlement": {"action": self.settlement_action, "txHash": self.settlement_tx_reference},
            "reputation": {"score": self.reputation_score, "tags": list(self.reputation_tags)},
        }


@dataclass(frozen=True, slots=True)
class ReceiptTotals:
    paid_amount: Decimal
    refunded_amount: Decimal
    encryption_count: int
    commit_message_count: int
    purchase_protocol_usage_count: int
    escrows_created: int
    agents_paid: int
    agents_refunded: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "paidAmount": format_amount(self.paid_amount),
            "refundedAmount": format_amount(self.refunded_amount),
            "encryptionCount": self.encryption_count,
            "commitMessageCount": self.commit_message_count,
            "purchaseProtocolUsageCount": self.purchase_protocol_usage_count,
            "escrowsCreated": self.escrows_created,
            "agentsPaid": self.agents_paid,
            "agentsRefunded": self.agents_refunded,
        }


@dataclass(frozen=True, slots=True)
class AgentReceipt:
    receipt_id: str
    query: str
    started_at: datetime
    duration_ms: int
    encryption_decision: EncryptionDecision
    commitments: dict[str, CommitmentResult]
    providers: tuple[ProviderResult, ...]
    synthesis: str
    mandate_chain: MandateChain
    totals: ReceiptTotals
    category: Optional[str] = None
    encryption_stats: Optional[CommitmentStats] = None

    def provider(self, name: str) -> Optional[ProviderResult]:
        return next((p for p in self.providers if p.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.receipt_id,
            "query": self.query,
            "startedAt": self.started_at.isoformat(),
            "durationMs": self.duration_ms,
            "encryptionDecision": self.encryption_decision.to_dict(),
            "commitments": {k: v.to_dict() for k, v in self.commitments.items()},
            "providers": [p.to_dict() for p in self.providers],
            "synthesis": self.synthesis,
            "mandateChain": self.mandate_chain.to_dict(),
            "totals": self.totals.to_dict(),
        }
        if self.category:
            result["category"] = self.category
        if self.encryption_stats is not None:
            result["encryptionStats"] = self.encryption_stats.to_dict()
        return result


def build_receipt(
    query: str,
    started_at: datetime,
    encryption_decision: EncryptionDecision,
    providers: Sequence[ProviderResult],
    synthesis: str,
    mandate_chain: MandateChain,
    strategy_commit: Optional[CommitmentResult] = None,
    query_commit: Optional[CommitmentResult] = None,
    settlements_commit: Optional[CommitmentResult] = None,
    receipt_id: Optional[str] = None,
    category: Optional[str] = None,
    encryption_stats: Optional[CommitmentStats] = None,
) -> AgentReceipt:
    """Aggregate provider results and commitments into the run receipt.

    ``encryption_count`` counts encrypted escrows plus message commitments;
    ``commit_message_count`` counts only the message commitments.
    """
    commitments = {
        key: commit
        for key, commit in (
            ("strategy", strategy_commit),
            ("query", query_commit),
            ("settlements", settlements_commit),
        )
        if commit is not None
    }

    paid = [p for p in providers if p.paid]
    refunded = [p for p in providers if not p.paid]
    messages = len(commitments)

    totals = ReceiptTotals(
        paid_amount=sum((p.escrow_amount for p in paid), Decimal("0")),
        refunded_amount=sum((p.escrow_amount for p in refunded), Decimal("0")),
        encryption_count=sum(1 for p in providers if p.escrow_encrypted) + messages,
        commit_message_count=messages,
        purchase_protocol_usage_count=sum(1 for p in providers if p.purchase_protocol_used),
        escrows_created=len(providers),
        agents_paid=len(paid),
        agents_refunded=len(refunded),
    )

    now = datetime.now(timezone.utc)
    return AgentReceipt(
        receipt_id=receipt_id or f"twinkle-receipt-{uuid4().hex[:12]}",
        query=query,
        started_at=started_at,
        duration_ms=max(0, int((now - started_at).total_seconds() * 1000)),
        encryption_decision=encryption_decision,
        commitments=commitments,
        providers=tuple(providers),
        synthesis=synthesis,
        mandate_chain=mandate_chain,
        totals=totals,
        category=category,
        encryption_stats=encryption_stats,
    )


@dataclass(frozen=True, slots=True)
class ActResult:
    category: str
    receipt: AgentReceipt
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "receipt": self.receipt.to_dict(),
            "durationMs": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class MarketplaceTotals:
    escrows_created: int
    paid_amount: Decimal
    refunded_amount: Decimal
    encryption_count: int
    purchase_protocol_usage_count: int
    agents_hired: int
    agents_paid: int
    agents_refunded: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "escrowsCreated": self.escrows_created,
            "paidAmount": format_amount(self.paid_amount),
            "refundedAmount": format_amount(self.refunded_amount),
            "encryptionCount": self.encryption_count,
            "purchaseProtocolUsageCount": self.purchase_protocol_usage_count,
            "agentsHired": self.agents_hired,
            "agentsPaid": self.agents_paid,
            "agentsRefunded": self.agents_refunded,
        }


@dataclass(frozen=True, slots=True)
class MarketplaceReceipt:
    receipt_id: str
    started_at: datetime
    duration_ms: int
    acts: tuple[ActResult, ...]
    totals: MarketplaceTotals
    mandate_chains: tuple[MandateChain, ...] = field(default_factory=tuple)
    synthesis: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.receipt_id,
            "startedAt": self.started_at.isoformat(),
            "durationMs": self.duration_ms,
            "acts": [a.to_dict() for a in self.acts],
            "totals": self.totals.to_dict(),
            "mandateChains": [c.to_dict() for c in self.mandate_chains],
            "synthesis": self.synthesis,
        }


def build_marketplace_receipt(started_at: datetime, acts: Sequence[ActResult]) -> MarketplaceReceipt:
    receipts = [a.receipt for a in acts]
    totals = MarketplaceTotals(
        escrows_created=sum(r.totals.escrows_created for r in receipts),
        paid_amount=sum((r.totals.paid_amount for r in receipts), Decimal("0")),
        refunded_amount=sum((r.totals.refunded_amount for r in receipts), Decimal("0")),
        encryption_count=sum(r.totals.encryption_count for r in receipts),
        purchase_protocol_usage_count=sum(r.totals.purchase_protocol_usage_count for r in receipts),
        agents_hired=sum(r.totals.escrows_created for r in receipts),
        agents_paid=sum(r.totals.agents_paid for r in receipts),
        agents_refunded=sum(r.totals.agents_refunded for r in receipts),
    )
    now = datetime.now(timezone.utc)
    return MarketplaceReceipt(
        receipt_id=f"twinkle-marketplace-{uuid4().hex[:12]}",
        started_at=started_at,
        duration_ms=max(0, int((now - started_at).total_seconds() * 1000)),
        acts=tuple(acts),
        totals=totals,
        mandate_chains=tuple(r.mandate_chain for r in receipts),
        synthesis="\n\n".join(f"[{a.category}] {a.receipt.synthesis}" for a in acts),
    )


__all__ = [
    "format_amount",
    "ProviderResult",
    "ReceiptTotals",
    "AgentReceipt",
    "build_receipt",
    "ActResult",
    "MarketplaceTotals",
    "MarketplaceReceipt",
    "build_marketplace_receipt",
]
