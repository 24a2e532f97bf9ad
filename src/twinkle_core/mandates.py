"""AP2 mandate tracking for procurement runs.

Each run produces one MandateChain: Intent -> Cart[] -> Payment[].
Intent and Cart mandates are immutable once created. A Payment mandate
moves exactly once from ``locked`` to ``released`` or ``refunded``, and
the chain outcome is written exactly once, after every payment is terminal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Literal, Optional, Sequence
from uuid import uuid4

from .exceptions import MandateChainError, NoIntentError, ValidationError

logger = logging.getLogger(__name__)

MandateType = Literal["intent", "cart", "payment"]
PaymentStatus = Literal["locked", "released", "refunded"]
ChainOutcome = Literal["success", "failure", "expired"]


def _mandate_id() -> str:
    return f"mandate_{uuid4().hex[:16]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Price:
    amount: Decimal
    asset: str

    def to_dict(self) -> dict[str, str]:
        return {"amount": str(self.amount), "asset": self.asset}


@dataclass(frozen=True, slots=True)
class LineItem:
    service: str
    price: Price
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "price": self.price.to_dict(),
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class IntentMandate:
    """Root of the chain: what the buyer wants and how much it may spend."""

    mandate_id: str
    description: str
    budget: Price
    ttl_seconds: int
    created_at: datetime
    allowed_providers: Optional[tuple[str, ...]] = None
    mandate_type: MandateType = "intent"
    parent_id: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.mandate_id,
            "type": self.mandate_type,
            "timestamp": self.created_at.isoformat(),
            "description": self.description,
            "budget": self.budget.to_dict(),
            "ttl": self.ttl_seconds,
            "expiresAt": self.expires_at.isoformat(),
            "allowedProviders": list(self.allowed_providers) if self.allowed_providers else None,
        }


@dataclass(frozen=True, slots=True)
class CartMandate:
    """One agreement-to-purchase per engaged provider."""

    mandate_id: str
    parent_id: str
    provider: str
    provider_name: str
    items: tuple[LineItem, ...]
    total_price: Price
    endpoint: str
    created_at: datetime
    provider_signature: Optional[str] = None
    mandate_type: MandateType = "cart"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.mandate_id,
            "type": self.mandate_type,
            "timestamp": self.created_at.isoformat(),
            "parentId": self.parent_id,
            "provider": self.provider,
            "providerName": self.provider_name,
            "items": [item.to_dict() for item in self.items],
            "totalPrice": self.total_price.to_dict(),
            "endpoint": self.endpoint,
            "providerSignature": self.provider_signature,
        }


@dataclass(slots=True)
class PaymentMandate:
    """Funds locked in escrow for one cart.

    Only ``status`` and ``settlement_reference`` change after creation, and
    only through MandateTracker.settle_payment.
    """

    mandate_id: str
    parent_id: str
    escrow_id: int
    tx_reference: str
    amount: Price
    provider: str
    created_at: datetime
    status: PaymentStatus = "locked"
    realized_cost: Optional[str] = None
    settlement_reference: Optional[str] = None
    mandate_type: MandateType = "payment"

    @property
    def is_terminal(self) -> bool:
        return self.status != "locked"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.mandate_id,
            "type": self.mandate_type,
            "timestamp": self.created_at.isoformat(),
            "parentId": self.parent_id,
            "escrowId": str(self.escrow_id),
            "txHash": self.tx_reference,
            "amount": self.amount.to_dict(),
            "provider": self.provider,
            "status": self.status,
            "x402Cost": self.realized_cost,
            "settlementTxHash": self.settlement_reference,
        }


Mandate = IntentMandate | CartMandate | PaymentMandate


@dataclass(slots=True)
class MandateChain:
    """Ordered accountability record for one procurement run."""

    chain_id: str
    mandates: list[Mandate] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    outcome: Optional[ChainOutcome] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "mandates": [m.to_dict() for m in self.mandates],
            "created": self.created_at.isoformat(),
            "completed": self.completed_at.isoformat() if self.completed_at else None,
            "outcome": self.outcome,
        }


class MandateTracker:
    """Builds the mandate chain for a single run."""

    def __init__(self) -> None:
        self._chain = MandateChain(chain_id=f"chain_{uuid4().hex[:16]}")
        self._intent: Optional[IntentMandate] = None
        self._by_id: dict[str, Mandate] = {}

    @property
    def chain_id(self) -> str:
        return self._chain.chain_id

    @property
    def intent(self) -> Optional[IntentMandate]:
        return self._intent

    def _append(self, mandate: Mandate) -> None:
        self._chain.mandates.append(mandate)
        self._by_id[mandate.mandate_id] = mandate

    def create_intent(
        self,
        description: str,
        budget: Decimal | str,
        asset: str,
        ttl_seconds: int = 300,
        allowed_providers: Optional[Sequence[str]] = None,
    ) -> IntentMandate:
        if self._intent is not None:
            raise MandateChainError("Intent already exists for this chain")
        if ttl_seconds <= 0:
            raise ValidationError("Intent TTL must be positive", field="ttl_seconds")

        intent = IntentMandate(
            mandate_id=_mandate_id(),
            description=description,
            budget=Price(Decimal(str(budget)), asset),
            ttl_seconds=ttl_seconds,
            created_at=_utcnow(),
            allowed_providers=tuple(allowed_providers) if allowed_providers else None,
        )
        self._intent = intent
        self._append(intent)
        return intent

    def create_cart(
        self,
        provider: str,
        provider_name: str,
        price: Decimal | str,
        asset: str,
        service: str,
        endpoint: str,
        intent_id: Optional[str] = None,
    ) -> CartMandate:
        if self._intent is None:
            raise NoIntentError()
        if intent_id is not None and intent_id != self._intent.mandate_id:
            raise NoIntentError(f"Intent '{intent_id}' does not exist in chain {self.chain_id}")

        total = Price(Decimal(str(price)), asset)
        cart = CartMandate(
            mandate_id=_mandate_id(),
            parent_id=self._intent.mandate_id,
            provider=provider,
            provider_name=provider_name,
            items=(LineItem(service=service, price=total, description=f"{provider_name} {service}"),),
            total_price=total,
            endpoint=endpoint,
            created_at=_utcnow(),
        )
        self._append(cart)
        return cart

    def create_payment(
        self,
        cart_id: str,
        escrow_id: int,
        tx_reference: str,
        amount: Decimal | str,
        asset: str,
        provider: str,
        realized_cost: Optional[str] = None,
    ) -> PaymentMandate:
        cart = self._by_id.get(cart_id)
        if not isinstance(cart, CartMandate):
            raise MandateChainError(f"Payment must reference an existing cart, got '{cart_id}'")

        payment = PaymentMandate(
            mandate_id=_mandate_id(),
            parent_id=cart.mandate_id,
            escrow_id=escrow_id,
            tx_reference=tx_reference,
            amount=Price(Decimal(str(amount)), asset),
            provider=provider,
            created_at=_utcnow(),
            realized_cost=realized_cost,
        )
        self._append(payment)
        return payment

    def settle_payment(
        self,
        payment_id: str,
        outcome: Literal["released", "refunded"],
        reference: str,
    ) -> Optional[PaymentMandate]:
        """Record the terminal status of a payment.

        Unknown ids are ignored: the escrow ledger is the source of truth,
        this is bookkeeping. A payment that is already terminal is left as-is.
        """
        payment = self._by_id.get(payment_id)
        if not isinstance(payment, PaymentMandate):
            logger.warning("Ignoring settlement for unknown payment mandate %s", payment_id)
            return None
        if payment.is_terminal:
            logger.warning(
                "Payment mandate %s already %s; ignoring %s",
                payment_id, payment.status, outcome,
            )
            return None

        payment.status = outcome
        payment.settlement_reference = reference
        return payment

    def complete(self, outcome: ChainOutcome) -> MandateChain:
        if self._chain.outcome is not None:
            raise MandateChainError(
                f"Chain {self.chain_id} already completed with outcome {self._chain.outcome}"
            )
        locked = [p.mandate_id for p in self.payments if not p.is_terminal]
        if locked:
            raise MandateChainError(
                f"Cannot complete chain {self.chain_id}: {len(locked)} payment(s) still locked"
            )

        self._chain.completed_at = _utcnow()
        self._chain.outcome = outcome
        return self._chain

    def get_chain(self) -> MandateChain:
        return self._chain

    def get(self, mandate_id: str) -> Optional[Mandate]:
        return self._by_id.get(mandate_id)

    def by_type(self, mandate_type: MandateType) -> list[Mandate]:
        return [m for m in self._chain.mandates if m.mandate_type == mandate_type]

    @property
    def intents(self) -> list[IntentMandate]:
        return self.by_type("intent")  # type: ignore[return-value]

    @property
    def carts(self) -> list[CartMandate]:
        return self.by_type("cart")  # type: ignore[return-value]

    @property
    def payments(self) -> list[PaymentMandate]:
        return self.by_type("payment")  # type: ignore[return-value]

    def verify(self) -> list[str]:
        """Check referential integrity; returns a list of violations."""
        violations: list[str] = []
        intent_ids = {m.mandate_id for m in self.intents}
        cart_ids = {m.mandate_id for m in self.carts}

        if len(intent_ids) != 1:
            violations.append(f"expected exactly one intent, found {len(intent_ids)}")
        for cart in self.carts:
            if cart.parent_id not in intent_ids:
                violations.append(f"cart {cart.mandate_id} references missing intent {cart.parent_id}")
        for payment in self.payments:
            if payment.parent_id not in cart_ids:
                violations.append(
                    f"payment {payment.mandate_id} references missing cart {payment.parent_id}"
                )
        if self._chain.outcome is not None and any(not p.is_terminal for p in self.payments):
            violations.append("chain completed while payments are still locked")
        return violations


__all__ = [
    "Price",
    "LineItem",
    "IntentMandate",
    "CartMandate",
    "PaymentMandate",
    "MandateChain",
    "MandateTracker",
    "MandateType",
    "PaymentStatus",
    "ChainOutcome",
]
