"""Per-provider conditional-payment escrows.

Escrow States:
    Created --submit_delivery--> ResponseSubmitted --settle--> Settled
                                                     \\-------> Refunded
    Created / ResponseSubmitted --claim_refund (past deadline)--> Refunded
    Created / ResponseSubmitted --emergency_refund (past grace)--> Refunded

Settled and Refunded are terminal. The accessor serializes settlement per
escrow, so an escrow is settled at most once even when providers are
processed concurrently.

Usage:
    accessor = EscrowAccessor(ledger, commitment, token_address="0x...")
    created = await accessor.create(seller, Decimal("0.10"), deadline, request_hash)
    await accessor.submit_delivery(created.escrow_id, delivery_hash)
    outcome = await accessor.settle(created.escrow_id, "paid", delivery_proof=delivery_hash)
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import Any, Callable, Literal, Optional, Protocol

from .commitment import CommitmentLayer, CommitmentResult, Layer, json_hex, normalize_hex
from .exceptions import (
    AlreadySettledError,
    ConfigurationError,
    DeliveryProofMismatchError,
    EscrowStateError,
    LedgerTransactionError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

SettleAction = Literal["pay", "refund"]
SettleOutcome = Literal["paid", "refunded"]


class EscrowStatus(IntEnum):
    """Escrow lifecycle states, numbered as the contract stores them."""
    CREATED = 0
    RESPONSE_SUBMITTED = 1
    SETTLED = 2
    REFUNDED = 3


# Valid state transitions (only explicit transitions allowed)
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.CREATED: {EscrowStatus.RESPONSE_SUBMITTED, EscrowStatus.REFUNDED},
    EscrowStatus.RESPONSE_SUBMITTED: {EscrowStatus.SETTLED, EscrowStatus.REFUNDED},
    EscrowStatus.SETTLED: set(),  # Terminal state
    EscrowStatus.REFUNDED: set(),  # Terminal state
}

TERMINAL_STATUSES = frozenset({EscrowStatus.SETTLED, EscrowStatus.REFUNDED})


def hash_text(text: str) -> str:
    """Proof hash used for request and delivery commitments."""
    return "0x" + hashlib.sha256(text.encode("utf-8")).hexdigest()


def delivery_hash(payload: Any) -> str:
    return hash_text(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


@dataclass(slots=True)
class Escrow:
    """Escrow record as held by the ledger. Never deleted."""

    escrow_id: int
    buyer: str
    seller: str
    token_address: str
    amount: Decimal
    request_hash: str
    deadline: int
    created_at: int
    status: EscrowStatus = EscrowStatus.CREATED
    response_hash: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: EscrowStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.escrow_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "tokenAddress": self.token_address,
            "amount": str(self.amount),
            "requestHash": self.request_hash,
            "responseHash": self.response_hash,
            "deadline": self.deadline,
            "status": self.status.name,
        }


@dataclass(frozen=True, slots=True)
class SettlementDecision:
    escrow_id: int
    provider: str
    action: SettleAction
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"escrowId": self.escrow_id, "action": self.action, "score": self.score}


@dataclass(frozen=True, slots=True)
class EscrowCreation:
    escrow_id: int
    tx_reference: str
    encrypted: bool
    commitment: Optional[CommitmentResult] = None


@dataclass(frozen=True, slots=True)
class SettlementOutcome:
    escrow_id: int
    status: EscrowStatus
    tx_reference: str
    matched: bool

    @property
    def paid(self) -> bool:
        return self.status is EscrowStatus.SETTLED


class EscrowLedger(Protocol):
    """Escrow contract port."""

    @property
    def address(self) -> str: ...

    def encode_create(
        self,
        request_hash: str,
        seller: str,
        token_address: str,
        amount: Decimal,
        deadline: int,
    ) -> str: ...

    async def send(self, data_hex: str) -> str: ...

    async def execute(self, data_hex: str, tx_hash: str) -> Any: ...

    async def escrow_id_for(self, tx_hash: str) -> int: ...

    async def submit_response(self, escrow_id: int, response_hash: str) -> str: ...

    async def settle(self, escrow_id: int, matched: bool) -> str: ...

    async def verify_and_settle(self, escrow_id: int, delivery_proof: str) -> str: ...

    async def claim_refund(self, escrow_id: int) -> str: ...

    async def emergency_refund(self, escrow_id: int) -> str: ...

    async def get_escrow(self, escrow_id: int) -> Escrow: ...


# =============================================================================
# Accessor
# =============================================================================

@dataclass(slots=True)
class _Tracked:
    seller: str
    amount: Decimal
    request_hash: str
    deadline: int
    created_at: int
    status: EscrowStatus = EscrowStatus.CREATED
    delivery_hash: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class EscrowAccessor:
    """Creates, delivers against and settles escrows for one run."""

    def __init__(
        self,
        ledger: EscrowLedger,
        commitment: Optional[CommitmentLayer] = None,
        token_address: str = "",
        grace_multiple: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._commitment = commitment
        self._token_address = token_address
        self._grace_multiple = grace_multiple
        self._clock = clock
        self._tracked: dict[int, _Tracked] = {}

    def _get(self, escrow_id: int) -> _Tracked:
        tracked = self._tracked.get(escrow_id)
        if tracked is None:
            raise NotFoundError("Escrow", str(escrow_id))
        return tracked

    def status(self, escrow_id: int) -> EscrowStatus:
        return self._get(escrow_id).status

    async def create(
        self,
        seller: str,
        amount: Decimal,
        deadline: int,
        request_hash: str,
        encrypted: bool = False,
    ) -> EscrowCreation:
        data = self._ledger.encode_create(request_hash, seller, self._token_address, amount, deadline)
        commitment: Optional[CommitmentResult] = None

        if encrypted:
            if self._commitment is None:
                raise ConfigurationError("Encrypted escrow creation requires a commitment layer")
            receipt = await self._commitment.send_encrypted(
                self._ledger.address,
                data,
                layer=Layer.ESCROW,
                details={"seller": seller, "amount": str(amount)},
            )
            tx_reference = receipt.tx_hash
            escrow_id = await self._ledger.escrow_id_for(tx_reference)
            commitment = CommitmentResult(
                layer=Layer.ESCROW,
                tx_hash=tx_reference,
                sent_at=receipt.sent_at,
                received_at=receipt.received_at,
                data_preview=f"escrow:{escrow_id}",
            )
        else:
            tx_reference = await self._ledger.send(data)
            escrow_id = await self._ledger.escrow_id_for(tx_reference)

        self._tracked[escrow_id] = _Tracked(
            seller=seller,
            amount=amount,
            request_hash=request_hash,
            deadline=deadline,
            created_at=int(self._clock()),
        )
        logger.info("Created escrow #%d for %s (encrypted=%s)", escrow_id, seller, encrypted)
        return EscrowCreation(
            escrow_id=escrow_id,
            tx_reference=tx_reference,
            encrypted=encrypted,
            commitment=commitment,
        )

    async def submit_delivery(self, escrow_id: int, delivery_hash: str) -> str:
        tracked = self._get(escrow_id)
        async with tracked.lock:
            if tracked.status is not EscrowStatus.CREATED:
                raise EscrowStateError(
                    f"Cannot submit delivery for escrow #{escrow_id} in state {tracked.status.name}",
                    escrow_id=escrow_id,
                    status=tracked.status.name,
                )
            tx_reference = await self._ledger.submit_response(escrow_id, delivery_hash)
            tracked.delivery_hash = delivery_hash
            tracked.status = EscrowStatus.RESPONSE_SUBMITTED
        return tx_reference

    async def settle(
        self,
        escrow_id: int,
        outcome: SettleOutcome,
        delivery_proof: Optional[str] = None,
    ) -> SettlementOutcome:
        """Settle an escrow to paid or refunded, exactly once.

        ``paid`` verifies ``delivery_proof`` (defaulting to the submitted
        delivery hash) against the ledger. A proof mismatch is an expected
        outcome and degrades to a refund.
        """
        tracked = self._get(escrow_id)
        async with tracked.lock:
            if tracked.status in TERMINAL_STATUSES:
                raise AlreadySettledError(
                    f"Escrow #{escrow_id} already {tracked.status.name}",
                    escrow_id=escrow_id,
                    status=tracked.status.name,
                )
            if tracked.status is not EscrowStatus.RESPONSE_SUBMITTED:
                raise EscrowStateError(
                    f"Cannot settle escrow #{escrow_id} in state {tracked.status.name}",
                    escrow_id=escrow_id,
                    status=tracked.status.name,
                )

            if outcome == "refunded":
                tx_reference = await self._ledger.settle(escrow_id, False)
                tracked.status = EscrowStatus.REFUNDED
                return SettlementOutcome(escrow_id, tracked.status, tx_reference, matched=False)

            proof = delivery_proof or tracked.delivery_hash or ""
            try:
                tx_reference = await self._ledger.verify_and_settle(escrow_id, proof)
            except DeliveryProofMismatchError:
                logger.warning("Delivery proof mismatch on escrow #%d; refunding", escrow_id)
                tx_reference = await self._ledger.settle(escrow_id, False)
                tracked.status = EscrowStatus.REFUNDED
                return SettlementOutcome(escrow_id, tracked.status, tx_reference, matched=False)

            tracked.status = EscrowStatus.SETTLED
            return SettlementOutcome(escrow_id, tracked.status, tx_reference, matched=True)

    async def claim_refund(self, escrow_id: int) -> Optional[str]:
        """Payer-side refund once the deadline has passed. No-op when terminal."""
        tracked = self._get(escrow_id)
        async with tracked.lock:
            if tracked.status in TERMINAL_STATUSES:
                return None
            if self._clock() <= tracked.deadline:
                raise EscrowStateError(
                    f"Escrow #{escrow_id} deadline has not passed",
                    escrow_id=escrow_id,
                    status=tracked.status.name,
                )
            tx_reference = await self._ledger.claim_refund(escrow_id)
            tracked.status = EscrowStatus.REFUNDED
        return tx_reference

    async def emergency_refund(self, escrow_id: int) -> Optional[str]:
        """Administrative refund after the grace window. No-op when terminal."""
        tracked = self._get(escrow_id)
        async with tracked.lock:
            if tracked.status in TERMINAL_STATUSES:
                return None
            window = max(0, tracked.deadline - tracked.created_at)
            grace_ends = tracked.created_at + window * self._grace_multiple
            if self._clock() <= grace_ends:
                raise EscrowStateError(
                    f"Escrow #{escrow_id} grace period has not elapsed",
                    escrow_id=escrow_id,
                    status=tracked.status.name,
                )
            tx_reference = await self._ledger.emergency_refund(escrow_id)
            tracked.status = EscrowStatus.REFUNDED
        return tx_reference

    async def get(self, escrow_id: int) -> Escrow:
        return await self._ledger.get_escrow(escrow_id)


# =============================================================================
# In-memory ledger
# =============================================================================

class InMemoryEscrowLedger:
    """In-memory escrow contract for development and tests.

    Mirrors the contract rules: proof checks on verify-and-settle, terminal
    statuses, deadline and grace-period refunds.
    """

    def __init__(
        self,
        buyer: str = "0x" + "b0" * 20,
        address: str = "0x" + "e5" * 20,
        grace_multiple: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._buyer = buyer
        self._address = address
        self._grace_multiple = grace_multiple
        self._clock = clock
        self._escrows: dict[int, Escrow] = {}
        self._created_by_tx: dict[str, int] = {}
        self._next_id = 1
        self.settle_calls: dict[int, int] = {}

    @property
    def address(self) -> str:
        return self._address

    @staticmethod
    def _tx() -> str:
        return "0x" + secrets.token_hex(32)

    def encode_create(
        self,
        request_hash: str,
        seller: str,
        token_address: str,
        amount: Decimal,
        deadline: int,
    ) -> str:
        return json_hex({
            "method": "createEscrow",
            "args": [request_hash, seller, token_address, str(amount), deadline],
        })

    async def send(self, data_hex: str) -> str:
        tx_hash = self._tx()
        await self.execute(data_hex, tx_hash)
        return tx_hash

    async def execute(self, data_hex: str, tx_hash: str) -> int:
        try:
            call = json.loads(bytes.fromhex(normalize_hex(data_hex)).decode("utf-8"))
        except ValueError as e:
            raise LedgerTransactionError(f"Undecodable calldata in {tx_hash}") from e
        if call.get("method") != "createEscrow":
            raise LedgerTransactionError(f"Unsupported call {call.get('method')!r} in {tx_hash}")

        request_hash, seller, token_address, amount, deadline = call["args"]
        escrow_id = self._next_id
        self._next_id += 1
        self._escrows[escrow_id] = Escrow(
            escrow_id=escrow_id,
            buyer=self._buyer,
            seller=seller,
            token_address=token_address,
            amount=Decimal(amount),
            request_hash=request_hash,
            deadline=int(deadline),
            created_at=int(self._clock()),
        )
        self._created_by_tx[tx_hash] = escrow_id
        return escrow_id

    async def escrow_id_for(self, tx_hash: str) -> int:
        escrow_id = self._created_by_tx.get(tx_hash)
        if escrow_id is None:
            raise LedgerTransactionError(f"Could not find EscrowCreated for {tx_hash}")
        return escrow_id

    def _escrow(self, escrow_id: int) -> Escrow:
        escrow = self._escrows.get(escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow", str(escrow_id))
        return escrow

    def _transition(self, escrow: Escrow, new_status: EscrowStatus) -> None:
        if escrow.is_terminal:
            raise AlreadySettledError(
                f"Escrow #{escrow.escrow_id} already {escrow.status.name}",
                escrow_id=escrow.escrow_id,
                status=escrow.status.name,
            )
        if not escrow.can_transition_to(new_status):
            raise EscrowStateError(
                f"Invalid transition {escrow.status.name} -> {new_status.name}",
                escrow_id=escrow.escrow_id,
                status=escrow.status.name,
            )
        escrow.status = new_status

    async def submit_response(self, escrow_id: int, response_hash: str) -> str:
        escrow = self._escrow(escrow_id)
        self._transition(escrow, EscrowStatus.RESPONSE_SUBMITTED)
        escrow.response_hash = response_hash
        return self._tx()

    async def settle(self, escrow_id: int, matched: bool) -> str:
        escrow = self._escrow(escrow_id)
        if escrow.status is EscrowStatus.CREATED:
            raise EscrowStateError(
                f"No response submitted for escrow #{escrow_id}",
                escrow_id=escrow_id,
                status=escrow.status.name,
            )
        self._transition(escrow, EscrowStatus.SETTLED if matched else EscrowStatus.REFUNDED)
        self.settle_calls[escrow_id] = self.settle_calls.get(escrow_id, 0) + 1
        return self._tx()

    async def verify_and_settle(self, escrow_id: int, delivery_proof: str) -> str:
        escrow = self._escrow(escrow_id)
        if escrow.status is EscrowStatus.RESPONSE_SUBMITTED and (
            normalize_hex(delivery_proof) != normalize_hex(escrow.response_hash or "")
        ):
            raise DeliveryProofMismatchError(escrow_id)
        return await self.settle(escrow_id, True)

    async def claim_refund(self, escrow_id: int) -> str:
        escrow = self._escrow(escrow_id)
        if self._clock() <= escrow.deadline:
            raise EscrowStateError(
                f"Escrow #{escrow_id} deadline has not passed",
                escrow_id=escrow_id,
                status=escrow.status.name,
            )
        self._transition(escrow, EscrowStatus.REFUNDED)
        return self._tx()

    async def emergency_refund(self, escrow_id: int) -> str:
        escrow = self._escrow(escrow_id)
        window = max(0, escrow.deadline - escrow.created_at)
        if self._clock() <= escrow.created_at + window * self._grace_multiple:
            raise EscrowStateError(
                f"Escrow #{escrow_id} grace period has not elapsed",
                escrow_id=escrow_id,
                status=escrow.status.name,
            )
        self._transition(escrow, EscrowStatus.REFUNDED)
        return self._tx()

    async def get_escrow(self, escrow_id: int) -> Escrow:
        return self._escrow(escrow_id)

    def escrows(self) -> list[Escrow]:
        return list(self._escrows.values())


__all__ = [
    "EscrowStatus",
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Escrow",
    "SettlementDecision",
    "EscrowCreation",
    "SettlementOutcome",
    "EscrowLedger",
    "EscrowAccessor",
    "InMemoryEscrowLedger",
    "hash_text",
    "delivery_hash",
]
