"""Encrypted commitments around a procurement run.

The commitment layer wraps a threshold-encryption primitive: payloads are
committed as encrypted transactions and later decrypted by the network,
which lets the buyer prove what it planned before anything was revealed.

Four logical layers exist:

- ``strategy``: the execution plan, committed before any provider is engaged
- ``query``: the raw query text
- ``escrow``: escrow creation sent as an encrypted transaction
- ``settlement``: the full batch of pay/refund decisions, revealed at once

A CommitmentLayer instance is owned by exactly one run and holds that run's
encryption counters.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Protocol, Sequence, runtime_checkable

from .constants import DecryptPolling, LoggingConfig
from .events import EventLog, EventType
from .exceptions import CommitFailedError, CommitmentError, DecryptTimeoutError
from .retry import RetryExhausted, RetryStats, fixed_interval, retry_async

if TYPE_CHECKING:
    from .escrow import SettlementDecision

logger = logging.getLogger(__name__)


class Layer(str, Enum):
    STRATEGY = "strategy"
    ESCROW = "escrow"
    QUERY = "query"
    SETTLEMENT = "settlement"


ALL_LAYERS: tuple[Layer, ...] = (Layer.STRATEGY, Layer.ESCROW, Layer.QUERY, Layer.SETTLEMENT)

# Phase in which each layer is exercised
_LAYER_PHASE = {
    Layer.STRATEGY: 2,
    Layer.QUERY: 3,
    Layer.ESCROW: 6,
    Layer.SETTLEMENT: 8,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value else None


def to_hex(text: str) -> str:
    return text.encode("utf-8").hex()


def json_hex(payload: Any) -> str:
    """Serialize a payload to compact JSON and hex-encode it."""
    return to_hex(json.dumps(payload, separators=(",", ":"), default=str))


def normalize_hex(value: str) -> str:
    value = value.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    return value.lower()


def payloads_match(observed_hex: str, expected_hex: str) -> bool:
    """Compare a decrypted payload with the committed one.

    Accepts an exact match or an observed payload that contains the expected
    one, since the decryption oracle may return padded calldata.
    """
    observed = normalize_hex(observed_hex)
    expected = normalize_hex(expected_hex)
    return observed == expected or expected in observed


# =============================================================================
# Primitive port
# =============================================================================

@dataclass(frozen=True, slots=True)
class PrimitiveReceipt:
    """Outcome of one encrypted transaction."""

    tx_hash: str
    success: bool
    sent_at: datetime
    received_at: datetime
    gas_used: Optional[int] = None


@runtime_checkable
class EncryptedTarget(Protocol):
    """Contract that can receive encrypted transactions once decrypted."""

    @property
    def address(self) -> str: ...

    def execute(self, data_hex: str, tx_hash: str) -> Awaitable[Any]: ...


class CommitmentPrimitive(Protocol):
    """Threshold-encryption primitive the commitment layer is built on."""

    async def commit(self, data_hex: str) -> PrimitiveReceipt:
        """Send ``data_hex`` as an encrypted self-addressed transaction."""
        ...

    async def encrypt_and_send(self, to: str, data_hex: str) -> PrimitiveReceipt:
        """Send ``data_hex`` as an encrypted call to contract ``to``."""
        ...

    async def decrypt(self, tx_hash: str) -> str:
        """Return the decrypted payload; raises while it is not yet available."""
        ...


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True, slots=True)
class VerifyResult:
    verified: bool
    observed: str
    decrypted_at: datetime
    attempts: int


@dataclass(frozen=True, slots=True)
class CommitmentResult:
    """Immutable record of one commit call, consumed by receipt assembly."""

    layer: Layer
    tx_hash: str
    sent_at: datetime
    received_at: datetime
    data_preview: str
    encrypted: bool = True
    decrypted_at: Optional[datetime] = None
    verified: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        timing: dict[str, Any] = {
            "sendMs": _epoch_ms(self.sent_at),
            "receiptMs": _epoch_ms(self.received_at),
        }
        if self.decrypted_at is not None:
            timing["decryptMs"] = _epoch_ms(self.decrypted_at)
        result: dict[str, Any] = {
            "layer": self.layer.value,
            "txHash": self.tx_hash,
            "encrypted": self.encrypted,
            "timing": timing,
            "dataPreview": self.data_preview,
        }
        if self.verified is not None:
            result["verified"] = self.verified
        return result


@dataclass(frozen=True, slots=True)
class CommitmentStats:
    count: int
    messages: int
    distinct_layers: tuple[Layer, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "messages": self.messages,
            "distinctLayers": [layer.value for layer in self.distinct_layers],
        }


# =============================================================================
# Commitment layer
# =============================================================================

class CommitmentLayer:
    """Commit, then asynchronously decrypt-and-verify, for one run."""

    def __init__(
        self,
        primitive: CommitmentPrimitive,
        events: EventLog,
        poll_interval: float = DecryptPolling.INTERVAL_SECONDS,
        max_attempts: int = DecryptPolling.MAX_ATTEMPTS,
        timeout_seconds: float = DecryptPolling.TIMEOUT_SECONDS,
    ) -> None:
        self._primitive = primitive
        self._events = events
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._timeout_seconds = timeout_seconds
        self._encryptions = 0
        self._messages = 0
        self._layers: list[Layer] = []

    def _record(self, layer: Layer, message: bool) -> None:
        self._encryptions += 1
        if message:
            self._messages += 1
        if layer not in self._layers:
            self._layers.append(layer)

    async def commit(self, payload_hex: str, layer: Layer) -> PrimitiveReceipt:
        """Commit an opaque payload; raises CommitFailedError on non-success."""
        try:
            receipt = await self._primitive.commit(payload_hex)
        except CommitmentError:
            raise
        except Exception as e:
            raise CommitFailedError(f"Commit failed for layer {layer.value}: {e}", layer=layer.value) from e

        if not receipt.success:
            raise CommitFailedError(
                f"Commitment primitive reported failure for layer {layer.value}",
                layer=layer.value,
                tx_hash=receipt.tx_hash,
            )
        self._record(layer, message=True)
        return receipt

    async def send_encrypted(
        self,
        to: str,
        data_hex: str,
        layer: Layer = Layer.ESCROW,
        details: Optional[dict[str, Any]] = None,
    ) -> PrimitiveReceipt:
        """Send a contract call as an encrypted transaction.

        Confidentiality only: there is no decrypt round-trip on this path.
        """
        phase = _LAYER_PHASE[layer]
        await self._events.emit(
            EventType.BITE_ENCRYPTING,
            phase,
            {"layer": layer.value, **(details or {})},
        )
        try:
            receipt = await self._primitive.encrypt_and_send(to, data_hex)
        except CommitmentError:
            raise
        except Exception as e:
            raise CommitFailedError(f"Encrypted send to {to} failed: {e}", layer=layer.value) from e

        if not receipt.success:
            raise CommitFailedError(
                f"Encrypted transaction to {to} reverted",
                layer=layer.value,
                tx_hash=receipt.tx_hash,
            )
        self._record(layer, message=False)

        await self._events.emit(
            EventType.BITE_COMMITTED,
            phase,
            {
                "txHash": receipt.tx_hash,
                "timingMs": _elapsed_ms(receipt),
                "layer": layer.value,
            },
            commitment={"encrypted": True, "txHash": receipt.tx_hash, "layer": layer.value},
        )
        return receipt

    async def decrypt_and_verify(self, tx_hash: str, expected_hex: str) -> VerifyResult:
        """Poll the decryption oracle and compare against the committed payload.

        Raises DecryptTimeoutError when nothing arrives within the attempt
        budget or the wall-clock timeout, whichever comes first.
        """
        stats = RetryStats()
        config = fixed_interval(self._poll_interval, self._max_attempts)
        try:
            observed = await asyncio.wait_for(
                retry_async(self._primitive.decrypt, tx_hash, config=config, stats=stats),
                timeout=self._timeout_seconds,
            )
        except (RetryExhausted, asyncio.TimeoutError) as e:
            logger.warning(
                "Decrypt of %s gave up after %d attempts", tx_hash, stats.attempts,
            )
            raise DecryptTimeoutError(tx_hash, self._timeout_seconds, stats.attempts) from e

        return VerifyResult(
            verified=payloads_match(observed, expected_hex),
            observed=observed,
            decrypted_at=_utcnow(),
            attempts=stats.attempts,
        )

    async def _commit_layer(
        self,
        layer: Layer,
        payload_hex: str,
        encrypting_details: dict[str, Any],
    ) -> CommitmentResult:
        phase = _LAYER_PHASE[layer]
        await self._events.emit(
            EventType.BITE_ENCRYPTING,
            phase,
            {"layer": layer.value, **encrypting_details},
        )

        receipt = await self.commit(payload_hex, layer)
        await self._events.emit(
            EventType.BITE_COMMITTED,
            phase,
            {"txHash": receipt.tx_hash, "timingMs": _elapsed_ms(receipt), "layer": layer.value},
            commitment={"encrypted": True, "txHash": receipt.tx_hash, "layer": layer.value},
        )

        check = await self.decrypt_and_verify(receipt.tx_hash, payload_hex)
        await self._events.emit(
            EventType.BITE_VERIFIED,
            phase,
            {"txHash": receipt.tx_hash, "verified": check.verified, "layer": layer.value},
        )
        if not check.verified:
            logger.warning("Decrypted %s commitment %s does not match", layer.value, receipt.tx_hash)

        return CommitmentResult(
            layer=layer,
            tx_hash=receipt.tx_hash,
            sent_at=receipt.sent_at,
            received_at=receipt.received_at,
            decrypted_at=check.decrypted_at,
            data_preview=payload_hex[:40],
            verified=check.verified,
        )

    async def commit_strategy(self, strategy: dict[str, Any]) -> CommitmentResult:
        payload = json_hex(strategy)
        preview = json.dumps(strategy, separators=(",", ":"), default=str)
        return await self._commit_layer(
            Layer.STRATEGY,
            payload,
            {"dataSize": len(payload), "preview": preview[: LoggingConfig.PREVIEW_LENGTH]},
        )

    async def commit_query(self, query: str) -> CommitmentResult:
        payload = to_hex(query)
        return await self._commit_layer(
            Layer.QUERY,
            payload,
            {"dataSize": len(payload), "preview": query[:80]},
        )

    async def commit_settlements(self, decisions: Sequence["SettlementDecision"]) -> CommitmentResult:
        """Commit every settlement decision of the run as a single batch."""
        payload = json_hex([d.to_dict() for d in decisions])
        return await self._commit_layer(
            Layer.SETTLEMENT,
            payload,
            {
                "count": len(decisions),
                "preview": ", ".join(f"#{d.escrow_id}:{d.action}" for d in decisions),
            },
        )

    def stats(self) -> CommitmentStats:
        return CommitmentStats(
            count=self._encryptions,
            messages=self._messages,
            distinct_layers=tuple(self._layers),
        )


def _elapsed_ms(receipt: PrimitiveReceipt) -> int:
    return int((receipt.received_at - receipt.sent_at).total_seconds() * 1000)


# =============================================================================
# In-memory primitive
# =============================================================================

@dataclass
class InMemoryCommitmentPrimitive:
    """Process-local primitive for development and tests.

    Committed payloads become decryptable after ``decrypt_after_polls``
    unsuccessful polls. Encrypted sends to a registered target are executed
    against it immediately.
    """

    address: str = "0x" + "b0" * 20
    decrypt_after_polls: int = 0
    fail_commits: bool = False
    _payloads: dict[str, str] = field(default_factory=dict)
    _polls: dict[str, int] = field(default_factory=dict)
    _overrides: dict[str, str] = field(default_factory=dict)
    _targets: dict[str, EncryptedTarget] = field(default_factory=dict)
    sent: list[tuple[str, str, str]] = field(default_factory=list)

    def register_target(self, target: EncryptedTarget) -> None:
        self._targets[target.address.lower()] = target

    def set_decrypted(self, tx_hash: str, data_hex: str) -> None:
        """Make the oracle return ``data_hex`` for ``tx_hash``."""
        self._overrides[tx_hash] = data_hex

    async def _send(self, to: str, data_hex: str) -> PrimitiveReceipt:
        tx_hash = "0x" + secrets.token_hex(32)
        sent_at = _utcnow()
        data = data_hex if data_hex.startswith("0x") else "0x" + data_hex
        self._payloads[tx_hash] = data
        self.sent.append((tx_hash, to, data))
        return PrimitiveReceipt(
            tx_hash=tx_hash,
            success=not self.fail_commits,
            sent_at=sent_at,
            received_at=_utcnow(),
        )

    async def commit(self, data_hex: str) -> PrimitiveReceipt:
        return await self._send(self.address, data_hex)

    async def encrypt_and_send(self, to: str, data_hex: str) -> PrimitiveReceipt:
        receipt = await self._send(to, data_hex)
        target = self._targets.get(to.lower())
        if receipt.success and target is not None:
            await target.execute(data_hex, receipt.tx_hash)
        return receipt

    async def decrypt(self, tx_hash: str) -> str:
        if tx_hash not in self._payloads:
            raise CommitmentError(f"Unknown transaction {tx_hash}")
        polls = self._polls.get(tx_hash, 0)
        self._polls[tx_hash] = polls + 1
        if polls < self.decrypt_after_polls:
            raise CommitmentError(f"Decryption of {tx_hash} not yet available")
        return self._overrides.get(tx_hash, self._payloads[tx_hash])


__all__ = [
    "Layer",
    "ALL_LAYERS",
    "PrimitiveReceipt",
    "EncryptedTarget",
    "CommitmentPrimitive",
    "VerifyResult",
    "CommitmentResult",
    "CommitmentStats",
    "CommitmentLayer",
    "InMemoryCommitmentPrimitive",
    "to_hex",
    "json_hex",
    "normalize_hex",
    "payloads_match",
]
