"""Ordered lifecycle event log for procurement runs.

Every step of a run is appended here in emission order and fanned out to
subscribers. Observers (dashboards, SSE bridges, audit sinks) subscribe with
an fnmatch pattern and never sit on the run's control path: a failing
subscriber is logged and the run carries on.
"""
from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from .logging import mask_sensitive_data

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of lifecycle events."""

    # Run lifecycle
    AGENT_START = "agent.start"
    AGENT_RECEIPT = "agent.receipt"
    AGENT_ERROR = "agent.error"

    # Encryption
    ENCRYPTION_DECISION = "encryption.decision"
    BITE_ENCRYPTING = "bite.encrypting"
    BITE_COMMITTED = "bite.committed"
    BITE_VERIFIED = "bite.verified"

    # Providers
    PROVIDER_DISCOVERED = "provider.discovered"
    PROVIDER_SELECTED = "provider.selected"

    # Pay-per-call purchase
    X402_CHALLENGE = "x402.challenge"
    X402_PAYMENT = "x402.payment"
    X402_SUCCESS = "x402.success"

    # Escrow
    ESCROW_CREATED = "escrow.created"
    ESCROW_RESPONSE = "escrow.response"
    ESCROW_SETTLED = "escrow.settled"

    # Evaluation
    QUALITY_EVALUATED = "quality.evaluated"
    REPUTATION_UPDATED = "reputation.updated"
    SYNTHESIS_COMPLETE = "synthesis.complete"

    # Mandates (AP2)
    AP2_INTENT = "ap2.intent"
    AP2_CART = "ap2.cart"
    AP2_PAYMENT = "ap2.payment"
    AP2_SETTLED = "ap2.settled"
    AP2_COMPLETE = "ap2.complete"


def _serialize(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _serialize(v) for k, v in data.items()}
    elif isinstance(data, (list, tuple)):
        return [_serialize(v) for v in data]
    elif isinstance(data, Decimal):
        return str(data)
    elif isinstance(data, datetime):
        return data.isoformat()
    elif isinstance(data, Enum):
        return data.value
    return data


@dataclass(slots=True)
class AgentEvent:
    """A single lifecycle event."""

    event_type: EventType
    phase: int
    data: dict[str, Any] = field(default_factory=dict)
    commitment: Optional[dict[str, Any]] = None
    event_id: str = field(default_factory=lambda: f"evt_{uuid4().hex[:16]}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        result = {
            "id": self.event_id,
            "type": self.event_type.value,
            "phase": self.phase,
            "timestamp": self.created_at.isoformat(),
            "data": _serialize(self.data),
        }
        if self.commitment is not None:
            result["bite"] = _serialize(self.commitment)
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


Handler = Callable[[AgentEvent], Any]


@dataclass
class EventLog:
    """Append-only event stream for one run.

    Example:
        log = EventLog()
        log.subscribe("bite.*", on_commitment)
        await log.emit(EventType.BITE_COMMITTED, phase=2, data={"txHash": tx})
    """

    _events: list[AgentEvent] = field(default_factory=list)
    _subscribers: dict[str, list[Handler]] = field(default_factory=dict)
    _background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def subscribe(self, event_pattern: str, handler: Handler) -> None:
        """Subscribe a sync or async handler to events matching a pattern."""
        handlers = self._subscribers.setdefault(event_pattern, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_pattern: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event_pattern)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._subscribers[event_pattern]

    async def emit(
        self,
        event_type: EventType,
        phase: int,
        data: Optional[dict[str, Any]] = None,
        commitment: Optional[dict[str, Any]] = None,
        fire_and_forget: bool = False,
    ) -> AgentEvent:
        """Append an event and deliver it to matching subscribers.

        Payloads are masked before they are stored so credentials never reach
        an observer. With ``fire_and_forget`` handlers run as background tasks;
        otherwise they complete before emit returns, preserving order.
        """
        event = AgentEvent(
            event_type=event_type,
            phase=phase,
            data=mask_sensitive_data(data or {}),
            commitment=commitment,
        )
        self._events.append(event)

        matching = [
            handler
            for pattern, handlers in self._subscribers.items()
            if fnmatch.fnmatch(event_type.value, pattern)
            for handler in handlers
        ]
        if matching:
            if fire_and_forget:
                self._schedule_background(self._execute_handlers(event, matching))
            else:
                await self._execute_handlers(event, matching)

        logger.debug(f"Emitted {event_type.value} (phase {phase}) to {len(matching)} handlers")
        return event

    async def _execute_handlers(self, event: AgentEvent, handlers: list[Handler]) -> None:
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)!s} failed for "
                    f"{event.event_type.value}: {e}",
                    exc_info=True,
                )

    def _schedule_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for handlers scheduled with ``fire_and_forget``."""
        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)

    def all(self) -> list[AgentEvent]:
        return list(self._events)

    def count(self) -> int:
        return len(self._events)

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self._events if e.event_type == event_type]


__all__ = ["EventType", "AgentEvent", "EventLog"]
