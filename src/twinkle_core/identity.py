"""ERC-8004 style identity and reputation registry for service providers."""
from __future__ import annotations

import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .exceptions import NotFoundError


@dataclass(slots=True)
class AgentMetadata:
    """Provider metadata registered alongside its numeric handle."""

    name: str
    uri: str = ""
    capabilities: list[str] = field(default_factory=list)  # e.g. ["data-query"]
    price: str = ""  # advertised price per call, e.g. "0.02"

    def to_dict(self) -> dict[str, str]:
        """Flatten to the string key/value pairs the registry stores."""
        return {
            "name": self.name,
            "uri": self.uri,
            "capabilities": ",".join(self.capabilities),
            "price": self.price,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> AgentMetadata:
        capabilities = data.get("capabilities", "")
        return cls(
            name=data["name"],
            uri=data.get("uri", ""),
            capabilities=[c for c in capabilities.split(",") if c],
            price=data.get("price", ""),
        )


@dataclass(slots=True)
class AgentIdentity:
    agent_id: int
    owner: str
    metadata: dict[str, str]
    created_at: int


@dataclass(slots=True)
class ReputationEntry:
    """Feedback from the buyer about one provider."""

    agent_id: int  # Handle receiving reputation
    value: int  # signed delta, e.g. +80 or -40
    tag1: str  # e.g. "quality"
    tag2: str = ""  # e.g. "reliable" / "poor"
    endpoint: str = ""
    timestamp: int = field(default_factory=lambda: int(time.time()))
    transaction_hash: Optional[str] = None

    @property
    def tags(self) -> tuple[str, str]:
        return (self.tag1, self.tag2)


class IdentityRegistry(ABC):
    """
    Abstract identity + reputation registry.

    Every provider engaged in a run is registered once to obtain a numeric
    handle; settlement outcomes are then fed back as reputation deltas.
    """

    @abstractmethod
    async def register(self, owner: str, metadata: AgentMetadata) -> int:
        """Register a provider and return its numeric handle."""
        ...

    @abstractmethod
    async def get_agent(self, agent_id: int) -> AgentIdentity | None:
        ...

    @abstractmethod
    async def submit_reputation(self, entry: ReputationEntry) -> str:
        """Record a reputation delta; returns the transaction reference."""
        ...

    @abstractmethod
    async def get_reputation(self, agent_id: int) -> list[ReputationEntry]:
        ...

    @abstractmethod
    async def get_reputation_score(self, agent_id: int) -> float:
        """Average feedback value for a handle (0.0 when none)."""
        ...


class InMemoryIdentityRegistry(IdentityRegistry):
    """In-memory implementation for testing/development."""

    def __init__(self) -> None:
        self._agents: dict[int, AgentIdentity] = {}
        self._reputation: dict[int, list[ReputationEntry]] = {}
        self._next_id = 1

    async def register(self, owner: str, metadata: AgentMetadata) -> int:
        agent_id = self._next_id
        self._next_id += 1
        self._agents[agent_id] = AgentIdentity(
            agent_id=agent_id,
            owner=owner,
            metadata=metadata.to_dict(),
            created_at=int(time.time()),
        )
        return agent_id

    async def get_agent(self, agent_id: int) -> AgentIdentity | None:
        return self._agents.get(agent_id)

    async def submit_reputation(self, entry: ReputationEntry) -> str:
        if entry.agent_id not in self._agents:
            raise NotFoundError("Agent", str(entry.agent_id))
        entry.transaction_hash = "0x" + secrets.token_hex(32)
        self._reputation.setdefault(entry.agent_id, []).append(entry)
        return entry.transaction_hash

    async def get_reputation(self, agent_id: int) -> list[ReputationEntry]:
        return list(self._reputation.get(agent_id, []))

    async def get_reputation_score(self, agent_id: int) -> float:
        entries = await self.get_reputation(agent_id)
        if not entries:
            return 0.0
        return sum(e.value for e in entries) / len(entries)


__all__ = [
    "AgentMetadata",
    "AgentIdentity",
    "ReputationEntry",
    "IdentityRegistry",
    "InMemoryIdentityRegistry",
]
