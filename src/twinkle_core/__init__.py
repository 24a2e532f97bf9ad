"""Core procurement-settlement protocol for Twinkle."""

from .config import TwinkleSettings, load_settings
from .mandates import IntentMandate, CartMandate, PaymentMandate, MandateChain, MandateTracker
from .events import EventType, AgentEvent, EventLog
from .commitment import (
    Layer,
    ALL_LAYERS,
    CommitmentLayer,
    CommitmentPrimitive,
    CommitmentResult,
    InMemoryCommitmentPrimitive,
)
from .escrow import (
    EscrowStatus,
    Escrow,
    EscrowAccessor,
    EscrowLedger,
    InMemoryEscrowLedger,
    SettlementDecision,
)
from .identity import AgentMetadata, IdentityRegistry, InMemoryIdentityRegistry, ReputationEntry
from .brain import AgentBrain, EncryptionDecision, ProviderSelection, QualityVerdict
from .purchase import HttpPurchaseClient, PaymentSigner, PurchaseCapability, PurchaseResult
from .receipts import AgentReceipt, ProviderResult, MarketplaceReceipt, build_receipt
from .orchestrator import ProcurementOrchestrator, ProviderSpec, RunConfig
from .marketplace import Act, Marketplace
from .exceptions import TwinkleException

__all__ = [
    "TwinkleSettings",
    "load_settings",
    "IntentMandate",
    "CartMandate",
    "PaymentMandate",
    "MandateChain",
    "MandateTracker",
    "EventType",
    "AgentEvent",
    "EventLog",
    "Layer",
    "ALL_LAYERS",
    "CommitmentLayer",
    "CommitmentPrimitive",
    "CommitmentResult",
    "InMemoryCommitmentPrimitive",
    "EscrowStatus",
    "Escrow",
    "EscrowAccessor",
    "EscrowLedger",
    "InMemoryEscrowLedger",
    "SettlementDecision",
    "AgentMetadata",
    "IdentityRegistry",
    "InMemoryIdentityRegistry",
    "ReputationEntry",
    "AgentBrain",
    "EncryptionDecision",
    "ProviderSelection",
    "QualityVerdict",
    "HttpPurchaseClient",
    "PaymentSigner",
    "PurchaseCapability",
    "PurchaseResult",
    "AgentReceipt",
    "ProviderResult",
    "MarketplaceReceipt",
    "build_receipt",
    "ProcurementOrchestrator",
    "ProviderSpec",
    "RunConfig",
    "Act",
    "Marketplace",
    "TwinkleException",
]
