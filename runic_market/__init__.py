from __future__ import annotations

from runic_market.auction import AuctionCoordinator, AuctionPhase, AuctionSnapshot
from runic_market.config import MarketSettings, load_settings
from runic_market.errors import (
    AuctionError,
    ConflictError,
    ErrorKind,
    ErrorStatus,
    MarketError,
    NotFoundError,
    ValidationError,
)
from runic_market.events import EventBus, InMemoryEventBus, Notification, NullEventBus
from runic_market.execution import ExecutionCoordinator, SynchronousDispatcher
from runic_market.ledger import HashChainedPaymentLedger, InMemoryPaymentLedger, Ledger
from runic_market.logging import configure_logging, get_logger
from runic_market.market import Market
from runic_market.reputation import ReputationPolicy, ReputationTracker
from runic_market.scenario import ScenarioSpec, load_scenario, run_scenario
from runic_market.schemas import (
    Agent,
    AuctionResult,
    EventType,
    Execution,
    ExecutionOutcome,
    ExecutionStatus,
    Offer,
    OfferStatus,
    PaymentRef,
    ReputationEvent,
    Task,
    TaskStatus,
)
from runic_market.scoring import OfferScorer, ScoringWeights
from runic_market.stats import AgentStatsProjector
from runic_market.status import StatusGuard
from runic_market.store import InMemoryStore, Store

__all__ = [
    "__version__",
    # Facade
    "Market",
    "MarketSettings",
    "load_settings",
    # Coordinators
    "AuctionCoordinator",
    "AuctionPhase",
    "AuctionSnapshot",
    "ExecutionCoordinator",
    "SynchronousDispatcher",
    "ReputationTracker",
    "ReputationPolicy",
    "AgentStatsProjector",
    "OfferScorer",
    "ScoringWeights",
    "StatusGuard",
    # Collaborators
    "Store",
    "InMemoryStore",
    "Ledger",
    "HashChainedPaymentLedger",
    "InMemoryPaymentLedger",
    "EventBus",
    "InMemoryEventBus",
    "NullEventBus",
    "Notification",
    # Schemas
    "Task",
    "TaskStatus",
    "Agent",
    "Offer",
    "OfferStatus",
    "Execution",
    "ExecutionStatus",
    "ExecutionOutcome",
    "ReputationEvent",
    "PaymentRef",
    "AuctionResult",
    "EventType",
    # Errors
    "MarketError",
    "ErrorKind",
    "ErrorStatus",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "AuctionError",
    # Logging
    "configure_logging",
    "get_logger",
    # Scenario
    "ScenarioSpec",
    "load_scenario",
    "run_scenario",
]

__version__ = "0.1.0"
