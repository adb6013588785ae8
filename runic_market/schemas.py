from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_AUCTION = "IN_AUCTION"
    ASSIGNED = "ASSIGNED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Statuses in which a Task must carry an assigned agent (and no others may).
ASSIGNED_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.ASSIGNED, TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED}
)


class OfferStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILURE)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"


class EventType(str, Enum):
    TASK_CREATED = "task_created"
    TASK_AVAILABLE = "task_available"
    TASK_ASSIGNED = "task_assigned"
    TASK_CANCELLED = "task_cancelled"

    AUCTION_STARTED = "auction_started"
    OFFER_CREATED = "offer_created"
    OFFER_CANCELLED = "offer_cancelled"
    AUCTION_COMPLETED = "auction_completed"
    AUCTION_NO_OFFERS = "auction_no_offers"
    AUCTION_CANCELLED = "auction_cancelled"

    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    PAYMENT_CREATED = "payment_created"
    REPUTATION_UPDATED = "reputation_updated"


def _normalize_capabilities(v: Any) -> Any:
    if v is None:
        return set()
    if isinstance(v, str):
        return {v.strip()} if v.strip() else set()
    if isinstance(v, (list, tuple, set, frozenset)):
        return {str(c).strip() for c in v if str(c).strip()}
    return v


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.OPEN
    budget: int = Field(ge=1)
    payment_token_symbol: str = "SOL"
    required_capabilities: set[str] = Field(default_factory=set)
    assigned_agent_id: str | None = None
    deadline: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("required_capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, v: Any) -> Any:
        return _normalize_capabilities(v)

    @model_validator(mode="after")
    def _assignment_matches_status(self) -> "Task":
        needs_agent = self.status in ASSIGNED_STATUSES
        if needs_agent and not self.assigned_agent_id:
            raise ValueError(f"task in status {self.status.value} must have an assigned agent")
        if not needs_agent and self.assigned_agent_id:
            raise ValueError(f"task in status {self.status.value} cannot have an assigned agent")
        return self


class Agent(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    wallet_address: str | None = None
    capabilities: set[str] = Field(default_factory=set)
    is_active: bool = True
    reputation_score: float = Field(default=3.0, ge=0.0, le=5.0)

    total_tasks_completed: int = Field(default=0, ge=0)
    total_tasks_failed: int = Field(default=0, ge=0)
    avg_completion_seconds: float | None = None

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, v: Any) -> Any:
        return _normalize_capabilities(v)

    def has_capabilities(self, required: set[str]) -> bool:
        return required <= self.capabilities


class Offer(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    agent_id: str
    price: int = Field(ge=1)
    eta_seconds: int = Field(ge=1)
    score: float
    status: OfferStatus = OfferStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class ReputationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    agent_id: str
    task_id: str | None = None
    delta_score: float
    reason: str
    created_at: datetime = Field(default_factory=utcnow)


class Execution(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    agent_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    result_summary: str | None = None
    signed_result_payload: str | None = None
    proof_hash: str | None = None
    error_message: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class ExecutionOutcome(BaseModel):
    success: bool
    result_summary: str | None = None
    signed_result_payload: str | None = None
    proof_hash: str | None = None
    error_message: str | None = None

    @field_validator("error_message")
    @classmethod
    def _blank_error_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class PaymentRef(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    agent_id: str
    amount: int = Field(ge=0)
    token_symbol: str
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)

    # Populated by hash-chained ledgers only.
    prev_hash: str | None = None
    hash: str | None = None


class AuctionResult(BaseModel):
    task_id: str
    winning_offer: Offer | None = None
    total_offers: int = Field(default=0, ge=0)
    auction_duration_ms: int = Field(default=0, ge=0)


class ReputationSummary(BaseModel):
    agent_id: str
    current_score: float
    total_events: int = 0
    positive_events: int = 0
    negative_events: int = 0
    average_delta: float = 0.0
