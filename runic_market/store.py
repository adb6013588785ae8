from __future__ import annotations

import threading
from collections.abc import Collection
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel

from runic_market.errors import ConflictError, NotFoundError
from runic_market.schemas import (
    Agent,
    Execution,
    ExecutionStatus,
    Offer,
    OfferStatus,
    ReputationEvent,
    Task,
    TaskStatus,
)

M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class Store(Protocol):
    """Persistence collaborator.

    Each call is atomic on its own; there are no multi-call transactions.
    ``update_*`` calls are compare-and-set on the status the caller observed,
    and ``create_offer`` enforces at most one PENDING offer per (task, agent).
    """

    def create_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, *, statuses: Collection[TaskStatus] | None = ...) -> list[Task]: ...

    def update_task(self, task_id: str, *, expected_status: TaskStatus, **changes: Any) -> Task: ...

    def create_agent(self, agent: Agent) -> Agent: ...

    def get_agent(self, agent_id: str) -> Agent | None: ...

    def list_agents(self) -> list[Agent]: ...

    def update_agent(self, agent_id: str, **changes: Any) -> Agent: ...

    def create_offer(
        self, offer: Offer, *, task_statuses: Collection[TaskStatus] | None = ...
    ) -> Offer: ...

    def get_offer(self, offer_id: str) -> Offer | None: ...

    def list_offers(self, task_id: str, *, status: OfferStatus | None = ...) -> list[Offer]: ...

    def update_offer_status(
        self, offer_id: str, status: OfferStatus, *, expected_status: OfferStatus = ...
    ) -> Offer: ...

    def append_reputation_event(self, event: ReputationEvent) -> ReputationEvent: ...

    def list_reputation_events(
        self, agent_id: str, *, limit: int | None = ...
    ) -> list[ReputationEvent]: ...

    def create_execution(self, execution: Execution) -> Execution: ...

    def get_execution(self, execution_id: str) -> Execution | None: ...

    def find_execution(
        self, *, task_id: str, agent_id: str, status: ExecutionStatus
    ) -> Execution | None: ...

    def list_executions(
        self, *, task_id: str | None = ..., agent_id: str | None = ...
    ) -> list[Execution]: ...

    def update_execution(
        self, execution_id: str, *, expected_status: ExecutionStatus, **changes: Any
    ) -> Execution: ...


def _apply(model: M, changes: dict[str, Any]) -> M:
    # Re-validate so model-level invariants (e.g. task assignment vs status) hold after every write.
    data = model.model_dump()
    data.update(changes)
    return type(model).model_validate(data)


class InMemoryStore:
    """Thread-safe in-process Store.

    Intended for tests, the CLI simulator, and single-process deployments.
    Models are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._agents: dict[str, Agent] = {}
        self._offers: dict[str, Offer] = {}
        # (task_id, agent_id) -> offer_id of the PENDING offer
        self._pending_offer_index: dict[tuple[str, str], str] = {}
        self._reputation_events: dict[str, list[ReputationEvent]] = {}
        self._executions: dict[str, Execution] = {}

    # Tasks

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise ConflictError(f"Task with id '{task.id}' already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
            return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task is not None else None

    def list_tasks(self, *, statuses: Collection[TaskStatus] | None = None) -> list[Task]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if statuses is None or t.status in statuses
            ]

    def update_task(self, task_id: str, *, expected_status: TaskStatus, **changes: Any) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError("Task", task_id)
            if current.status != expected_status:
                raise ConflictError(
                    f"Task '{task_id}' is {current.status.value}, expected {expected_status.value}"
                )
            updated = _apply(current, changes)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    # Agents

    def create_agent(self, agent: Agent) -> Agent:
        with self._lock:
            if agent.id in self._agents:
                raise ConflictError(f"Agent with id '{agent.id}' already exists")
            self._agents[agent.id] = agent.model_copy(deep=True)
            return agent.model_copy(deep=True)

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy(deep=True) if agent is not None else None

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._agents.values()]

    def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        with self._lock:
            current = self._agents.get(agent_id)
            if current is None:
                raise NotFoundError("Agent", agent_id)
            updated = _apply(current, changes)
            self._agents[agent_id] = updated
            return updated.model_copy(deep=True)

    # Offers

    def create_offer(
        self, offer: Offer, *, task_statuses: Collection[TaskStatus] | None = None
    ) -> Offer:
        with self._lock:
            task = self._tasks.get(offer.task_id)
            if task is None:
                raise NotFoundError("Task", offer.task_id)
            if task_statuses is not None and task.status not in task_statuses:
                raise ConflictError(
                    f"Task '{offer.task_id}' is {task.status.value}; offer no longer accepted"
                )
            if offer.id in self._offers:
                raise ConflictError(f"Offer with id '{offer.id}' already exists")

            key = (offer.task_id, offer.agent_id)
            if offer.status == OfferStatus.PENDING:
                if key in self._pending_offer_index:
                    raise ConflictError(
                        "Agent already has a pending offer for this Task. "
                        "Cancel it first to submit a new one."
                    )
                self._pending_offer_index[key] = offer.id
            self._offers[offer.id] = offer.model_copy(deep=True)
            return offer.model_copy(deep=True)

    def get_offer(self, offer_id: str) -> Offer | None:
        with self._lock:
            offer = self._offers.get(offer_id)
            return offer.model_copy(deep=True) if offer is not None else None

    def list_offers(self, task_id: str, *, status: OfferStatus | None = None) -> list[Offer]:
        with self._lock:
            return [
                o.model_copy(deep=True)
                for o in self._offers.values()
                if o.task_id == task_id and (status is None or o.status == status)
            ]

    def update_offer_status(
        self,
        offer_id: str,
        status: OfferStatus,
        *,
        expected_status: OfferStatus = OfferStatus.PENDING,
    ) -> Offer:
        with self._lock:
            current = self._offers.get(offer_id)
            if current is None:
                raise NotFoundError("Offer", offer_id)
            if current.status != expected_status:
                raise ConflictError(
                    f"Offer '{offer_id}' is {current.status.value}, expected {expected_status.value}"
                )
            updated = _apply(current, {"status": status})
            self._offers[offer_id] = updated

            key = (updated.task_id, updated.agent_id)
            if current.status == OfferStatus.PENDING and status != OfferStatus.PENDING:
                self._pending_offer_index.pop(key, None)
            return updated.model_copy(deep=True)

    # Reputation

    def append_reputation_event(self, event: ReputationEvent) -> ReputationEvent:
        with self._lock:
            self._reputation_events.setdefault(event.agent_id, []).append(event)
            return event

    def list_reputation_events(
        self, agent_id: str, *, limit: int | None = None
    ) -> list[ReputationEvent]:
        """Events for ``agent_id``, newest first."""
        with self._lock:
            events = list(reversed(self._reputation_events.get(agent_id, [])))
        if limit is not None:
            events = events[: max(0, limit)]
        return events

    # Executions

    def create_execution(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._executions:
                raise ConflictError(f"Execution with id '{execution.id}' already exists")
            if not execution.status.terminal:
                for existing in self._executions.values():
                    if existing.task_id == execution.task_id and not existing.status.terminal:
                        raise ConflictError(
                            f"Task '{execution.task_id}' already has an active execution "
                            f"('{existing.id}', {existing.status.value})"
                        )
            self._executions[execution.id] = execution.model_copy(deep=True)
            return execution.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution is not None else None

    def find_execution(
        self, *, task_id: str, agent_id: str, status: ExecutionStatus
    ) -> Execution | None:
        with self._lock:
            for e in self._executions.values():
                if e.task_id == task_id and e.agent_id == agent_id and e.status == status:
                    return e.model_copy(deep=True)
            return None

    def list_executions(
        self, *, task_id: str | None = None, agent_id: str | None = None
    ) -> list[Execution]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if (task_id is None or e.task_id == task_id)
                and (agent_id is None or e.agent_id == agent_id)
            ]

    def update_execution(
        self, execution_id: str, *, expected_status: ExecutionStatus, **changes: Any
    ) -> Execution:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise NotFoundError("Execution", execution_id)
            if current.status != expected_status:
                raise ConflictError(
                    f"Execution '{execution_id}' is {current.status.value}, "
                    f"expected {expected_status.value}"
                )
            updated = _apply(current, changes)
            self._executions[execution_id] = updated
            return updated.model_copy(deep=True)
