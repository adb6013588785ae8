"""Composition root for the market core.

``Market`` wires the store, ledger, event bus, locks and coordinators
together explicitly; nothing in the package is a module-level singleton.
Callers that need finer control can build the coordinators themselves.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from runic_market.auction import AuctionCoordinator, TimerFactory, daemon_timer
from runic_market.config import MarketSettings
from runic_market.errors import NotFoundError, ValidationError, require_positive_int
from runic_market.events import EventBus, InMemoryEventBus, publish_safely
from runic_market.execution import Dispatcher, ExecutionCoordinator
from runic_market.ledger import HashChainedPaymentLedger, InMemoryPaymentLedger, Ledger
from runic_market.locks import KeyedLocks
from runic_market.logging import fmt_fields, get_logger
from runic_market.reputation import ReputationTracker
from runic_market.schemas import (
    Agent,
    EventType,
    Execution,
    ExecutionOutcome,
    Offer,
    Task,
    utcnow,
)
from runic_market.scoring import OfferScorer
from runic_market.stats import AgentStatsProjector
from runic_market.status import OFFER_ACCEPTING_STATUSES
from runic_market.store import InMemoryStore, Store

logger = get_logger("market")

_AGENT_MUTABLE_FIELDS = frozenset({"name", "description", "wallet_address", "capabilities", "is_active"})


def default_ledger(settings: MarketSettings) -> Ledger:
    if settings.payment_ledger_path is not None:
        return HashChainedPaymentLedger(settings.payment_ledger_path)
    return InMemoryPaymentLedger()


class Market:
    def __init__(
        self,
        settings: MarketSettings | None = None,
        *,
        store: Store | None = None,
        ledger: Ledger | None = None,
        bus: EventBus | None = None,
        timer_factory: TimerFactory = daemon_timer,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or MarketSettings()
        self.store: Store = store if store is not None else InMemoryStore()
        self.ledger: Ledger = ledger if ledger is not None else default_ledger(self.settings)
        self.bus: EventBus = bus if bus is not None else InMemoryEventBus()
        self.scorer = OfferScorer(self.settings.scoring)
        self._clock = clock

        self.task_locks = KeyedLocks("tasks")
        self.agent_locks = KeyedLocks("agents")

        self.reputation = ReputationTracker(
            store=self.store,
            policy=self.settings.reputation,
            agent_locks=self.agent_locks,
            bus=self.bus,
            clock=clock,
        )
        self.stats = AgentStatsProjector(store=self.store, agent_locks=self.agent_locks)
        self.auctions = AuctionCoordinator(
            store=self.store,
            scorer=self.scorer,
            window_ms=self.settings.auction_window_ms,
            bus=self.bus,
            task_locks=self.task_locks,
            timer_factory=timer_factory,
            clock=clock,
            monotonic=monotonic,
        )
        self.executions = ExecutionCoordinator(
            store=self.store,
            ledger=self.ledger,
            reputation=self.reputation,
            stats=self.stats,
            task_locks=self.task_locks,
            bus=self.bus,
            dispatcher=dispatcher,
            clock=clock,
        )

    # Tasks

    def create_task(
        self,
        *,
        title: str,
        budget: int,
        description: str = "",
        required_capabilities: Iterable[str] = (),
        deadline: datetime | None = None,
        token_symbol: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        if not title or not title.strip():
            raise ValidationError("title is required")
        require_positive_int("budget", budget)
        if deadline is not None and deadline <= self._clock():
            raise ValidationError("deadline must be in the future")

        fields: dict[str, Any] = {
            "title": title.strip(),
            "description": description,
            "budget": budget,
            "required_capabilities": set(required_capabilities),
            "deadline": deadline,
            "payment_token_symbol": token_symbol or self.settings.token_symbol,
            "created_at": self._clock(),
        }
        if task_id is not None:
            fields["id"] = task_id
        task = self.store.create_task(Task(**fields))

        logger.info(
            "Task created %s", fmt_fields(task_id=task.id, title=task.title, budget=task.budget)
        )
        publish_safely(self.bus, EventType.TASK_CREATED, {"task": task.model_dump(mode="json")})
        return task

    def get_task(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def cancel_task(self, task_id: str) -> Task:
        return self.auctions.cancel_task(task_id)

    def available_tasks(self, agent_id: str) -> list[Task]:
        """Tasks still taking offers whose requirements the agent covers."""
        agent = self.get_agent(agent_id)
        tasks = self.store.list_tasks(statuses=OFFER_ACCEPTING_STATUSES)
        return sorted(
            (t for t in tasks if agent.has_capabilities(t.required_capabilities)),
            key=lambda t: t.created_at,
            reverse=True,
        )

    def tasks_for_agent(self, agent_id: str) -> list[Task]:
        """Tasks assigned to the agent, newest first."""
        self.get_agent(agent_id)
        return sorted(
            (t for t in self.store.list_tasks() if t.assigned_agent_id == agent_id),
            key=lambda t: t.created_at,
            reverse=True,
        )

    # Agents

    def register_agent(
        self,
        *,
        name: str,
        capabilities: Iterable[str] = (),
        description: str | None = None,
        wallet_address: str | None = None,
        agent_id: str | None = None,
    ) -> Agent:
        if not name or not name.strip():
            raise ValidationError("name is required")
        fields: dict[str, Any] = {
            "name": name.strip(),
            "capabilities": set(capabilities),
            "description": description,
            "wallet_address": wallet_address,
            "reputation_score": self.settings.reputation.base_score,
            "created_at": self._clock(),
        }
        if agent_id is not None:
            fields["id"] = agent_id
        agent = self.store.create_agent(Agent(**fields))
        logger.info("Agent registered %s", fmt_fields(agent_id=agent.id, name=agent.name))
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def list_agents(
        self,
        *,
        is_active: bool | None = None,
        capability: str | None = None,
        search: str | None = None,
    ) -> list[Agent]:
        """Agents matching every given filter, best reputation first.

        ``search`` is a case-insensitive substring match on name or description.
        """
        needle = search.casefold() if search else None
        agents = []
        for agent in self.store.list_agents():
            if is_active is not None and agent.is_active != is_active:
                continue
            if capability and capability.strip() not in agent.capabilities:
                continue
            if needle and not (
                needle in agent.name.casefold()
                or needle in (agent.description or "").casefold()
            ):
                continue
            agents.append(agent)
        return sorted(agents, key=lambda a: a.reputation_score, reverse=True)

    def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        unknown = set(changes) - _AGENT_MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot update agent fields: {', '.join(sorted(unknown))}")
        with self.agent_locks.hold(agent_id):
            self.get_agent(agent_id)
            if "capabilities" in changes:
                changes["capabilities"] = set(changes["capabilities"] or ())
            return self.store.update_agent(agent_id, **changes)

    # Auctions

    def start_auction(self, task: Task | str) -> None:
        self.auctions.start_auction(task)

    def submit_offer(self, agent_id: str, task_id: str, price: int, eta_seconds: int) -> Offer:
        return self.auctions.submit_offer(agent_id, task_id, price, eta_seconds)

    def cancel_offer(self, offer_id: str, agent_id: str) -> Offer:
        return self.auctions.cancel_offer(offer_id, agent_id)

    def cancel_auction(self, task_id: str) -> None:
        self.auctions.cancel_auction(task_id)

    def get_time_remaining(self, task_id: str) -> int | None:
        return self.auctions.get_time_remaining(task_id)

    def settle_assignment(self, task_id: str) -> Task:
        return self.auctions.settle_assignment(task_id)

    # Executions

    def start_execution(self, task_id: str, agent_id: str) -> Execution:
        return self.executions.start_execution(task_id, agent_id)

    def complete_execution(
        self, task_id: str, agent_id: str, outcome: ExecutionOutcome
    ) -> Execution:
        return self.executions.complete_execution(task_id, agent_id, outcome)

    # Reputation and stats

    def recompute_reputation(self, agent_id: str) -> float:
        return self.reputation.recompute(agent_id)

    def recompute_agent_stats(self, agent_id: str) -> Agent:
        return self.stats.recompute(agent_id)

    def shutdown(self) -> None:
        self.auctions.shutdown()
