"""Timed per-task auctions.

Each task has at most one auction window at a time. The window is a
cancellable deferred callback (a daemon ``threading.Timer`` by default);
when it fires the coordinator ranks the PENDING offers and assigns the task
to the best one.

Every operation that mutates a task runs under that task's lock, so the
in-memory auction phase and the persisted task status move together. The
timer thread flips the phase to CLOSING before it queues for the lock, which
is how a submission that arrives after the window fired is rejected instead
of racing into the outcome.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from runic_market.errors import (
    AuctionError,
    ConflictError,
    NotFoundError,
    ValidationError,
    require_positive_int,
)
from runic_market.events import EventBus, NullEventBus, publish_safely
from runic_market.locks import KeyedLocks
from runic_market.logging import fmt_fields, get_logger
from runic_market.schemas import (
    Agent,
    AuctionResult,
    EventType,
    Execution,
    ExecutionStatus,
    Offer,
    OfferStatus,
    Task,
    TaskStatus,
    utcnow,
)
from runic_market.scoring import OfferScorer, rank_offers
from runic_market.status import OFFER_ACCEPTING_STATUSES, guard_status, transition_task
from runic_market.store import Store

logger = get_logger("auction")

DEFAULT_WINDOW_MS = 15_000
CLOSED_HISTORY = 1024


class AuctionPhase(str, Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def daemon_timer(delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    return timer


@dataclass
class _AuctionState:
    task_id: str
    phase: AuctionPhase
    window_ms: int
    started_at: datetime
    started_at_monotonic: float
    timer: TimerHandle | None = None


@dataclass(frozen=True)
class AuctionSnapshot:
    task_id: str
    phase: AuctionPhase
    started_at: datetime
    ends_at: datetime
    remaining_ms: int


_Notice = tuple[EventType, dict[str, Any]]


class AuctionCoordinator:
    def __init__(
        self,
        *,
        store: Store,
        scorer: OfferScorer | None = None,
        window_ms: int = DEFAULT_WINDOW_MS,
        bus: EventBus | None = None,
        task_locks: KeyedLocks | None = None,
        timer_factory: TimerFactory = daemon_timer,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        closed_history: int = CLOSED_HISTORY,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        self._store = store
        self._scorer = scorer or OfferScorer()
        self._window_ms = int(window_ms)
        self._bus = bus if bus is not None else NullEventBus()
        self._task_locks = task_locks if task_locks is not None else KeyedLocks("tasks")
        self._timer_factory = timer_factory
        self._clock = clock
        self._monotonic = monotonic

        # Arena of per-task auction state. Phase flips happen under _arena_lock;
        # everything that also touches the store happens under the task lock too.
        self._arena_lock = threading.Lock()
        self._auctions: dict[str, _AuctionState] = {}
        # Closed windows leave the arena; a bounded record keeps phase() answering CLOSED.
        self._closed: OrderedDict[str, None] = OrderedDict()
        self._closed_history = max(0, int(closed_history))

        logger.info("AuctionCoordinator initialized %s", fmt_fields(window_ms=self._window_ms))

    @property
    def window_ms(self) -> int:
        return self._window_ms

    # Lifecycle

    def start_auction(self, task: Task | str) -> None:
        task_id = task if isinstance(task, str) else task.id

        with self._task_locks.hold(task_id):
            with self._arena_lock:
                if task_id in self._auctions:
                    logger.warning("Auction already active %s", fmt_fields(task_id=task_id))
                    return

            current = self._require_task(task_id)
            updated = transition_task(self._store, current, TaskStatus.IN_AUCTION)

            state = _AuctionState(
                task_id=task_id,
                phase=AuctionPhase.ACTIVE,
                window_ms=self._window_ms,
                started_at=self._clock(),
                started_at_monotonic=self._monotonic(),
            )
            state.timer = self._timer_factory(
                self._window_ms / 1000.0, lambda: self._on_timer(task_id, state)
            )
            with self._arena_lock:
                self._auctions[task_id] = state
                self._closed.pop(task_id, None)
            state.timer.start()

        ends_at = state.started_at + timedelta(milliseconds=state.window_ms)
        logger.info(
            "Auction started %s",
            fmt_fields(task_id=task_id, title=updated.title, window_ms=state.window_ms),
        )
        publish_safely(
            self._bus,
            EventType.AUCTION_STARTED,
            {
                "task_id": task_id,
                "task": updated.model_dump(mode="json"),
                "ends_at": ends_at.isoformat(),
            },
        )
        publish_safely(
            self._bus,
            EventType.TASK_AVAILABLE,
            {
                "task_id": task_id,
                "budget": updated.budget,
                "required_capabilities": sorted(updated.required_capabilities),
            },
        )

    def submit_offer(self, agent_id: str, task_id: str, price: int, eta_seconds: int) -> Offer:
        require_positive_int("price", price)
        require_positive_int("eta_seconds", eta_seconds)

        with self._task_locks.hold(task_id):
            task = self._require_task(task_id)
            if self.phase(task_id) == AuctionPhase.CLOSING:
                raise AuctionError(
                    f"Auction for Task '{task_id}' is closing; offers are no longer accepted"
                )
            guard_status(task.status).assert_can_accept_offers()

            agent = self._require_agent(agent_id)
            self._validate_offer(agent=agent, task=task, price=price)

            score = self._scorer.score(
                price=price, eta_seconds=eta_seconds, reputation=agent.reputation_score
            )
            # The store re-checks the task status and the one-pending-offer rule atomically.
            offer = self._store.create_offer(
                Offer(
                    task_id=task_id,
                    agent_id=agent_id,
                    price=price,
                    eta_seconds=eta_seconds,
                    score=score,
                    created_at=self._clock(),
                ),
                task_statuses=OFFER_ACCEPTING_STATUSES,
            )
            remaining_ms = self.get_time_remaining(task_id)

        logger.info(
            "Offer created %s",
            fmt_fields(
                offer_id=offer.id,
                task_id=task_id,
                agent_id=agent_id,
                price=price,
                eta_seconds=eta_seconds,
                score=score,
            ),
        )
        publish_safely(
            self._bus,
            EventType.OFFER_CREATED,
            {
                "task_id": task_id,
                "offer": offer.model_dump(mode="json"),
                "auction_remaining_ms": remaining_ms,
            },
        )
        return offer

    def close_auction(self, task_id: str) -> AuctionResult | None:
        """Close the window now instead of waiting for the timer."""
        with self._arena_lock:
            state = self._auctions.get(task_id)
            if state is None or state.phase not in (AuctionPhase.ACTIVE, AuctionPhase.CLOSING):
                return None
            state.phase = AuctionPhase.CLOSING
        if state.timer is not None:
            state.timer.cancel()
        return self._close(task_id, state)

    def cancel_auction(self, task_id: str) -> None:
        with self._task_locks.hold(task_id):
            with self._arena_lock:
                state = self._auctions.get(task_id)
                if state is None:
                    logger.debug("No auction to cancel %s", fmt_fields(task_id=task_id))
                    return
                del self._auctions[task_id]
            if state.timer is not None:
                state.timer.cancel()

            task = self._store.get_task(task_id)
            if task is not None and task.status == TaskStatus.IN_AUCTION:
                transition_task(self._store, task, TaskStatus.OPEN)

        logger.info("Auction cancelled %s", fmt_fields(task_id=task_id))
        publish_safely(self._bus, EventType.AUCTION_CANCELLED, {"task_id": task_id})

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a task that has not started executing, stopping any running auction."""
        with self._task_locks.hold(task_id):
            task = self._require_task(task_id)
            guard_status(task.status).assert_can_be_cancelled()

            with self._arena_lock:
                state = self._auctions.pop(task_id, None)
                self._closed.pop(task_id, None)
            if state is not None and state.timer is not None:
                state.timer.cancel()

            updated = transition_task(
                self._store, task, TaskStatus.CANCELLED, assigned_agent_id=None
            )
            for offer in self._store.list_offers(task_id):
                if offer.status in (OfferStatus.PENDING, OfferStatus.ACCEPTED):
                    self._store.update_offer_status(
                        offer.id, OfferStatus.CANCELLED, expected_status=offer.status
                    )

        logger.info(
            "Task cancelled %s", fmt_fields(task_id=task_id, previous=task.status.value)
        )
        publish_safely(
            self._bus,
            EventType.TASK_CANCELLED,
            {"task_id": task_id, "previous_status": task.status.value},
        )
        return updated

    def cancel_offer(self, offer_id: str, agent_id: str) -> Offer:
        offer = self._store.get_offer(offer_id)
        if offer is None:
            raise NotFoundError("Offer", offer_id)

        with self._task_locks.hold(offer.task_id):
            offer = self._store.get_offer(offer_id)
            if offer is None:
                raise NotFoundError("Offer", offer_id)
            if offer.agent_id != agent_id:
                raise ValidationError("Only the offer owner can cancel it")
            if offer.status != OfferStatus.PENDING:
                raise AuctionError(f"Cannot cancel offer: status is {offer.status.value}")
            updated = self._store.update_offer_status(offer_id, OfferStatus.CANCELLED)

        logger.info(
            "Offer cancelled %s",
            fmt_fields(offer_id=offer_id, task_id=offer.task_id, agent_id=agent_id),
        )
        publish_safely(
            self._bus,
            EventType.OFFER_CANCELLED,
            {"task_id": offer.task_id, "offer_id": offer_id, "agent_id": agent_id},
        )
        return updated

    def shutdown(self) -> None:
        """Stop every pending timer without touching task state."""
        with self._arena_lock:
            states = list(self._auctions.values())
        for state in states:
            if state.timer is not None:
                state.timer.cancel()

    # Queries

    def phase(self, task_id: str) -> AuctionPhase:
        with self._arena_lock:
            state = self._auctions.get(task_id)
            if state is not None:
                return state.phase
            return AuctionPhase.CLOSED if task_id in self._closed else AuctionPhase.NONE

    def is_auction_active(self, task_id: str) -> bool:
        return self.phase(task_id) in (AuctionPhase.ACTIVE, AuctionPhase.CLOSING)

    def get_time_remaining(self, task_id: str) -> int | None:
        with self._arena_lock:
            state = self._auctions.get(task_id)
            if state is None:
                return None
            return self._remaining_ms(state)

    def active_auctions(self) -> dict[str, AuctionSnapshot]:
        with self._arena_lock:
            return {
                task_id: AuctionSnapshot(
                    task_id=task_id,
                    phase=state.phase,
                    started_at=state.started_at,
                    ends_at=state.started_at + timedelta(milliseconds=state.window_ms),
                    remaining_ms=self._remaining_ms(state),
                )
                for task_id, state in self._auctions.items()
                if state.phase in (AuctionPhase.ACTIVE, AuctionPhase.CLOSING)
            }

    def list_offers(self, task_id: str) -> list[Offer]:
        self._require_task(task_id)
        return rank_offers(self._store.list_offers(task_id))

    def best_offer(self, task_id: str) -> Offer | None:
        self._require_task(task_id)
        ranked = rank_offers(self._store.list_offers(task_id, status=OfferStatus.PENDING))
        return ranked[0] if ranked else None

    # Internals

    def _remember_closed(self, task_id: str) -> None:
        # Caller holds _arena_lock.
        self._closed[task_id] = None
        self._closed.move_to_end(task_id)
        while len(self._closed) > self._closed_history:
            self._closed.popitem(last=False)

    def _remaining_ms(self, state: _AuctionState) -> int:
        elapsed_ms = (self._monotonic() - state.started_at_monotonic) * 1000.0
        return max(0, int(state.window_ms - elapsed_ms))

    def _on_timer(self, task_id: str, state: _AuctionState) -> None:
        with self._arena_lock:
            # A cancelled or restarted auction leaves a stale timer behind; ignore it.
            if self._auctions.get(task_id) is not state or state.phase != AuctionPhase.ACTIVE:
                return
            state.phase = AuctionPhase.CLOSING
        self._close(task_id, state)

    def _close(self, task_id: str, state: _AuctionState) -> AuctionResult | None:
        notices: list[_Notice] = []
        result: AuctionResult | None = None

        with self._task_locks.hold(task_id):
            with self._arena_lock:
                if self._auctions.get(task_id) is not state or state.phase != AuctionPhase.CLOSING:
                    return None
            duration_ms = int(max(0.0, self._monotonic() - state.started_at_monotonic) * 1000)

            try:
                result, notices = self._resolve(task_id, duration_ms=duration_ms)
            except Exception:
                logger.exception("Error closing auction %s", fmt_fields(task_id=task_id))
                self._reset_after_failure(task_id)
                with self._arena_lock:
                    if self._auctions.get(task_id) is state:
                        del self._auctions[task_id]
                state.timer = None
                return None

            with self._arena_lock:
                state.phase = AuctionPhase.CLOSED
                state.timer = None
                if self._auctions.get(task_id) is state:
                    del self._auctions[task_id]
                self._remember_closed(task_id)

        for event_type, payload in notices:
            publish_safely(self._bus, event_type, payload)
        return result

    def _resolve(self, task_id: str, *, duration_ms: int) -> tuple[AuctionResult, list[_Notice]]:
        task = self._require_task(task_id)
        if task.status != TaskStatus.IN_AUCTION:
            raise ConflictError(
                f"Task '{task_id}' is {task.status.value}; cannot close its auction"
            )

        offers = self._store.list_offers(task_id, status=OfferStatus.PENDING)
        if not offers:
            transition_task(self._store, task, TaskStatus.OPEN)
            logger.info("Auction completed with no offers %s", fmt_fields(task_id=task_id))
            result = AuctionResult(task_id=task_id, auction_duration_ms=duration_ms)
            return result, [
                (
                    EventType.AUCTION_NO_OFFERS,
                    {"task_id": task_id, "auction_duration_ms": duration_ms},
                )
            ]

        ranked = rank_offers(offers)
        winner = ranked[0]

        # The compare-and-set on IN_AUCTION is the commit point; nothing else is
        # written if the task moved underneath us. Past it the task is ASSIGNED
        # and the close always finishes, even if a follow-up write fails.
        assigned = transition_task(
            self._store, task, TaskStatus.ASSIGNED, assigned_agent_id=winner.agent_id
        )
        accepted, execution = self._settle(assigned, ranked)
        if accepted is None:
            accepted = winner

        logger.info(
            "Auction completed %s",
            fmt_fields(
                task_id=task_id,
                winner_id=winner.agent_id,
                winning_score=winner.score,
                total_offers=len(ranked),
            ),
        )
        result = AuctionResult(
            task_id=task_id,
            winning_offer=accepted,
            total_offers=len(ranked),
            auction_duration_ms=duration_ms,
        )
        return result, [
            (
                EventType.TASK_ASSIGNED,
                {
                    "task_id": task_id,
                    "agent_id": winner.agent_id,
                    "execution_id": execution.id if execution is not None else None,
                },
            ),
            (EventType.AUCTION_COMPLETED, result.model_dump(mode="json")),
        ]

    def _settle(
        self, task: Task, offers: list[Offer]
    ) -> tuple[Offer | None, Execution | None]:
        """Bring offers and the PENDING execution in line with an ASSIGNED task.

        Idempotent: offers already resolved and an execution that already
        exists are left alone. A failed step is logged and the rest still run;
        ``start_execution`` creates the execution later if it is still missing.
        """
        accepted: Offer | None = None
        for offer in offers:
            if offer.status != OfferStatus.PENDING:
                if offer.status == OfferStatus.ACCEPTED:
                    accepted = offer
                continue
            target = (
                OfferStatus.ACCEPTED
                if offer.agent_id == task.assigned_agent_id
                else OfferStatus.REJECTED
            )
            try:
                updated = self._store.update_offer_status(offer.id, target)
            except Exception:
                logger.exception(
                    "Could not settle offer after assignment %s",
                    fmt_fields(task_id=task.id, offer_id=offer.id, status=target.value),
                )
                continue
            if target == OfferStatus.ACCEPTED:
                accepted = updated

        execution: Execution | None = None
        try:
            execution = self._store.find_execution(
                task_id=task.id, agent_id=task.assigned_agent_id, status=ExecutionStatus.PENDING
            )
            if execution is None:
                execution = self._store.create_execution(
                    Execution(
                        task_id=task.id, agent_id=task.assigned_agent_id, created_at=self._clock()
                    )
                )
        except Exception:
            logger.exception(
                "Could not create execution after assignment %s",
                fmt_fields(task_id=task.id, agent_id=task.assigned_agent_id),
            )
        return accepted, execution

    def settle_assignment(self, task_id: str) -> Task:
        """Re-run the post-assignment writes for an ASSIGNED task."""
        with self._task_locks.hold(task_id):
            task = self._require_task(task_id)
            if task.status != TaskStatus.ASSIGNED:
                raise ConflictError(
                    f"Task '{task_id}' is {task.status.value}; only ASSIGNED tasks can be settled"
                )
            self._settle(task, rank_offers(self._store.list_offers(task_id)))
        return task

    def _reset_after_failure(self, task_id: str) -> None:
        try:
            task = self._store.get_task(task_id)
            if task is None:
                return
            if task.status == TaskStatus.IN_AUCTION:
                transition_task(self._store, task, TaskStatus.OPEN)
                logger.warning("Task reset to OPEN after failed close %s", fmt_fields(task_id=task_id))
            elif task.status == TaskStatus.ASSIGNED:
                self._settle(task, rank_offers(self._store.list_offers(task_id)))
                logger.warning(
                    "Assignment settled after failed close %s",
                    fmt_fields(task_id=task_id, agent_id=task.assigned_agent_id),
                )
            else:
                logger.warning(
                    "Task left as-is after failed close %s",
                    fmt_fields(task_id=task_id, status=task.status.value),
                )
        except Exception:
            logger.exception("Could not reset task after failed close %s", fmt_fields(task_id=task_id))

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _require_agent(self, agent_id: str) -> Agent:
        agent = self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    @staticmethod
    def _validate_offer(*, agent: Agent, task: Task, price: int) -> None:
        if not agent.is_active:
            raise ValidationError("Agent is not active and cannot submit offers")
        if not agent.has_capabilities(task.required_capabilities):
            raise ValidationError(
                "Agent lacks required capabilities. "
                f"Needed: [{', '.join(sorted(task.required_capabilities))}]. "
                f"Agent has: [{', '.join(sorted(agent.capabilities))}]"
            )
        if price > task.budget:
            raise ValidationError(f"Offer price ({price}) exceeds task budget ({task.budget})")
