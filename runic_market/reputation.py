"""Event-sourced agent reputation.

An agent's ``reputation_score`` is always a projection of its ReputationEvent
history: the newest ``window`` events are weighted by ``decay_factor ** i``
(``i = 0`` for the newest), their weighted mean delta is added to the base
score, and the result is clamped and rounded. Recomputing from the same
events always yields the same score.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from runic_market.errors import NotFoundError, ValidationError
from runic_market.events import EventBus, NullEventBus, publish_safely
from runic_market.locks import KeyedLocks
from runic_market.logging import fmt_fields, get_logger
from runic_market.schemas import EventType, ReputationEvent, ReputationSummary, utcnow
from runic_market.store import Store

logger = get_logger("reputation")


def _clamp(v: float, *, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


@dataclass(frozen=True)
class ReputationPolicy:
    base_score: float = 3.0
    min_score: float = 0.0
    max_score: float = 5.0

    window: int = 100
    decay_factor: float = 0.95

    gain_on_success: float = 0.1
    loss_on_failure: float = 0.2
    bonus: float = 0.25
    penalty: float = 0.3


def decayed_score(deltas_newest_first: Sequence[float], *, policy: ReputationPolicy) -> float:
    deltas = list(deltas_newest_first)[: policy.window]
    if not deltas:
        return policy.base_score

    weighted_sum = 0.0
    total_weight = 0.0
    for i, delta in enumerate(deltas):
        weight = policy.decay_factor**i
        weighted_sum += float(delta) * weight
        total_weight += weight

    score = policy.base_score + weighted_sum / total_weight
    return round(_clamp(score, lo=policy.min_score, hi=policy.max_score), 2)


class ReputationTracker:
    def __init__(
        self,
        *,
        store: Store,
        policy: ReputationPolicy | None = None,
        agent_locks: KeyedLocks | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._policy = policy or ReputationPolicy()
        self._agent_locks = agent_locks if agent_locks is not None else KeyedLocks("agents")
        self._bus = bus if bus is not None else NullEventBus()
        self._clock = clock

    @property
    def policy(self) -> ReputationPolicy:
        return self._policy

    def apply_event(
        self, agent_id: str, task_id: str | None, delta: float, reason: str
    ) -> ReputationEvent:
        """Append an event for ``agent_id`` and recompute its score."""
        if not reason or not reason.strip():
            raise ValidationError("reputation events require a reason")

        with self._agent_locks.hold(agent_id):
            if self._store.get_agent(agent_id) is None:
                raise NotFoundError("Agent", agent_id)
            event = self._store.append_reputation_event(
                ReputationEvent(
                    agent_id=agent_id,
                    task_id=task_id,
                    delta_score=float(delta),
                    reason=reason.strip(),
                    created_at=self._clock(),
                )
            )
            logger.info(
                "Reputation event applied %s",
                fmt_fields(agent_id=agent_id, task_id=task_id, delta=delta, reason=event.reason),
            )
            score = self._recompute_locked(agent_id)

        publish_safely(
            self._bus,
            EventType.REPUTATION_UPDATED,
            {"agent_id": agent_id, "task_id": task_id, "delta": float(delta), "score": score},
        )
        return event

    def recompute(self, agent_id: str) -> float:
        with self._agent_locks.hold(agent_id):
            if self._store.get_agent(agent_id) is None:
                raise NotFoundError("Agent", agent_id)
            return self._recompute_locked(agent_id)

    def _recompute_locked(self, agent_id: str) -> float:
        events = self._store.list_reputation_events(agent_id, limit=self._policy.window)
        score = decayed_score([e.delta_score for e in events], policy=self._policy)
        self._store.update_agent(agent_id, reputation_score=score)
        logger.debug(
            "Reputation recomputed %s",
            fmt_fields(agent_id=agent_id, score=score, events=len(events)),
        )
        return score

    def apply_bonus(self, agent_id: str, task_id: str | None, reason: str) -> ReputationEvent:
        return self.apply_event(agent_id, task_id, self._policy.bonus, f"Bonus: {reason}")

    def apply_penalty(self, agent_id: str, task_id: str | None, reason: str) -> ReputationEvent:
        return self.apply_event(agent_id, task_id, -self._policy.penalty, f"Penalty: {reason}")

    def history(self, agent_id: str, *, limit: int = 50) -> list[ReputationEvent]:
        return self._store.list_reputation_events(agent_id, limit=limit)

    def summary(self, agent_id: str) -> ReputationSummary:
        agent = self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        events = self._store.list_reputation_events(agent_id)
        deltas = [e.delta_score for e in events]
        average = sum(deltas) / len(deltas) if deltas else 0.0
        return ReputationSummary(
            agent_id=agent_id,
            current_score=agent.reputation_score,
            total_events=len(deltas),
            positive_events=sum(1 for d in deltas if d > 0),
            negative_events=sum(1 for d in deltas if d < 0),
            average_delta=round(average, 3),
        )
