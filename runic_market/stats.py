from __future__ import annotations

from dataclasses import dataclass

from runic_market.errors import NotFoundError
from runic_market.locks import KeyedLocks
from runic_market.logging import fmt_fields, get_logger
from runic_market.schemas import Agent, Execution, ExecutionStatus
from runic_market.store import Store

logger = get_logger("stats")


@dataclass(frozen=True)
class AgentStats:
    completed: int = 0
    failed: int = 0
    avg_completion_seconds: float | None = None


def fold_execution_stats(executions: list[Execution]) -> AgentStats:
    completed = [e for e in executions if e.status == ExecutionStatus.SUCCESS]
    failed = [e for e in executions if e.status == ExecutionStatus.FAILURE]

    durations = [d for d in (e.duration_seconds for e in completed) if d is not None]
    avg = sum(durations) / len(durations) if durations else None
    return AgentStats(completed=len(completed), failed=len(failed), avg_completion_seconds=avg)


class AgentStatsProjector:
    """Recomputes an agent's aggregate counters from its full execution history.

    This is a fold over every execution the agent has ever had, so it is O(n)
    per call; running counters updated in place would keep the same contract
    if execution volume grows large.
    """

    def __init__(self, *, store: Store, agent_locks: KeyedLocks | None = None) -> None:
        self._store = store
        self._agent_locks = agent_locks if agent_locks is not None else KeyedLocks("agents")

    def recompute(self, agent_id: str) -> Agent:
        with self._agent_locks.hold(agent_id):
            if self._store.get_agent(agent_id) is None:
                raise NotFoundError("Agent", agent_id)
            stats = fold_execution_stats(self._store.list_executions(agent_id=agent_id))
            agent = self._store.update_agent(
                agent_id,
                total_tasks_completed=stats.completed,
                total_tasks_failed=stats.failed,
                avg_completion_seconds=stats.avg_completion_seconds,
            )
        logger.info(
            "Agent stats recomputed %s",
            fmt_fields(
                agent_id=agent_id,
                completed=stats.completed,
                failed=stats.failed,
                avg_completion_seconds=stats.avg_completion_seconds,
            ),
        )
        return agent
