from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from runic_market.errors import NotFoundError
from runic_market.schemas import Agent, Execution, ExecutionStatus
from runic_market.stats import AgentStatsProjector, fold_execution_stats
from runic_market.store import InMemoryStore

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _execution(task_id: str, status: ExecutionStatus, seconds: int | None) -> Execution:
    return Execution(
        task_id=task_id,
        agent_id="a1",
        status=status,
        started_at=T0,
        completed_at=T0 + timedelta(seconds=seconds) if seconds is not None else None,
    )


def test_fold_counts_and_averages_successes_only() -> None:
    stats = fold_execution_stats(
        [
            _execution("T1", ExecutionStatus.SUCCESS, 10),
            _execution("T2", ExecutionStatus.SUCCESS, 30),
            _execution("T3", ExecutionStatus.FAILURE, 1000),
            _execution("T4", ExecutionStatus.RUNNING, None),
        ]
    )
    assert (stats.completed, stats.failed) == (2, 1)
    assert stats.avg_completion_seconds == 20.0


def test_fold_of_nothing() -> None:
    stats = fold_execution_stats([])
    assert (stats.completed, stats.failed, stats.avg_completion_seconds) == (0, 0, None)


def test_projector_persists_on_agent() -> None:
    store = InMemoryStore()
    store.create_agent(Agent(id="a1", name="A"))
    store.create_execution(_execution("T1", ExecutionStatus.SUCCESS, 12))
    store.create_execution(_execution("T2", ExecutionStatus.FAILURE, 3))

    agent = AgentStatsProjector(store=store).recompute("a1")

    assert agent.total_tasks_completed == 1
    assert agent.total_tasks_failed == 1
    assert agent.avg_completion_seconds == 12.0
    assert store.get_agent("a1").avg_completion_seconds == 12.0

    with pytest.raises(NotFoundError):
        AgentStatsProjector(store=store).recompute("ghost")
