from __future__ import annotations

from datetime import timedelta

import pytest

from runic_market.config import MarketSettings
from runic_market.errors import ConflictError, NotFoundError, ValidationError
from runic_market.ledger import HashChainedPaymentLedger, InMemoryPaymentLedger
from runic_market.market import Market, default_ledger
from runic_market.schemas import EventType, TaskStatus

from tests.helpers import T0, make_market


def test_create_task_validates_and_publishes() -> None:
    market, _, _ = make_market(settings=MarketSettings(token_symbol="USDC"))

    with pytest.raises(ValidationError):
        market.create_task(title="t", budget=0)
    for bad in (float("nan"), float("inf"), None, 2.5, True):
        with pytest.raises(ValidationError, match="budget"):
            market.create_task(title="t", budget=bad)
    with pytest.raises(ValidationError):
        market.create_task(title="  ", budget=10)
    with pytest.raises(ValidationError, match="future"):
        market.create_task(title="t", budget=10, deadline=T0 - timedelta(days=1))

    task = market.create_task(
        title=" Index the docs ",
        budget=25,
        required_capabilities=["search", "python"],
        deadline=T0 + timedelta(days=7),
    )

    assert task.status == TaskStatus.OPEN
    assert task.title == "Index the docs"
    assert task.payment_token_symbol == "USDC"
    assert task.required_capabilities == {"search", "python"}
    (note,) = market.bus.events_of(EventType.TASK_CREATED)
    assert note.payload["task"]["id"] == task.id


def test_duplicate_task_id_conflicts() -> None:
    market, _, _ = make_market()
    market.create_task(task_id="T1", title="t", budget=1)
    with pytest.raises(ConflictError):
        market.create_task(task_id="T1", title="t", budget=1)


def test_agents_register_and_update() -> None:
    market, _, _ = make_market()
    agent = market.register_agent(name="Ada", capabilities=["python"])
    assert agent.reputation_score == 3.0
    assert agent.is_active

    updated = market.update_agent(agent.id, capabilities=["python", "sql"], is_active=False)
    assert updated.capabilities == {"python", "sql"}
    assert not updated.is_active

    with pytest.raises(ValidationError):
        market.update_agent(agent.id, reputation_score=5.0)
    with pytest.raises(NotFoundError):
        market.update_agent("ghost", is_active=True)
    with pytest.raises(NotFoundError):
        market.get_agent("ghost")
    with pytest.raises(NotFoundError):
        market.get_task("ghost")


def test_available_tasks_filters_by_capability_and_status() -> None:
    market, timers, _ = make_market()
    market.register_agent(agent_id="a0", name="A", capabilities=["python"])
    market.create_task(task_id="py", title="py", budget=10, required_capabilities=["python"])
    market.create_task(task_id="any", title="any", budget=10)
    market.create_task(task_id="rs", title="rs", budget=10, required_capabilities=["rust"])
    market.create_task(task_id="done", title="done", budget=10)
    market.start_auction("done")
    market.submit_offer("a0", "done", 5, 5)
    timers.last.fire()

    assert [t.id for t in market.available_tasks("a0")] == ["any", "py"]


def test_recompute_agent_stats_passthrough() -> None:
    market, _, _ = make_market()
    market.register_agent(agent_id="a0", name="A")
    agent = market.recompute_agent_stats("a0")
    assert (agent.total_tasks_completed, agent.total_tasks_failed) == (0, 0)
    assert agent.avg_completion_seconds is None


def test_default_ledger_follows_settings(tmp_path) -> None:
    assert isinstance(default_ledger(MarketSettings()), InMemoryPaymentLedger)
    path = tmp_path / "payments.jsonl"
    ledger = default_ledger(MarketSettings(payment_ledger_path=path))
    assert isinstance(ledger, HashChainedPaymentLedger)
    assert ledger.path == path


def test_market_shares_locks_between_coordinators() -> None:
    market = Market()
    assert market.auctions._task_locks is market.executions._task_locks
    assert market.reputation._agent_locks is market.stats._agent_locks


def test_list_agents_filters_and_ranks_by_reputation() -> None:
    market, _, _ = make_market()
    market.register_agent(agent_id="a", name="Alpha", capabilities=["python"])
    market.register_agent(
        agent_id="b", name="Bravo", description="SQL tuning", capabilities=["sql"]
    )
    market.register_agent(agent_id="c", name="Charlie", capabilities=["python", "sql"])
    market.update_agent("c", is_active=False)
    market.reputation.apply_event("b", None, 0.5, "good")
    market.reputation.apply_event("a", None, -0.5, "bad")

    assert [a.id for a in market.list_agents()] == ["b", "c", "a"]
    assert [a.id for a in market.list_agents(is_active=True)] == ["b", "a"]
    assert [a.id for a in market.list_agents(capability="python")] == ["c", "a"]
    assert [a.id for a in market.list_agents(search="sql")] == ["b"]
    assert [a.id for a in market.list_agents(search="CHAR")] == ["c"]


def test_tasks_for_agent_lists_assignments_newest_first() -> None:
    market, timers, _ = make_market()
    market.register_agent(agent_id="a0", name="Agent 0")
    market.register_agent(agent_id="a1", name="Agent 1")
    for task_id, agent_id in (("T1", "a0"), ("T2", "a1"), ("T3", "a0")):
        market.create_task(task_id=task_id, title=task_id, budget=10)
        market.start_auction(task_id)
        market.submit_offer(agent_id, task_id, 5, 60)
        timers.last.fire()
    market.create_task(task_id="T4", title="T4", budget=10)

    assert [t.id for t in market.tasks_for_agent("a0")] == ["T3", "T1"]
    assert [t.id for t in market.tasks_for_agent("a1")] == ["T2"]
    with pytest.raises(NotFoundError):
        market.tasks_for_agent("ghost")
