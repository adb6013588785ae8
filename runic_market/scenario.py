from __future__ import annotations

import time
from collections.abc import Sized
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from runic_market.auction import AuctionPhase
from runic_market.errors import MarketError
from runic_market.logging import fmt_fields, get_logger
from runic_market.market import Market
from runic_market.schemas import ExecutionOutcome

logger = get_logger("scenario")


@dataclass(frozen=True)
class AgentSpec:
    id: str
    name: str
    capabilities: list[str] = field(default_factory=list)
    description: str | None = None
    wallet_address: str | None = None


@dataclass(frozen=True)
class OfferSpec:
    agent_id: str
    price: int
    eta_seconds: int


@dataclass(frozen=True)
class TaskSpec:
    id: str
    title: str
    budget: int
    description: str = ""
    required_capabilities: list[str] = field(default_factory=list)
    offers: list[OfferSpec] = field(default_factory=list)
    outcome: ExecutionOutcome | None = None


@dataclass(frozen=True)
class ScenarioSpec:
    scenario_id: str
    title: str
    agents: list[AgentSpec]
    tasks: list[TaskSpec]


def _parse_agent(raw: Any) -> AgentSpec:
    if not isinstance(raw, dict):
        raise ValueError("each agent must be a mapping")
    agent_id = str(raw.get("id") or "")
    if not agent_id:
        raise ValueError("agent.id is required")
    return AgentSpec(
        id=agent_id,
        name=str(raw.get("name") or agent_id),
        capabilities=[str(c) for c in (raw.get("capabilities") or [])],
        description=raw.get("description"),
        wallet_address=raw.get("wallet_address"),
    )


def _parse_offers(raw: Any, *, task_id: str) -> list[OfferSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"task {task_id}: offers must be a list")

    offers: list[OfferSpec] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f"task {task_id}: each offer must be a mapping")
        agent_id = str(item.get("agent") or item.get("agent_id") or "")
        if not agent_id:
            raise ValueError(f"task {task_id}: offer.agent is required")
        offers.append(
            OfferSpec(
                agent_id=agent_id,
                price=int(item.get("price") or 0),
                eta_seconds=int(item.get("eta_seconds") or item.get("eta") or 0),
            )
        )
    return offers


def _parse_outcome(raw: Any, *, task_id: str) -> ExecutionOutcome | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return ExecutionOutcome(success=raw, error_message=None if raw else "failed")
    if isinstance(raw, dict):
        return ExecutionOutcome.model_validate(raw)
    raise ValueError(f"task {task_id}: outcome must be a boolean or mapping")


def load_scenario(path: Path) -> ScenarioSpec:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("scenario must be a YAML mapping")

    scenario_id = str(data.get("scenario_id") or data.get("id") or "scenario")
    title = str(data.get("title") or scenario_id)

    raw_agents = data.get("agents")
    if not isinstance(raw_agents, list) or not raw_agents:
        raise ValueError("scenario.agents must be a non-empty list")
    agents = [_parse_agent(a) for a in raw_agents]

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ValueError("scenario.tasks must be a non-empty list")

    known_agents = {a.id for a in agents}
    tasks: list[TaskSpec] = []
    for raw in raw_tasks:
        if not isinstance(raw, dict):
            raise ValueError("each task must be a mapping")
        task_id = str(raw.get("id") or "")
        if not task_id:
            raise ValueError("task.id is required")

        offers = _parse_offers(raw.get("offers"), task_id=task_id)
        unknown = sorted({o.agent_id for o in offers} - known_agents)
        if unknown:
            raise ValueError(f"task {task_id}: offers reference unknown agents: {unknown}")

        tasks.append(
            TaskSpec(
                id=task_id,
                title=str(raw.get("title") or task_id),
                description=str(raw.get("description") or ""),
                budget=int(raw.get("budget") or 1),
                required_capabilities=[str(c) for c in (raw.get("required_capabilities") or [])],
                offers=offers,
                outcome=_parse_outcome(raw.get("outcome"), task_id=task_id),
            )
        )

    return ScenarioSpec(scenario_id=scenario_id, title=title, agents=agents, tasks=tasks)


@dataclass
class TaskReport:
    task_id: str
    title: str
    status: str = "OPEN"
    winner_agent_id: str | None = None
    winning_score: float | None = None
    total_offers: int = 0
    offer_errors: list[dict[str, Any]] = field(default_factory=list)
    execution_status: str | None = None


@dataclass
class ScenarioReport:
    scenario_id: str
    title: str
    tasks: list[TaskReport] = field(default_factory=list)
    agents: list[dict[str, Any]] = field(default_factory=list)
    payments: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "title": self.title,
            "tasks": [vars(t) for t in self.tasks],
            "agents": self.agents,
            "payments": self.payments,
        }


def _wait_for_close(market: Market, task_id: str, *, timeout_seconds: float) -> None:
    deadline = time.monotonic() + timeout_seconds
    while market.auctions.phase(task_id) in (AuctionPhase.ACTIVE, AuctionPhase.CLOSING):
        if time.monotonic() > deadline:
            raise TimeoutError(f"auction for {task_id} did not close within {timeout_seconds}s")
        time.sleep(0.01)


def run_scenario(market: Market, spec: ScenarioSpec, *, wait_for_window: bool = False) -> ScenarioReport:
    """Drive every task in ``spec`` through auction and execution.

    Offers the market rejects are recorded on the report rather than aborting
    the run. Auctions are closed as soon as their offers are in, unless
    ``wait_for_window`` is set, in which case the real countdown decides.
    """
    report = ScenarioReport(scenario_id=spec.scenario_id, title=spec.title)

    for a in spec.agents:
        market.register_agent(
            agent_id=a.id,
            name=a.name,
            capabilities=a.capabilities,
            description=a.description,
            wallet_address=a.wallet_address,
        )

    for t in spec.tasks:
        task = market.create_task(
            task_id=t.id,
            title=t.title,
            description=t.description,
            budget=t.budget,
            required_capabilities=t.required_capabilities,
        )
        task_report = TaskReport(task_id=task.id, title=task.title)
        report.tasks.append(task_report)

        market.start_auction(task.id)
        for o in t.offers:
            try:
                market.submit_offer(o.agent_id, task.id, o.price, o.eta_seconds)
            except MarketError as e:
                logger.info(
                    "Scenario offer rejected %s",
                    fmt_fields(task_id=task.id, agent_id=o.agent_id, error=e.message),
                )
                task_report.offer_errors.append({"agent_id": o.agent_id, **e.to_dict()})

        if wait_for_window:
            _wait_for_close(
                market, task.id, timeout_seconds=market.auctions.window_ms / 1000.0 + 5.0
            )
            result = None
        else:
            result = market.auctions.close_auction(task.id)

        current = market.get_task(task.id)
        if result is not None and result.winning_offer is not None:
            task_report.winner_agent_id = result.winning_offer.agent_id
            task_report.winning_score = result.winning_offer.score
            task_report.total_offers = result.total_offers
        elif current.assigned_agent_id is not None:
            task_report.winner_agent_id = current.assigned_agent_id
            task_report.total_offers = len(market.store.list_offers(task.id))

        if current.assigned_agent_id is not None and t.outcome is not None:
            market.start_execution(task.id, current.assigned_agent_id)
            execution = market.complete_execution(task.id, current.assigned_agent_id, t.outcome)
            task_report.execution_status = execution.status.value

        task_report.status = market.get_task(task.id).status.value

    report.agents = [
        {
            "id": a.id,
            "name": a.name,
            "reputation_score": a.reputation_score,
            "total_tasks_completed": a.total_tasks_completed,
            "total_tasks_failed": a.total_tasks_failed,
            "avg_completion_seconds": a.avg_completion_seconds,
        }
        for a in market.store.list_agents()
    ]
    if isinstance(market.ledger, Sized):
        report.payments = len(market.ledger)
    return report
