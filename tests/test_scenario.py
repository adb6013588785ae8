from __future__ import annotations

from pathlib import Path

import pytest

from runic_market.scenario import load_scenario, run_scenario
from runic_market.schemas import TaskStatus

from tests.helpers import make_market

DEMO = Path(__file__).resolve().parents[1] / "scenarios" / "demo.yaml"


def test_demo_scenario_loads() -> None:
    spec = load_scenario(DEMO)
    assert spec.scenario_id == "demo"
    assert [a.id for a in spec.agents] == ["alice", "bob", "carol"]
    assert [t.id for t in spec.tasks] == ["T1", "T2", "T3"]
    assert spec.tasks[0].offers[1].agent_id == "bob"
    assert spec.tasks[0].outcome.success
    assert spec.tasks[1].outcome.error_message == "query plan regressed on staging"
    assert spec.tasks[2].outcome is None


def test_demo_scenario_runs_end_to_end() -> None:
    market, _, _ = make_market()
    report = run_scenario(market, load_scenario(DEMO))
    by_id = {t.task_id: t for t in report.tasks}

    # bob: 103 - ln(91) - 0.5*ln(5401) = 94.192 beats alice's 94.110; carol lacks python.
    assert by_id["T1"].winner_agent_id == "bob"
    assert by_id["T1"].winning_score == 94.192
    assert by_id["T1"].total_offers == 2
    assert [e["agent_id"] for e in by_id["T1"].offer_errors] == ["carol"]
    assert by_id["T1"].offer_errors[0]["kind"] == "validation"
    assert by_id["T1"].status == TaskStatus.COMPLETED.value
    assert by_id["T1"].execution_status == "SUCCESS"

    assert by_id["T2"].winner_agent_id == "alice"
    assert by_id["T2"].status == TaskStatus.FAILED.value

    assert by_id["T3"].winner_agent_id is None
    assert by_id["T3"].status == TaskStatus.OPEN.value

    reps = {a["id"]: a["reputation_score"] for a in report.agents}
    assert reps == {"alice": 2.8, "bob": 3.1, "carol": 3.0}
    assert report.payments == 1
    assert report.to_dict()["tasks"][0]["task_id"] == "T1"


def test_scenario_rejects_unknown_offer_agent(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(
        "agents: [{id: a}]\n"
        "tasks:\n"
        "  - id: T1\n"
        "    budget: 5\n"
        "    offers: [{agent: b, price: 1, eta_seconds: 1}]\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="unknown agents"):
        load_scenario(path)


@pytest.mark.parametrize(
    "text",
    [
        "- just a list\n",
        "agents: []\ntasks: [{id: T1}]\n",
        "agents: [{id: a}]\ntasks: []\n",
        "agents: [{name: nameless}]\ntasks: [{id: T1}]\n",
        "agents: [{id: a}]\ntasks: [{id: T1, outcome: maybe}]\n",
    ],
)
def test_scenario_shape_errors(tmp_path, text: str) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ValueError):
        load_scenario(path)
