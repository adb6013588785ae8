from __future__ import annotations

import itertools

import pytest

from runic_market.errors import AuctionError, ConflictError
from runic_market.schemas import Task, TaskStatus
from runic_market.status import (
    OFFER_ACCEPTING_STATUSES,
    TRANSITIONS,
    allowed_transitions,
    assert_transition,
    can_accept_offers,
    can_be_cancelled,
    can_complete,
    can_start_execution,
    guard_status,
    is_terminal,
    is_valid_transition,
    transition_task,
)
from runic_market.store import InMemoryStore


def test_every_status_has_a_transition_entry() -> None:
    assert set(TRANSITIONS) == set(TaskStatus)


def test_edges_match_lifecycle() -> None:
    assert allowed_transitions(TaskStatus.OPEN) == [TaskStatus.IN_AUCTION, TaskStatus.CANCELLED]
    assert allowed_transitions(TaskStatus.IN_AUCTION) == [
        TaskStatus.OPEN,
        TaskStatus.ASSIGNED,
        TaskStatus.CANCELLED,
    ]
    assert allowed_transitions(TaskStatus.ASSIGNED) == [TaskStatus.RUNNING, TaskStatus.CANCELLED]
    assert allowed_transitions(TaskStatus.RUNNING) == [TaskStatus.COMPLETED, TaskStatus.FAILED]
    for terminal in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
        assert allowed_transitions(terminal) == []
        assert is_terminal(terminal)


def test_predicates_are_derived_from_table() -> None:
    assert OFFER_ACCEPTING_STATUSES == {TaskStatus.OPEN, TaskStatus.IN_AUCTION}
    assert [s for s in TaskStatus if can_be_cancelled(s)] == [
        TaskStatus.OPEN,
        TaskStatus.IN_AUCTION,
        TaskStatus.ASSIGNED,
    ]
    assert [s for s in TaskStatus if can_start_execution(s)] == [TaskStatus.ASSIGNED]
    assert [s for s in TaskStatus if can_complete(s)] == [TaskStatus.RUNNING]
    assert not can_accept_offers(TaskStatus.ASSIGNED)


def test_invalid_transition_message_names_states() -> None:
    assert not is_valid_transition(TaskStatus.COMPLETED, TaskStatus.RUNNING)
    with pytest.raises(ConflictError) as ei:
        assert_transition(TaskStatus.COMPLETED, TaskStatus.RUNNING)
    msg = ei.value.message
    assert "cannot go from COMPLETED (successfully completed)" in msg
    assert "to RUNNING (being executed)" in msg
    assert msg.endswith("Valid next states: none (terminal state)")


def test_invalid_transition_lists_next_states() -> None:
    with pytest.raises(ConflictError) as ei:
        assert_transition(TaskStatus.OPEN, TaskStatus.RUNNING)
    assert ei.value.message.endswith("Valid next states: IN_AUCTION, CANCELLED")


def test_guard_raises_auction_error_for_offers_and_conflict_otherwise() -> None:
    with pytest.raises(AuctionError):
        guard_status(TaskStatus.RUNNING).assert_can_accept_offers()
    with pytest.raises(ConflictError):
        guard_status(TaskStatus.RUNNING).assert_can_be_cancelled()
    with pytest.raises(ConflictError):
        guard_status(TaskStatus.OPEN).assert_can_start_execution()
    with pytest.raises(ConflictError):
        guard_status(TaskStatus.ASSIGNED).assert_can_complete()

    guard_status(TaskStatus.IN_AUCTION).assert_can_accept_offers()
    assert guard_status(TaskStatus.OPEN).transition_to(TaskStatus.IN_AUCTION).status == (
        TaskStatus.IN_AUCTION
    )


def test_transition_task_is_compare_and_set() -> None:
    store = InMemoryStore()
    task = store.create_task(Task(title="t", budget=10))

    moved = transition_task(store, task, TaskStatus.IN_AUCTION)
    assert moved.status == TaskStatus.IN_AUCTION

    # `task` is now stale: it still says OPEN.
    with pytest.raises(ConflictError):
        transition_task(store, task, TaskStatus.IN_AUCTION)
    assert store.get_task(task.id).status == TaskStatus.IN_AUCTION


def test_transition_task_rejects_illegal_edge_without_writing() -> None:
    store = InMemoryStore()
    task = store.create_task(Task(title="t", budget=10))
    with pytest.raises(ConflictError):
        transition_task(store, task, TaskStatus.COMPLETED, assigned_agent_id="a1")
    assert store.get_task(task.id).status == TaskStatus.OPEN


_LIFECYCLE_EDGES = {
    (TaskStatus.OPEN, TaskStatus.IN_AUCTION),
    (TaskStatus.OPEN, TaskStatus.CANCELLED),
    (TaskStatus.IN_AUCTION, TaskStatus.OPEN),
    (TaskStatus.IN_AUCTION, TaskStatus.ASSIGNED),
    (TaskStatus.IN_AUCTION, TaskStatus.CANCELLED),
    (TaskStatus.ASSIGNED, TaskStatus.RUNNING),
    (TaskStatus.ASSIGNED, TaskStatus.CANCELLED),
    (TaskStatus.RUNNING, TaskStatus.COMPLETED),
    (TaskStatus.RUNNING, TaskStatus.FAILED),
}


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    list(itertools.product(TaskStatus, TaskStatus)),
    ids=lambda s: s.value,
)
def test_assert_transition_on_every_pair(from_status: TaskStatus, to_status: TaskStatus) -> None:
    if (from_status, to_status) in _LIFECYCLE_EDGES:
        assert_transition(from_status, to_status)
    else:
        with pytest.raises(ConflictError):
            assert_transition(from_status, to_status)
