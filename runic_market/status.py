"""Task status state machine.

``TRANSITIONS`` is the single source of truth for legal Task status changes.
The ``can_*`` predicates are derived from it, and ``transition_task`` is the
only write path components use to move a Task between statuses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from runic_market.errors import AuctionError, ConflictError
from runic_market.schemas import Task, TaskStatus

if TYPE_CHECKING:
    from runic_market.store import Store


TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.IN_AUCTION, TaskStatus.CANCELLED}),
    # IN_AUCTION -> OPEN: window closed without offers, or the auction was cancelled.
    TaskStatus.IN_AUCTION: frozenset(
        {TaskStatus.ASSIGNED, TaskStatus.OPEN, TaskStatus.CANCELLED}
    ),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

STATUS_DESCRIPTIONS: dict[TaskStatus, str] = {
    TaskStatus.OPEN: "waiting for auction",
    TaskStatus.IN_AUCTION: "accepting offers",
    TaskStatus.ASSIGNED: "assigned to an agent",
    TaskStatus.RUNNING: "being executed",
    TaskStatus.COMPLETED: "successfully completed",
    TaskStatus.FAILED: "execution failed",
    TaskStatus.CANCELLED: "cancelled",
}

# Declaration order of the enum, used to list next states deterministically.
_ORDER = {s: i for i, s in enumerate(TaskStatus)}


def allowed_transitions(status: TaskStatus) -> list[TaskStatus]:
    return sorted(TRANSITIONS[status], key=_ORDER.__getitem__)


def is_valid_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def _describe(status: TaskStatus) -> str:
    return f"{status.value} ({STATUS_DESCRIPTIONS[status]})"


def _next_states_text(status: TaskStatus) -> str:
    nxt = allowed_transitions(status)
    if not nxt:
        return "none (terminal state)"
    return ", ".join(s.value for s in nxt)


def assert_transition(from_status: TaskStatus, to_status: TaskStatus) -> None:
    if not is_valid_transition(from_status, to_status):
        raise ConflictError(
            f"Invalid status transition: cannot go from {_describe(from_status)} "
            f"to {_describe(to_status)}. "
            f"Valid next states: {_next_states_text(from_status)}"
        )


def is_terminal(status: TaskStatus) -> bool:
    return not TRANSITIONS[status]


def can_accept_offers(status: TaskStatus) -> bool:
    # A task takes offers while an auction can still assign it: either it is
    # being auctioned, or it may enter an auction next.
    return TaskStatus.ASSIGNED in TRANSITIONS[status] or TaskStatus.IN_AUCTION in TRANSITIONS[status]


def can_be_cancelled(status: TaskStatus) -> bool:
    return TaskStatus.CANCELLED in TRANSITIONS[status]


def can_start_execution(status: TaskStatus) -> bool:
    return TaskStatus.RUNNING in TRANSITIONS[status]


def can_complete(status: TaskStatus) -> bool:
    return TaskStatus.COMPLETED in TRANSITIONS[status]


OFFER_ACCEPTING_STATUSES: frozenset[TaskStatus] = frozenset(
    s for s in TaskStatus if can_accept_offers(s)
)


class StatusGuard:
    """Wraps a current status and raises domain errors for wrong-phase operations."""

    def __init__(self, status: TaskStatus) -> None:
        self._status = TaskStatus(status)

    @property
    def status(self) -> TaskStatus:
        return self._status

    def transition_to(self, status: TaskStatus) -> StatusGuard:
        assert_transition(self._status, status)
        return StatusGuard(status)

    def can_transition_to(self, status: TaskStatus) -> bool:
        return is_valid_transition(self._status, status)

    def assert_can_accept_offers(self) -> None:
        if not can_accept_offers(self._status):
            raise AuctionError(
                f"Cannot accept offers: Task is {_describe(self._status)}. "
                "Offers are only accepted when status is OPEN or IN_AUCTION."
            )

    def assert_can_be_cancelled(self) -> None:
        if not can_be_cancelled(self._status):
            raise ConflictError(
                f"Cannot cancel: Task is {_describe(self._status)}. "
                "Only OPEN, IN_AUCTION, or ASSIGNED tasks can be cancelled."
            )

    def assert_can_start_execution(self) -> None:
        if not can_start_execution(self._status):
            raise ConflictError(
                f"Cannot start execution: Task is {_describe(self._status)}. "
                "Execution can only start when status is ASSIGNED."
            )

    def assert_can_complete(self) -> None:
        if not can_complete(self._status):
            raise ConflictError(
                f"Cannot complete: Task is {_describe(self._status)}. "
                "Completion is only valid when status is RUNNING."
            )


def guard_status(status: TaskStatus) -> StatusGuard:
    return StatusGuard(status)


def transition_task(store: Store, task: Task, to_status: TaskStatus, **changes: Any) -> Task:
    """Move ``task`` to ``to_status`` after checking the edge.

    The write is a compare-and-set on the status the caller observed, so a
    task that changed underneath the caller raises ``ConflictError`` instead of
    being overwritten.
    """
    assert_transition(task.status, to_status)
    return store.update_task(task.id, expected_status=task.status, status=to_status, **changes)
