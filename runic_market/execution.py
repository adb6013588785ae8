from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Protocol

from runic_market.errors import NotFoundError, ValidationError
from runic_market.events import EventBus, NullEventBus, publish_safely
from runic_market.ledger import Ledger
from runic_market.locks import KeyedLocks
from runic_market.logging import fmt_fields, get_logger
from runic_market.reputation import ReputationTracker
from runic_market.schemas import (
    EventType,
    Execution,
    ExecutionOutcome,
    ExecutionStatus,
    PaymentRef,
    Task,
    TaskStatus,
    utcnow,
)
from runic_market.stats import AgentStatsProjector
from runic_market.status import guard_status, transition_task
from runic_market.store import Store

logger = get_logger("execution")

SUCCESS_REASON = "Successfully completed Task execution"


class Dispatcher(Protocol):
    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future: ...


class SynchronousDispatcher:
    """Runs work immediately and hands back an already-resolved future.

    The default for payment requests: results stay deterministic and there is
    no thread to join. Any ``concurrent.futures.Executor`` can be passed instead
    to make the ledger call truly fire-and-forget.
    """

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class ExecutionCoordinator:
    def __init__(
        self,
        *,
        store: Store,
        ledger: Ledger,
        reputation: ReputationTracker,
        stats: AgentStatsProjector,
        task_locks: KeyedLocks | None = None,
        bus: EventBus | None = None,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._reputation = reputation
        self._stats = stats
        self._task_locks = task_locks if task_locks is not None else KeyedLocks("tasks")
        self._bus = bus if bus is not None else NullEventBus()
        self._dispatcher: Dispatcher = dispatcher or SynchronousDispatcher()
        self._clock = clock

    def start_execution(self, task_id: str, agent_id: str) -> Execution:
        with self._task_locks.hold(task_id):
            task = self._require_task(task_id)
            self._require_assignee(task, agent_id)
            guard_status(task.status).assert_can_start_execution()

            now = self._clock()
            pending = self._store.find_execution(
                task_id=task_id, agent_id=agent_id, status=ExecutionStatus.PENDING
            )
            if pending is None:
                pending = self._store.create_execution(
                    Execution(task_id=task_id, agent_id=agent_id, created_at=now)
                )
            execution = self._store.update_execution(
                pending.id,
                expected_status=ExecutionStatus.PENDING,
                status=ExecutionStatus.RUNNING,
                started_at=now,
            )
            transition_task(self._store, task, TaskStatus.RUNNING)

        logger.info(
            "Execution started %s",
            fmt_fields(execution_id=execution.id, task_id=task_id, agent_id=agent_id),
        )
        publish_safely(
            self._bus,
            EventType.EXECUTION_STARTED,
            {"task_id": task_id, "agent_id": agent_id, "execution_id": execution.id},
        )
        return execution

    def complete_execution(
        self, task_id: str, agent_id: str, outcome: ExecutionOutcome
    ) -> Execution:
        with self._task_locks.hold(task_id):
            task = self._require_task(task_id)
            self._require_assignee(task, agent_id)
            guard_status(task.status).assert_can_complete()
            if not outcome.success and not outcome.error_message:
                raise ValidationError("error_message is required when success is false")

            running = self._store.find_execution(
                task_id=task_id, agent_id=agent_id, status=ExecutionStatus.RUNNING
            )
            if running is None:
                raise NotFoundError("Running Execution")

            execution = self._store.update_execution(
                running.id,
                expected_status=ExecutionStatus.RUNNING,
                status=ExecutionStatus.SUCCESS if outcome.success else ExecutionStatus.FAILURE,
                completed_at=self._clock(),
                result_summary=outcome.result_summary,
                signed_result_payload=outcome.signed_result_payload,
                proof_hash=outcome.proof_hash,
                error_message=outcome.error_message,
            )
            final = transition_task(
                self._store,
                task,
                TaskStatus.COMPLETED if outcome.success else TaskStatus.FAILED,
            )

            # Lock order is task -> agent; both helpers take the agent lock.
            if outcome.success:
                self._request_payment(final)
                self._reputation.apply_event(
                    agent_id, task_id, self._reputation.policy.gain_on_success, SUCCESS_REASON
                )
            else:
                self._reputation.apply_event(
                    agent_id,
                    task_id,
                    -self._reputation.policy.loss_on_failure,
                    f"Task execution failed: {outcome.error_message}",
                )
            self._stats.recompute(agent_id)

        logger.info(
            "Execution completed %s",
            fmt_fields(
                execution_id=execution.id,
                task_id=task_id,
                agent_id=agent_id,
                success=outcome.success,
                duration_seconds=execution.duration_seconds,
            ),
        )
        publish_safely(
            self._bus,
            EventType.EXECUTION_COMPLETED,
            {
                "task_id": task_id,
                "agent_id": agent_id,
                "execution_id": execution.id,
                "status": execution.status.value,
                "success": outcome.success,
            },
        )
        return execution

    # Queries

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def list_for_task(self, task_id: str) -> list[Execution]:
        return sorted(self._store.list_executions(task_id=task_id), key=lambda e: e.created_at)

    def list_for_agent(self, agent_id: str, *, limit: int = 50) -> list[Execution]:
        executions = sorted(
            self._store.list_executions(agent_id=agent_id),
            key=lambda e: e.created_at,
            reverse=True,
        )
        return executions[: max(0, limit)]

    def latest_for_task(self, task_id: str) -> Execution | None:
        executions = self.list_for_task(task_id)
        return executions[-1] if executions else None

    # Internals

    def _request_payment(self, task: Task) -> None:
        future = self._dispatcher.submit(
            self._ledger.create_pending_payment,
            task.id,
            task.assigned_agent_id,
            task.budget,
            task.payment_token_symbol,
        )
        future.add_done_callback(lambda f: self._on_payment_done(task.id, f))

    def _on_payment_done(self, task_id: str, future: Future) -> None:
        # Completion stands even if settlement fails; the failure is only logged.
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Pending payment failed %s",
                fmt_fields(task_id=task_id, error=repr(exc)),
            )
            return
        payment: PaymentRef = future.result()
        logger.info(
            "Pending payment created %s",
            fmt_fields(
                task_id=task_id,
                payment_id=payment.id,
                amount=payment.amount,
                token=payment.token_symbol,
            ),
        )
        publish_safely(self._bus, EventType.PAYMENT_CREATED, payment.model_dump(mode="json"))

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    @staticmethod
    def _require_assignee(task: Task, agent_id: str) -> None:
        if task.assigned_agent_id != agent_id:
            raise ValidationError("Agent is not assigned to this Task")
