"""Scheduler: plans tasks, dispatches worker sessions and reacts to their outcomes."""

from __future__ import annotations

import copy
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from context_relay.ledger.ledger import PlanLedger
from context_relay.orchestrator.aggregator import ResultAggregator
from context_relay.orchestrator.backend.base import (
    ResourceProcessor,
    ResourceProvider,
    VerificationHook,
)
from context_relay.orchestrator.compaction import Compactor, FactPreservingCompactor
from context_relay.orchestrator.errors import LedgerUnavailableError
from context_relay.orchestrator.failure_classifier import (
    SessionFailureClassification,
    classify_session_failure,
    orphaned_session_classification,
)
from context_relay.orchestrator.graph import TaskGraphBuilder
from context_relay.orchestrator.models import (
    ACTIVE_SUBTASK_STATUSES,
    RETRYABLE_FAILURE_CLASSES,
    TERMINAL_SUBTASK_STATUSES,
    Budget,
    FailureClass,
    PlanEvent,
    PlanReceipt,
    PlanRecord,
    ProgressEvent,
    ResourceOutput,
    RunSummary,
    Subtask,
    SubtaskStatus,
    TaskOutcome,
    TaskStatus,
)
from context_relay.orchestrator.replay import TaskState, apply_record, replay
from context_relay.orchestrator.sanitization import sanitize_preview
from context_relay.orchestrator.session import (
    SessionOutcome,
    SessionOutcomeKind,
    WorkerSession,
)
from context_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

_MAX_WAIT_SECONDS = 0.5


class Scheduler:
    """Single-process orchestrator over a durable plan ledger.

    Every state change is appended to the ledger first and then applied to
    the in-memory task state with ``apply_record``, so replaying the ledger
    reproduces exactly what the live scheduler saw. All mutations happen
    under one lock; sessions run on a thread pool sized by the budget's
    concurrency limit.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: PlanLedger,
        provider: ResourceProvider,
        processor: ResourceProcessor,
        budget: Budget | None = None,
        hooks: Iterable[VerificationHook] = (),
        compactor: Compactor | None = None,
        cost_estimator: Callable[[str], int] | None = None,
        worker_id_prefix: str = "relay-worker",
        retry_base_seconds: float = 0.0,
        retry_max_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.provider = provider
        self.processor = processor
        self.budget = budget or Budget()
        self.compactor = compactor or FactPreservingCompactor()
        self.cost_estimator = cost_estimator
        self.worker_id_prefix = worker_id_prefix
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.clock = clock
        self.graph_builder = TaskGraphBuilder()
        self.aggregator = ResultAggregator(provider=provider, hooks=tuple(hooks))
        self.max_active_observed = 0

        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)
        self._states: dict[str, TaskState] = {}
        self._outcomes: dict[str, TaskOutcome] = {}
        self._sessions: dict[str, WorkerSession] = {}
        self._pending_aggregation: set[str] = set()
        self._subscribers: list[ProgressCallback] = []
        self._executor: ThreadPoolExecutor | None = None
        self._fatal_error: Exception | None = None
        self._summary = RunSummary()
        self._random = random.Random()

    # Public operations

    def submit(
        self,
        description: str,
        resources: Iterable[str],
        dependency_edges: Iterable[tuple[str, str]] = (),
        *,
        resource_costs: Mapping[str, int] | None = None,
    ) -> PlanReceipt:
        """Plan a task and record it; rejected graphs leave no records."""

        resource_list = list(resources)
        if resource_costs is None and self.cost_estimator is not None:
            resource_costs = {
                resource: self.cost_estimator(resource) for resource in sorted(set(resource_list))
            }
        graph = self.graph_builder.build(
            description,
            resource_list,
            dependency_edges,
            self.budget,
            resource_costs=resource_costs,
        )

        with self._condition:
            self._raise_if_halted()
            task = graph.task
            self._record(
                task.task_id,
                event=PlanEvent.TASK_SUBMITTED,
                to_state=TaskStatus.PLANNED.value,
                details={
                    "description": task.description,
                    "resources": list(task.resources),
                    "edges": [list(edge) for edge in task.dependency_edges],
                },
            )
            for subtask in graph.subtasks:
                if self._states[task.task_id].is_terminal():
                    break
                self._record(
                    task.task_id,
                    event=PlanEvent.SUBTASK_PLANNED,
                    subtask_id=subtask.subtask_id,
                    to_state=SubtaskStatus.PENDING.value,
                    details={
                        "resources": list(subtask.resources),
                        "depends_on": list(subtask.depends_on),
                        "oversized": subtask.oversized,
                    },
                )
            state = self._states[task.task_id]
            self._promote_ready(state)
            self._condition.notify_all()

        logger.info(
            "Submitted task %s: resources=%d subtasks=%d",
            task.task_id,
            len(task.resources),
            len(graph.subtasks),
        )
        return PlanReceipt(task_id=task.task_id, subtask_ids=tuple(state.task.subtask_ids))

    def cancel(self, task_id: str) -> None:
        """Cancel a task; idempotent, unknown ids are ignored."""

        with self._condition:
            state = self._states.get(task_id)
            if state is None:
                logger.warning("Cancel ignored for unknown task %s", task_id)
                return
            if state.is_terminal():
                return
            self._raise_if_halted()
            self._record(
                task_id,
                event=PlanEvent.TASK_CANCELLED,
                from_state=state.task.status.value,
                to_state=TaskStatus.CANCELLED.value,
                details={"reason": "cancelled"},
            )
            for subtask_id in sorted(state.subtasks):
                subtask = state.subtasks[subtask_id]
                if subtask.status in TERMINAL_SUBTASK_STATUSES:
                    continue
                session = self._sessions.get(subtask_id)
                if session is not None:
                    session.request_stop()
                self._record(
                    task_id,
                    event=PlanEvent.SUBTASK_CANCELLED,
                    subtask_id=subtask_id,
                    from_state=subtask.status.value,
                    to_state=SubtaskStatus.CANCELLED.value,
                    worker_id=subtask.session_id,
                    details={"reason": "task_cancelled"},
                )
                self._summary.cancelled += 1
            self._pending_aggregation.discard(task_id)
            self._condition.notify_all()
        logger.info("Cancelled task %s", task_id)

    def subscribe(self, callback: ProgressCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def snapshot(self, task_id: str) -> TaskState:
        with self._lock:
            return copy.deepcopy(self._states[task_id])

    def outcome(self, task_id: str) -> TaskOutcome | None:
        with self._lock:
            return self._outcomes.get(task_id)

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._states)

    def load(self, task_id: str) -> TaskState:
        """Replay one task into memory without resuming it."""

        with self._lock:
            if task_id not in self._states:
                records = self.ledger.read_all(task_id)
                if not records:
                    raise KeyError(task_id)
                self._states[task_id] = replay(records)
            return copy.deepcopy(self._states[task_id])

    def recover(self) -> list[str]:
        """Replay unfinished tasks; sessions found active are treated as crashed."""

        recovered: list[str] = []
        for task_id in self.ledger.task_ids():
            with self._lock:
                if task_id in self._states:
                    continue
            state = replay(self.ledger.read_all(task_id))
            with self._condition:
                self._states[task_id] = state
                if state.is_terminal():
                    continue
                recovered.append(task_id)
                for subtask_id in sorted(state.subtasks):
                    subtask = state.subtasks[subtask_id]
                    if subtask.status in ACTIVE_SUBTASK_STATUSES:
                        logger.warning(
                            "Subtask %s was %s when the previous run stopped",
                            subtask_id,
                            subtask.status.value,
                        )
                        self._handle_crash(
                            state,
                            subtask,
                            orphaned_session_classification(),
                            error_text="session lost with the previous orchestrator process",
                        )
                self._promote_ready(state)
                if state.is_settled():
                    self._pending_aggregation.add(task_id)
                self._condition.notify_all()
        logger.info("Recovered %d unfinished task(s)", len(recovered))
        return recovered

    def run_until_idle(self, *, timeout_seconds: float | None = None) -> RunSummary:
        """Dispatch until every known task is terminal or the timeout elapses."""

        deadline = None if timeout_seconds is None else self.clock() + timeout_seconds
        with self._lock:
            self._summary = RunSummary()
            self._raise_if_halted()

        with ThreadPoolExecutor(
            max_workers=self.budget.concurrency_limit,
            thread_name_prefix="context-relay-session",
        ) as executor:
            self._executor = executor
            try:
                self._loop(deadline)
            finally:
                with self._lock:
                    self._executor = None
                    for session in self._sessions.values():
                        session.request_stop()

        with self._lock:
            self._raise_if_halted()
            return copy.copy(self._summary)

    # Dispatch loop

    def _loop(self, deadline: float | None) -> None:
        while True:
            with self._condition:
                if self._fatal_error is not None:
                    return
                self._dispatch_ready()
                settled = self._take_settled()
                if not settled:
                    if self._is_idle():
                        return
                    wait_seconds = self._wait_seconds(deadline)
                    if wait_seconds <= 0:
                        logger.info(
                            "Run timeout reached with %d active session(s)",
                            len(self._sessions),
                        )
                        return
                    self._condition.wait(timeout=wait_seconds)
                    continue
            for state in settled:
                self._finalize(state)

    def _dispatch_ready(self) -> None:
        if self._executor is None:
            return
        now = utc_now()
        blocked: set[str] = set()
        candidates = sorted(
            (
                subtask
                for state in self._states.values()
                if not state.is_terminal()
                for subtask in state.ready_subtasks()
            ),
            key=lambda subtask: subtask.ready_sequence or 0,
        )
        for subtask in candidates:
            if len(self._sessions) >= self.budget.concurrency_limit:
                return
            task_id = subtask.task_id
            if task_id in blocked:
                continue
            # A subscriber may have cancelled the task since candidates were collected.
            live = self._states[task_id]
            if live.is_terminal() or subtask.status != SubtaskStatus.READY:
                continue
            if subtask.run_after is not None and subtask.run_after > now:
                continue
            active = [
                session for session in self._sessions.values() if session.task_id == task_id
            ]
            subtasks = self._states[task_id].subtasks
            if any(subtasks[session.subtask_id].oversized for session in active):
                blocked.add(task_id)
                continue
            if subtask.oversized and active:
                blocked.add(task_id)
                continue
            self._start_session(self._states[task_id], subtask)
            if subtask.oversized:
                blocked.add(task_id)

    def _start_session(self, state: TaskState, subtask: Subtask) -> None:
        session_id = f"{self.worker_id_prefix}-{uuid4().hex[:8]}"
        if state.task.status == TaskStatus.PLANNED:
            self._record(
                state.task_id,
                event=PlanEvent.TASK_STARTED,
                from_state=TaskStatus.PLANNED.value,
                to_state=TaskStatus.IN_PROGRESS.value,
            )
            if state.is_terminal():
                return
        self._record(
            state.task_id,
            event=PlanEvent.SESSION_STARTED,
            subtask_id=subtask.subtask_id,
            from_state=SubtaskStatus.READY.value,
            to_state=SubtaskStatus.DISPATCHED.value,
            worker_id=session_id,
            details={"resources": list(subtask.resources), "attempt": subtask.attempt},
        )
        if state.is_terminal() or subtask.status != SubtaskStatus.DISPATCHED:
            logger.info("Subtask %s cancelled before its session started", subtask.subtask_id)
            return
        session = WorkerSession(
            session_id=session_id,
            task_id=state.task_id,
            subtask_id=subtask.subtask_id,
            description=state.task.description,
            resources=subtask.resources,
            budget=self.budget,
            provider=self.provider,
            processor=self.processor,
            compactor=self.compactor,
            listener=self,
            clock=self.clock,
        )
        self._sessions[subtask.subtask_id] = session
        self.max_active_observed = max(self.max_active_observed, len(self._sessions))
        self._summary.dispatched += 1
        logger.info(
            "Dispatched %s to %s: resources=%d attempt=%d",
            subtask.subtask_id,
            session_id,
            len(subtask.resources),
            subtask.attempt,
        )
        if self._executor is not None:
            self._executor.submit(self._run_session, session)

    def _take_settled(self) -> list[TaskState]:
        settled: list[TaskState] = []
        for task_id in sorted(self._pending_aggregation):
            state = self._states[task_id]
            if not state.is_terminal():
                settled.append(copy.deepcopy(state))
        self._pending_aggregation.clear()
        return settled

    def _is_open(self, task_id: str) -> bool:
        with self._lock:
            return not self._states[task_id].is_terminal()

    def _is_idle(self) -> bool:
        if self._sessions or self._pending_aggregation:
            return False
        return not any(
            state.ready_subtasks() for state in self._states.values() if not state.is_terminal()
        )

    def _wait_seconds(self, deadline: float | None) -> float:
        wait_seconds = _MAX_WAIT_SECONDS
        if deadline is not None:
            wait_seconds = min(wait_seconds, deadline - self.clock())
        delayed = [
            subtask.run_after
            for state in self._states.values()
            if not state.is_terminal()
            for subtask in state.ready_subtasks()
            if subtask.run_after is not None
        ]
        if delayed:
            until_ready = (min(delayed) - utc_now()).total_seconds()
            wait_seconds = min(wait_seconds, max(until_ready, 0.01))
        return wait_seconds

    def _finalize(self, state: TaskState) -> None:
        outcome = self.aggregator.aggregate(
            state,
            still_open=lambda: self._is_open(state.task_id),
        )
        with self._condition:
            live = self._states[state.task_id]
            if live.is_terminal():
                logger.info(
                    "Task %s reached %s during aggregation; result discarded",
                    state.task_id,
                    live.task.status.value,
                )
                return
            completed = outcome.status == TaskStatus.COMPLETED
            self._record(
                state.task_id,
                event=PlanEvent.TASK_COMPLETED if completed else PlanEvent.TASK_FAILED,
                from_state=live.task.status.value,
                to_state=outcome.status.value,
                details=outcome.diagnostic,
            )
            self._outcomes[state.task_id] = outcome
            if completed:
                self._summary.tasks_completed += 1
            else:
                self._summary.tasks_failed += 1
            self._condition.notify_all()
        if completed:
            logger.info("Task %s completed: resources=%d", state.task_id, len(outcome.outputs))
        else:
            logger.warning(
                "Task %s failed: reason=%s",
                state.task_id,
                outcome.diagnostic.get("reason"),
            )

    # Session callbacks (worker threads)

    def on_resource_completed(
        self,
        session: WorkerSession,
        resource: str,
        output: ResourceOutput,
    ) -> bool:
        with self._lock:
            subtask = self._live_subtask(session)
            if subtask is None:
                return False
            self._record(
                session.task_id,
                event=PlanEvent.RESOURCE_COMPLETED,
                subtask_id=subtask.subtask_id,
                from_state=subtask.status.value,
                to_state=subtask.status.value,
                worker_id=session.session_id,
                details={"resource": resource, "output": output.content, "units": output.units},
            )
            return True

    def on_compaction_started(self, session: WorkerSession) -> None:
        with self._lock:
            subtask = self._live_subtask(session)
            if subtask is None or subtask.status != SubtaskStatus.DISPATCHED:
                return
            self._record(
                session.task_id,
                event=PlanEvent.COMPACTION_STARTED,
                subtask_id=subtask.subtask_id,
                from_state=SubtaskStatus.DISPATCHED.value,
                to_state=SubtaskStatus.COMPACTING.value,
                worker_id=session.session_id,
                details={"consumed_units": session.consumed_units},
            )
            self._summary.compactions += 1

    def on_compaction_finished(self, session: WorkerSession) -> None:
        with self._lock:
            subtask = self._live_subtask(session)
            if subtask is None or subtask.status != SubtaskStatus.COMPACTING:
                return
            self._record(
                session.task_id,
                event=PlanEvent.COMPACTION_FINISHED,
                subtask_id=subtask.subtask_id,
                from_state=SubtaskStatus.COMPACTING.value,
                to_state=SubtaskStatus.DISPATCHED.value,
                worker_id=session.session_id,
                details={"consumed_units": session.consumed_units},
            )

    def _live_subtask(self, session: WorkerSession) -> Subtask | None:
        state = self._states[session.task_id]
        subtask = state.subtasks[session.subtask_id]
        if (
            state.is_terminal()
            or subtask.status not in ACTIVE_SUBTASK_STATUSES
            or subtask.session_id != session.session_id
        ):
            return None
        return subtask

    def _run_session(self, session: WorkerSession) -> None:
        outcome: SessionOutcome | None = None
        try:
            outcome = session.run()
        except LedgerUnavailableError:
            logger.error("Session %s stopped: plan ledger unavailable", session.session_id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Session %s failed outside its own error handling", session.session_id)
            self._halt(error)

        with self._condition:
            self._sessions.pop(session.subtask_id, None)
            try:
                if outcome is not None and self._fatal_error is None:
                    self._handle_outcome(session, outcome)
            except LedgerUnavailableError:
                logger.error(
                    "Outcome of %s not recorded: plan ledger unavailable",
                    session.subtask_id,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Handling outcome of %s failed", session.subtask_id)
                self._halt(error)
            finally:
                self._condition.notify_all()

    # Outcome handling (lock held)

    def _handle_outcome(self, session: WorkerSession, outcome: SessionOutcome) -> None:
        if self._live_subtask(session) is None:
            logger.debug("Discarding %s outcome of %s", outcome.kind.value, session.subtask_id)
            return
        state = self._states[session.task_id]
        subtask = state.subtasks[session.subtask_id]

        if outcome.kind == SessionOutcomeKind.COMPLETED:
            self._complete_subtask(state, subtask, outcome)
        elif outcome.kind in (SessionOutcomeKind.RESET, SessionOutcomeKind.TIMEOUT):
            self._summary.resets += 1
            self._split_or_requeue(
                state,
                subtask,
                reason=outcome.kind.value,
                attempt=subtask.attempt,
                extra={"consumed_units": outcome.consumed_units},
            )
        elif outcome.kind == SessionOutcomeKind.CANCELLED:
            self._split_or_requeue(state, subtask, reason="interrupted", attempt=subtask.attempt)
        elif outcome.kind == SessionOutcomeKind.CRASHED:
            self._summary.crashes += 1
            self._handle_crash(
                state,
                subtask,
                outcome.classification or classify_session_failure(outcome.error),
                error_text=sanitize_preview(str(outcome.error or ""), max_chars=500),
            )
        elif outcome.kind == SessionOutcomeKind.BUDGET_EXCEEDED:
            if outcome.resource is not None:
                self._isolate_resource(state, subtask, outcome.resource)
                if state.is_terminal() or subtask.status not in ACTIVE_SUBTASK_STATUSES:
                    return
            self._fail_subtask(
                state,
                subtask,
                failure_class=FailureClass.BUDGET_EXCEEDED,
                resource=outcome.resource,
                error=sanitize_preview(str(outcome.error or ""), max_chars=500),
            )

    def _complete_subtask(
        self,
        state: TaskState,
        subtask: Subtask,
        outcome: SessionOutcome,
    ) -> None:
        self._record(
            state.task_id,
            event=PlanEvent.SUBTASK_COMPLETED,
            subtask_id=subtask.subtask_id,
            from_state=subtask.status.value,
            to_state=SubtaskStatus.COMPLETED.value,
            worker_id=subtask.session_id,
            details={
                "consumed_units": outcome.consumed_units,
                "peak_units": outcome.peak_units,
                "compactions": outcome.compactions,
            },
        )
        self._summary.completed += 1
        self._on_subtask_terminal(state, subtask)

    def _handle_crash(
        self,
        state: TaskState,
        subtask: Subtask,
        classification: SessionFailureClassification,
        *,
        error_text: str,
    ) -> None:
        next_attempt = subtask.attempt + 1
        retryable = classification.failure_class in RETRYABLE_FAILURE_CLASSES
        if retryable and next_attempt <= self.budget.max_session_retries:
            delay_seconds = self._compute_retry_delay(retry_number=next_attempt)
            run_after = utc_now() + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None
            logger.warning(
                "Subtask %s crashed (%s); retry %d/%d in %.2fs",
                subtask.subtask_id,
                classification.reason_code,
                next_attempt,
                self.budget.max_session_retries,
                delay_seconds,
            )
            self._split_or_requeue(
                state,
                subtask,
                reason="session_crash",
                attempt=next_attempt,
                run_after=run_after,
                extra={**classification.to_details(), "error": error_text},
            )
            return

        self._fail_subtask(
            state,
            subtask,
            failure_class=classification.failure_class,
            resource=subtask.remaining_resources[0] if subtask.remaining_resources else None,
            error=error_text,
            extra=classification.to_details(),
        )

    def _split_or_requeue(  # noqa: PLR0913
        self,
        state: TaskState,
        subtask: Subtask,
        *,
        reason: str,
        attempt: int,
        run_after: datetime | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        completed = [
            resource for resource in subtask.resources if resource in subtask.completed_resources
        ]
        remaining = list(subtask.remaining_resources)
        if not remaining:
            self._record(
                state.task_id,
                event=PlanEvent.SUBTASK_COMPLETED,
                subtask_id=subtask.subtask_id,
                from_state=subtask.status.value,
                to_state=SubtaskStatus.COMPLETED.value,
                worker_id=subtask.session_id,
                details={"reason": reason},
            )
            self._summary.completed += 1
            self._on_subtask_terminal(state, subtask)
            return

        details: dict[str, Any] = {
            **(extra or {}),
            "reason": reason,
            "attempt": attempt,
            "run_after": run_after.isoformat() if run_after is not None else None,
        }
        if not completed:
            self._record(
                state.task_id,
                event=PlanEvent.SUBTASK_REQUEUED,
                subtask_id=subtask.subtask_id,
                from_state=subtask.status.value,
                to_state=SubtaskStatus.READY.value,
                worker_id=subtask.session_id,
                details=details,
            )
            logger.info(
                "Requeued %s (%s): resources=%d",
                subtask.subtask_id,
                reason,
                len(remaining),
            )
            return

        remainder_id = state.next_subtask_id()
        self._record(
            state.task_id,
            event=PlanEvent.SUBTASK_SPLIT,
            subtask_id=subtask.subtask_id,
            from_state=subtask.status.value,
            to_state=SubtaskStatus.COMPLETED.value,
            worker_id=subtask.session_id,
            details={
                **details,
                "completed": completed,
                "remainder_id": remainder_id,
                "remainder": remaining,
                "oversized": subtask.oversized,
            },
        )
        logger.info(
            "Split %s (%s): completed=%d remainder=%s resources=%d",
            subtask.subtask_id,
            reason,
            len(completed),
            remainder_id,
            len(remaining),
        )
        self._on_subtask_terminal(state, subtask)

    def _isolate_resource(self, state: TaskState, subtask: Subtask, resource: str) -> None:
        """Move everything that does not depend on ``resource`` to a fresh remainder."""

        remaining = subtask.remaining_resources
        if resource not in remaining:
            return
        isolated = _downstream_within(resource, remaining, state.task.dependency_edges)
        rest = [item for item in remaining if item not in isolated]
        if not rest:
            return
        remainder_id = state.next_subtask_id()
        self._record(
            state.task_id,
            event=PlanEvent.SUBTASK_ISOLATED,
            subtask_id=subtask.subtask_id,
            from_state=subtask.status.value,
            to_state=subtask.status.value,
            worker_id=subtask.session_id,
            details={
                "resource": resource,
                "isolated": [item for item in remaining if item in isolated],
                "remainder_id": remainder_id,
                "remainder": rest,
            },
        )
        logger.info(
            "Isolated %s in %s: remainder=%s resources=%d",
            resource,
            subtask.subtask_id,
            remainder_id,
            len(rest),
        )

    def _fail_subtask(  # noqa: PLR0913
        self,
        state: TaskState,
        subtask: Subtask,
        *,
        failure_class: FailureClass,
        resource: str | None,
        error: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._record(
            state.task_id,
            event=PlanEvent.SUBTASK_FAILED,
            subtask_id=subtask.subtask_id,
            from_state=subtask.status.value,
            to_state=SubtaskStatus.FAILED.value,
            worker_id=subtask.session_id,
            details={
                **(extra or {}),
                "failure_class": failure_class.value,
                "resource": resource,
                "attempt": subtask.attempt,
                "error": error,
                "completed_resources": list(subtask.completed_resources),
            },
        )
        self._summary.failed += 1
        logger.warning(
            "Subtask %s failed: failure_class=%s resource=%s",
            subtask.subtask_id,
            failure_class.value,
            resource,
        )
        self._on_subtask_terminal(state, subtask)

    def _on_subtask_terminal(self, state: TaskState, subtask: Subtask) -> None:
        if subtask.status == SubtaskStatus.FAILED:
            for dependent in state.downstream_of(subtask.subtask_id):
                if dependent.status in TERMINAL_SUBTASK_STATUSES:
                    continue
                session = self._sessions.get(dependent.subtask_id)
                if session is not None:
                    session.request_stop()
                self._record(
                    state.task_id,
                    event=PlanEvent.SUBTASK_CANCELLED,
                    subtask_id=dependent.subtask_id,
                    from_state=dependent.status.value,
                    to_state=SubtaskStatus.CANCELLED.value,
                    worker_id=dependent.session_id,
                    details={
                        "reason": "dependency_failed",
                        "failure_class": FailureClass.DEPENDENCY_FAILED.value,
                        "failed_subtask_id": subtask.subtask_id,
                    },
                )
                self._summary.cancelled += 1
        else:
            self._promote_ready(state)

        if state.is_settled() and not state.is_terminal():
            self._pending_aggregation.add(state.task_id)

    def _promote_ready(self, state: TaskState) -> None:
        for subtask in state.newly_ready():
            if state.is_terminal() or subtask.status != SubtaskStatus.PENDING:
                continue
            self._record(
                state.task_id,
                event=PlanEvent.SUBTASK_READY,
                subtask_id=subtask.subtask_id,
                from_state=SubtaskStatus.PENDING.value,
                to_state=SubtaskStatus.READY.value,
            )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    # Ledger and progress

    def _record(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        event: PlanEvent,
        subtask_id: str | None = None,
        from_state: str | None = None,
        to_state: str | None = None,
        worker_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> PlanRecord:
        with self._lock:
            try:
                record = self.ledger.append(
                    task_id=task_id,
                    event=event,
                    subtask_id=subtask_id,
                    from_state=from_state,
                    to_state=to_state,
                    worker_id=worker_id,
                    details=details,
                )
            except LedgerUnavailableError as error:
                self._halt(error)
                raise
            self._states[task_id] = apply_record(self._states.get(task_id), record)
            self._publish(record)
            return record

    def _publish(self, record: PlanRecord) -> None:
        if not self._subscribers:
            return
        event = ProgressEvent.from_record(record)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Progress subscriber failed on %s", record.event.value)

    def _halt(self, error: Exception) -> None:
        with self._condition:
            if self._fatal_error is None:
                self._fatal_error = error
                logger.error("Scheduler halted: %s", error)
            for session in self._sessions.values():
                session.request_stop()
            self._condition.notify_all()

    def _raise_if_halted(self) -> None:
        if self._fatal_error is not None:
            raise self._fatal_error


def _downstream_within(
    resource: str,
    members: Iterable[str],
    edges: Iterable[tuple[str, str]],
) -> set[str]:
    """``resource`` plus every member reachable from it along edges between members."""

    member_set = set(members)
    successors: dict[str, list[str]] = {}
    for before, after in edges:
        if before in member_set and after in member_set:
            successors.setdefault(before, []).append(after)
    found = {resource}
    frontier = [resource]
    while frontier:
        for after in successors.get(frontier.pop(), ()):
            if after not in found:
                found.add(after)
                frontier.append(after)
    return found
