"""Worker sessions: sequential resource processing under a context budget."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from context_relay.orchestrator.backend.base import (
    ProcessRequest,
    ResourceProcessor,
    ResourceProvider,
)
from context_relay.orchestrator.compaction import Compactor, WorkingContext
from context_relay.orchestrator.errors import (
    BudgetExceededError,
    LedgerUnavailableError,
    SessionCrash,
)
from context_relay.orchestrator.failure_classifier import (
    SessionFailureClassification,
    classify_session_failure,
)
from context_relay.orchestrator.models import (
    Budget,
    FailureClass,
    ResourceOutput,
    SessionState,
)

logger = logging.getLogger(__name__)


class BudgetSignal(str, Enum):
    OK = "ok"
    COMPACT = "compact"
    RESET = "reset"


class BudgetMonitor:
    """Tracks consumed units of one session against the budget thresholds."""

    def __init__(self, budget: Budget) -> None:
        self.budget = budget
        self.consumed = 0
        self.peak = 0

    def consume(self, units: int) -> BudgetSignal:
        if units < 0:
            raise ValueError("Consumed units must be >= 0.")
        self.consumed += units
        self.peak = max(self.peak, self.consumed)
        if self.consumed >= self.budget.hard_threshold:
            return BudgetSignal.RESET
        if self.consumed >= self.budget.soft_threshold:
            return BudgetSignal.COMPACT
        return BudgetSignal.OK

    def after_compaction(self, compacted_units: int) -> BudgetSignal:
        """Restart from the baseline; still over soft means compaction failed."""

        self.consumed = self.budget.post_compaction_baseline + max(0, compacted_units)
        self.peak = max(self.peak, self.consumed)
        if self.consumed >= self.budget.soft_threshold:
            return BudgetSignal.RESET
        return BudgetSignal.OK


class SessionOutcomeKind(str, Enum):
    COMPLETED = "completed"
    RESET = "reset"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CRASHED = "crashed"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(slots=True)
class SessionOutcome:
    """How a session ended and which resources it finished."""

    kind: SessionOutcomeKind
    session_id: str
    subtask_id: str
    completed: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    consumed_units: int = 0
    peak_units: int = 0
    compactions: int = 0
    resource: str | None = None
    error: BaseException | None = None
    classification: SessionFailureClassification | None = None


class SessionListener(Protocol):
    """Receives session progress; every callback is recorded before the session continues."""

    def on_resource_completed(
        self,
        session: WorkerSession,
        resource: str,
        output: ResourceOutput,
    ) -> bool:
        """Record a finished resource; False means the session must stop."""

    def on_compaction_started(self, session: WorkerSession) -> None:
        """Record the switch to compacting."""

    def on_compaction_finished(self, session: WorkerSession) -> None:
        """Record the switch back to dispatched."""


class WorkerSession:
    """One bounded-context execution of a subtask's resources, in order."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        session_id: str,
        task_id: str,
        subtask_id: str,
        description: str,
        resources: tuple[str, ...],
        budget: Budget,
        provider: ResourceProvider,
        processor: ResourceProcessor,
        compactor: Compactor,
        listener: SessionListener,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.task_id = task_id
        self.subtask_id = subtask_id
        self.description = description
        self.resources = resources
        self.budget = budget
        self.provider = provider
        self.processor = processor
        self.compactor = compactor
        self.listener = listener
        self.clock = clock
        self.monitor = BudgetMonitor(budget)
        self.context = WorkingContext()
        self.state = SessionState.ACTIVE
        self.compactions = 0
        self.stop_event = threading.Event()
        self.deadline = clock() + budget.session_timeout_seconds

    @property
    def consumed_units(self) -> int:
        return self.monitor.consumed

    def request_stop(self) -> None:
        self.stop_event.set()

    def run(self) -> SessionOutcome:  # noqa: C901, PLR0911
        """Process resources until done, reset, cancelled or crashed.

        ``LedgerUnavailableError`` raised by the listener propagates; any
        other error ends the session as a classified crash.
        """

        resources = list(self.resources)
        completed: list[str] = []
        try:
            for index, resource in enumerate(resources):
                if self.stop_event.is_set():
                    return self._finish(SessionOutcomeKind.CANCELLED, completed, resources[index:])

                output = self._process(resource)
                if output.units >= self.budget.hard_threshold:
                    if not completed:
                        raise BudgetExceededError(
                            resource,
                            output.units,
                            self.budget.hard_threshold,
                        )
                    logger.info(
                        "Session %s: %s alone crossed the hard threshold (%d units); resetting",
                        self.session_id,
                        resource,
                        output.units,
                    )
                    return self._finish(SessionOutcomeKind.RESET, completed, resources[index:])

                if not self.listener.on_resource_completed(self, resource, output):
                    return self._finish(SessionOutcomeKind.CANCELLED, completed, resources[index:])
                completed.append(resource)
                self.context.absorb(resource, output)
                remaining = resources[index + 1 :]

                signal = self.monitor.consume(output.units)
                if not remaining:
                    break
                if signal == BudgetSignal.COMPACT:
                    signal = self._compact()
                if signal == BudgetSignal.RESET:
                    logger.info(
                        "Session %s reset at %d units after %d resource(s); %d remain",
                        self.session_id,
                        self.monitor.consumed,
                        len(completed),
                        len(remaining),
                    )
                    return self._finish(SessionOutcomeKind.RESET, completed, remaining)
                if self.clock() >= self.deadline:
                    logger.info(
                        "Session %s passed its deadline after %d resource(s); %d remain",
                        self.session_id,
                        len(completed),
                        len(remaining),
                    )
                    return self._finish(SessionOutcomeKind.TIMEOUT, completed, remaining)
        except BudgetExceededError as error:
            logger.warning("Session %s: %s", self.session_id, error)
            outcome = self._finish(
                SessionOutcomeKind.BUDGET_EXCEEDED,
                completed,
                resources[len(completed) :],
            )
            outcome.resource = error.resource
            outcome.error = error
            return outcome
        except LedgerUnavailableError:
            self.state = SessionState.TERMINATED
            raise
        except Exception as error:  # noqa: BLE001
            return self._crashed(error, completed, resources[len(completed) :])

        return self._finish(SessionOutcomeKind.COMPLETED, completed, [])

    def _process(self, resource: str) -> ResourceOutput:
        content = self.provider.read(resource)
        return self.processor.process(
            ProcessRequest(
                task_id=self.task_id,
                subtask_id=self.subtask_id,
                session_id=self.session_id,
                description=self.description,
                resource_id=resource,
                content=content,
                context=self.context,
                stop_requested=self.stop_event.is_set,
                remaining_seconds=max(self.deadline - self.clock(), 0.0),
            ),
        )

    def _compact(self) -> BudgetSignal:
        self.state = SessionState.COMPACTING
        self.listener.on_compaction_started(self)
        self.compactions += 1
        try:
            result = self.compactor.compact(self.context)
        except Exception as error:  # noqa: BLE001
            logger.warning("Session %s compaction failed: %s", self.session_id, error)
            signal = BudgetSignal.RESET
        else:
            self.context = result.context
            signal = self.monitor.after_compaction(result.units)
        self.listener.on_compaction_finished(self)
        self.state = SessionState.ACTIVE
        return signal

    def _crashed(
        self,
        error: Exception,
        completed: list[str],
        remaining: list[str],
    ) -> SessionOutcome:
        if self.stop_event.is_set():
            return self._finish(SessionOutcomeKind.CANCELLED, completed, remaining)

        classification = classify_session_failure(error)
        if classification.failure_class == FailureClass.CONTEXT_OVERFLOW and remaining:
            if not completed:
                outcome = self._finish(SessionOutcomeKind.BUDGET_EXCEEDED, completed, remaining)
                outcome.resource = remaining[0]
                outcome.error = error
                outcome.classification = classification
                return outcome
            return self._finish(SessionOutcomeKind.RESET, completed, remaining)
        if completed and self.clock() >= self.deadline:
            logger.info(
                "Session %s ran out of time inside %s; %d resource(s) remain",
                self.session_id,
                remaining[0] if remaining else "-",
                len(remaining),
            )
            return self._finish(SessionOutcomeKind.TIMEOUT, completed, remaining)

        logger.warning(
            "Session %s crashed (%s): %s",
            self.session_id,
            classification.reason_code,
            error,
        )
        crash = SessionCrash(
            self.subtask_id,
            failure_class=classification.failure_class,
            reason_code=classification.reason_code,
            message=str(error),
        )
        crash.__cause__ = error
        outcome = self._finish(SessionOutcomeKind.CRASHED, completed, remaining)
        outcome.error = crash
        outcome.classification = classification
        return outcome

    def _finish(
        self,
        kind: SessionOutcomeKind,
        completed: list[str],
        remaining: list[str],
    ) -> SessionOutcome:
        if kind in (SessionOutcomeKind.RESET, SessionOutcomeKind.TIMEOUT):
            self.state = SessionState.RESET
        else:
            self.state = SessionState.TERMINATED
        return SessionOutcome(
            kind=kind,
            session_id=self.session_id,
            subtask_id=self.subtask_id,
            completed=list(completed),
            remaining=list(remaining),
            consumed_units=self.monitor.consumed,
            peak_units=self.monitor.peak,
            compactions=self.compactions,
        )
