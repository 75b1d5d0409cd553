"""Error taxonomy for planning, execution, aggregation and the ledger."""

from __future__ import annotations

from enum import Enum

from context_relay.orchestrator.models import FailureClass


class OrchestratorError(RuntimeError):
    """Base class for orchestrator errors."""


class GraphErrorKind(str, Enum):
    CYCLIC = "cyclic"
    EMPTY = "empty"
    UNKNOWN_RESOURCE = "unknown_resource"


class GraphError(OrchestratorError):
    """Task rejected at submission because its dependency graph is invalid."""

    def __init__(self, kind: GraphErrorKind, resources: tuple[str, ...] = ()) -> None:
        detail = f": {', '.join(resources)}" if resources else ""
        super().__init__(f"Invalid task graph ({kind.value}){detail}")
        self.kind = kind
        self.resources = resources


class BudgetExceededError(OrchestratorError):
    """A single resource does not fit under the hard threshold even alone."""

    def __init__(self, resource: str, units: int, hard_threshold: int) -> None:
        super().__init__(
            f"Resource {resource} consumed {units} units alone "
            f"(hard threshold {hard_threshold}).",
        )
        self.resource = resource
        self.units = units
        self.hard_threshold = hard_threshold


class SessionCrash(OrchestratorError):
    """Worker session ended with an unexpected error."""

    def __init__(
        self,
        subtask_id: str,
        *,
        failure_class: FailureClass,
        reason_code: str,
        message: str,
    ) -> None:
        super().__init__(f"Session for {subtask_id} crashed ({reason_code}): {message}")
        self.subtask_id = subtask_id
        self.failure_class = failure_class
        self.reason_code = reason_code


class ConflictError(OrchestratorError):
    """Two subtasks produced different outputs for the same resource."""

    def __init__(self, resource: str, subtask_ids: tuple[str, ...]) -> None:
        super().__init__(
            f"Conflicting outputs for resource {resource} from {', '.join(subtask_ids)}",
        )
        self.resource = resource
        self.subtask_ids = subtask_ids


class VerificationFailure(OrchestratorError):
    """A verification hook rejected the merged result."""

    def __init__(self, hook: str, diagnostics: str) -> None:
        super().__init__(f"Verification hook {hook} failed.")
        self.hook = hook
        self.diagnostics = diagnostics


class LedgerUnavailableError(OrchestratorError):
    """The plan ledger could not record a transition."""


class InvalidTransitionError(OrchestratorError):
    """A state transition would regress or skip a lifecycle state."""


class ProcessorError(RuntimeError):
    """Resource processor failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
