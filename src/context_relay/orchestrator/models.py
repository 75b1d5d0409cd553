"""Domain models for bounded-context task orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubtaskStatus(str, Enum):
    """Durable subtask lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    COMPACTING = "compacting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionState(str, Enum):
    """Worker session states."""

    ACTIVE = "active"
    COMPACTING = "compacting"
    RESET = "reset"
    TERMINATED = "terminated"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    CONTEXT_OVERFLOW = "context_overflow"
    SESSION_CRASH = "session_crash"
    PROCESSOR_TRANSIENT = "processor_transient"
    PROCESSOR_NON_RETRYABLE = "processor_non_retryable"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEPENDENCY_FAILED = "dependency_failed"
    CONFLICT = "conflict"
    VERIFICATION_FAILED = "verification_failed"


class PlanEvent(str, Enum):
    """Ledger event kinds."""

    TASK_SUBMITTED = "task_submitted"
    SUBTASK_PLANNED = "subtask_planned"
    SUBTASK_READY = "subtask_ready"
    TASK_STARTED = "task_started"
    SESSION_STARTED = "session_started"
    RESOURCE_COMPLETED = "resource_completed"
    COMPACTION_STARTED = "compaction_started"
    COMPACTION_FINISHED = "compaction_finished"
    SUBTASK_SPLIT = "subtask_split"
    SUBTASK_ISOLATED = "subtask_isolated"
    SUBTASK_REQUEUED = "subtask_requeued"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_FAILED = "subtask_failed"
    SUBTASK_CANCELLED = "subtask_cancelled"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)
TERMINAL_SUBTASK_STATUSES = frozenset(
    {SubtaskStatus.COMPLETED, SubtaskStatus.FAILED, SubtaskStatus.CANCELLED},
)
ACTIVE_SUBTASK_STATUSES = frozenset({SubtaskStatus.DISPATCHED, SubtaskStatus.COMPACTING})
RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.SESSION_CRASH, FailureClass.PROCESSOR_TRANSIENT, FailureClass.TIMEOUT},
)


@dataclass(frozen=True, slots=True)
class Budget:
    """Resource limits applied to every subtask and worker session."""

    max_resources_per_subtask: int = 8
    soft_threshold: int = 60_000
    hard_threshold: int = 100_000
    concurrency_limit: int = 4
    post_compaction_baseline: int = 2_000
    session_timeout_seconds: float = 1_800.0
    max_session_retries: int = 2

    def __post_init__(self) -> None:
        if self.max_resources_per_subtask < 1:
            raise ValueError("max_resources_per_subtask must be >= 1.")
        if self.soft_threshold <= 0:
            raise ValueError("soft_threshold must be > 0.")
        if self.hard_threshold <= self.soft_threshold:
            raise ValueError("hard_threshold must be greater than soft_threshold.")
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1.")
        if not 0 <= self.post_compaction_baseline < self.soft_threshold:
            raise ValueError("post_compaction_baseline must be in [0, soft_threshold).")
        if self.session_timeout_seconds <= 0:
            raise ValueError("session_timeout_seconds must be > 0.")
        if self.max_session_retries < 0:
            raise ValueError("max_session_retries must be >= 0.")


@dataclass(slots=True)
class Task:
    """Submitted unit of work over a set of addressable resources."""

    task_id: str
    description: str
    resources: tuple[str, ...]
    dependency_edges: tuple[tuple[str, str], ...]
    status: TaskStatus = TaskStatus.PLANNED
    subtask_ids: list[str] = field(default_factory=list)
    diagnostic: dict[str, Any] | None = None


@dataclass(slots=True)
class Subtask:
    """Budget-bounded slice of a task's resource set."""

    subtask_id: str
    task_id: str
    resources: tuple[str, ...]
    depends_on: tuple[str, ...] = ()
    status: SubtaskStatus = SubtaskStatus.PENDING
    session_id: str | None = None
    oversized: bool = False
    attempt: int = 0
    completed_resources: list[str] = field(default_factory=list)
    run_after: datetime | None = None
    origin_subtask_id: str | None = None
    ready_sequence: int | None = None
    diagnostic: dict[str, Any] | None = None

    @property
    def remaining_resources(self) -> tuple[str, ...]:
        done = set(self.completed_resources)
        return tuple(resource for resource in self.resources if resource not in done)


@dataclass(frozen=True, slots=True)
class PlanRecord:
    """Immutable ledger entry for one state transition."""

    task_id: str
    subtask_id: str | None
    event: PlanEvent
    from_state: str | None
    to_state: str | None
    worker_id: str | None
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Transition notification published to progress subscribers."""

    task_id: str
    subtask_id: str | None
    event: PlanEvent
    from_state: str | None
    to_state: str | None
    worker_id: str | None
    timestamp: datetime

    @classmethod
    def from_record(cls, record: PlanRecord) -> ProgressEvent:
        return cls(
            task_id=record.task_id,
            subtask_id=record.subtask_id,
            event=record.event,
            from_state=record.from_state,
            to_state=record.to_state,
            worker_id=record.worker_id,
            timestamp=record.timestamp,
        )


@dataclass(frozen=True, slots=True)
class PlanReceipt:
    """Identifiers assigned at submission."""

    task_id: str
    subtask_ids: tuple[str, ...]


@dataclass(slots=True)
class ResourceOutput:
    """Result of processing one resource inside a session."""

    content: str
    units: int
    facts: dict[str, str] = field(default_factory=dict)
    note: str | None = None


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome reported by one verification hook."""

    passed: bool
    diagnostics: str = ""


@dataclass(slots=True)
class TaskOutcome:
    """Final aggregation result for a task."""

    task_id: str
    status: TaskStatus
    outputs: dict[str, str] = field(default_factory=dict)
    diagnostic: dict[str, Any] = field(default_factory=dict)
    error: Exception | None = None


@dataclass(slots=True)
class RunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    resets: int = 0
    compactions: int = 0
    crashes: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
