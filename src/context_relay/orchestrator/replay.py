"""Reconstruct task and subtask state from plan ledger records."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from context_relay.orchestrator.errors import InvalidTransitionError
from context_relay.orchestrator.models import (
    TERMINAL_SUBTASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    PlanEvent,
    PlanRecord,
    Subtask,
    SubtaskStatus,
    Task,
    TaskStatus,
)

_SUBTASK_TRANSITIONS: dict[SubtaskStatus, frozenset[SubtaskStatus]] = {
    SubtaskStatus.PENDING: frozenset({SubtaskStatus.READY, SubtaskStatus.CANCELLED}),
    SubtaskStatus.READY: frozenset({SubtaskStatus.DISPATCHED, SubtaskStatus.CANCELLED}),
    SubtaskStatus.DISPATCHED: frozenset(
        {
            SubtaskStatus.COMPACTING,
            SubtaskStatus.READY,
            SubtaskStatus.COMPLETED,
            SubtaskStatus.FAILED,
            SubtaskStatus.CANCELLED,
        },
    ),
    SubtaskStatus.COMPACTING: frozenset(
        {
            SubtaskStatus.DISPATCHED,
            SubtaskStatus.READY,
            SubtaskStatus.COMPLETED,
            SubtaskStatus.FAILED,
            SubtaskStatus.CANCELLED,
        },
    ),
}

_TASK_RANK = {
    TaskStatus.PLANNED: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
    TaskStatus.CANCELLED: 2,
}


@dataclass(slots=True)
class TaskState:
    """Current state of one task as derived from its ledger records."""

    task: Task
    subtasks: dict[str, Subtask] = field(default_factory=dict)
    outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    last_sequence: int = 0

    @property
    def task_id(self) -> str:
        return self.task.task_id

    def is_terminal(self) -> bool:
        return self.task.status in TERMINAL_TASK_STATUSES

    def is_settled(self) -> bool:
        """True once every subtask has reached a terminal status."""

        return all(
            subtask.status in TERMINAL_SUBTASK_STATUSES for subtask in self.subtasks.values()
        )

    def ready_subtasks(self) -> list[Subtask]:
        ready = [
            subtask
            for subtask in self.subtasks.values()
            if subtask.status == SubtaskStatus.READY
        ]
        return sorted(ready, key=lambda subtask: subtask.ready_sequence or 0)

    def dependents_of(self, subtask_id: str) -> list[Subtask]:
        return [
            subtask for subtask in self.subtasks.values() if subtask_id in subtask.depends_on
        ]

    def downstream_of(self, subtask_id: str) -> list[Subtask]:
        """Transitive dependents in subtask id order."""

        found: dict[str, Subtask] = {}
        frontier = [subtask_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.dependents_of(current):
                if dependent.subtask_id not in found:
                    found[dependent.subtask_id] = dependent
                    frontier.append(dependent.subtask_id)
        return [found[key] for key in sorted(found)]

    def newly_ready(self) -> list[Subtask]:
        """Pending subtasks whose dependencies are all completed."""

        completed = {
            subtask.subtask_id
            for subtask in self.subtasks.values()
            if subtask.status == SubtaskStatus.COMPLETED
        }
        return [
            subtask
            for subtask in sorted(self.subtasks.values(), key=lambda item: item.subtask_id)
            if subtask.status == SubtaskStatus.PENDING and set(subtask.depends_on) <= completed
        ]

    def next_subtask_id(self) -> str:
        return f"{self.task.task_id}.s{len(self.task.subtask_ids) + 1}"

    def covered_resources(self) -> list[str]:
        """Resources of every subtask, duplicates included, for partition checks."""

        return [resource for subtask in self.subtasks.values() for resource in subtask.resources]


def replay(records: Iterable[PlanRecord]) -> TaskState:
    """Rebuild task state from an empty start by applying records in order."""

    state: TaskState | None = None
    for record in sorted(records, key=lambda item: item.sequence):
        state = apply_record(state, record)
    if state is None:
        raise ValueError("Cannot replay an empty record sequence.")
    return state


def apply_record(state: TaskState | None, record: PlanRecord) -> TaskState:  # noqa: C901, PLR0912
    """Apply one ledger record; the only code path that mutates task state."""

    if record.event == PlanEvent.TASK_SUBMITTED:
        if state is not None:
            raise InvalidTransitionError(f"Task already submitted: {record.task_id}")
        details = record.details
        state = TaskState(
            task=Task(
                task_id=record.task_id,
                description=str(details.get("description", "")),
                resources=tuple(details.get("resources", ())),
                dependency_edges=tuple(
                    (str(before), str(after)) for before, after in details.get("edges", ())
                ),
            ),
        )
        state.last_sequence = record.sequence
        return state

    if state is None:
        raise InvalidTransitionError(
            f"Record {record.event.value} precedes submission of task {record.task_id}",
        )

    event = record.event
    details = record.details
    if event == PlanEvent.SUBTASK_PLANNED:
        _add_subtask(
            state,
            Subtask(
                subtask_id=_subtask_id(record),
                task_id=state.task_id,
                resources=tuple(details.get("resources", ())),
                depends_on=tuple(details.get("depends_on", ())),
                oversized=bool(details.get("oversized", False)),
            ),
        )
    elif event == PlanEvent.SUBTASK_READY:
        subtask = _subtask(state, record)
        _move(subtask, SubtaskStatus.READY)
        subtask.ready_sequence = record.sequence
    elif event == PlanEvent.TASK_STARTED:
        _move_task(state.task, TaskStatus.IN_PROGRESS)
    elif event == PlanEvent.SESSION_STARTED:
        subtask = _subtask(state, record)
        _move(subtask, SubtaskStatus.DISPATCHED)
        subtask.session_id = record.worker_id
    elif event == PlanEvent.RESOURCE_COMPLETED:
        subtask = _subtask(state, record)
        resource = str(details["resource"])
        if resource not in subtask.completed_resources:
            subtask.completed_resources.append(resource)
        state.outputs.setdefault(subtask.subtask_id, {})[resource] = str(details["output"])
    elif event == PlanEvent.COMPACTION_STARTED:
        _move(_subtask(state, record), SubtaskStatus.COMPACTING)
    elif event == PlanEvent.COMPACTION_FINISHED:
        _move(_subtask(state, record), SubtaskStatus.DISPATCHED)
    elif event == PlanEvent.SUBTASK_SPLIT:
        _apply_split(state, record)
    elif event == PlanEvent.SUBTASK_ISOLATED:
        _apply_isolation(state, record)
    elif event == PlanEvent.SUBTASK_REQUEUED:
        subtask = _subtask(state, record)
        _move(subtask, SubtaskStatus.READY)
        subtask.session_id = None
        subtask.attempt = int(details.get("attempt", subtask.attempt))
        subtask.run_after = _parse_datetime(details.get("run_after"))
        subtask.ready_sequence = record.sequence
    elif event == PlanEvent.SUBTASK_COMPLETED:
        _move(_subtask(state, record), SubtaskStatus.COMPLETED)
    elif event == PlanEvent.SUBTASK_FAILED:
        subtask = _subtask(state, record)
        _move(subtask, SubtaskStatus.FAILED)
        subtask.diagnostic = dict(details)
    elif event == PlanEvent.SUBTASK_CANCELLED:
        subtask = _subtask(state, record)
        _move(subtask, SubtaskStatus.CANCELLED)
        subtask.diagnostic = dict(details) or None
    elif event == PlanEvent.TASK_COMPLETED:
        _move_task(state.task, TaskStatus.COMPLETED)
        state.task.diagnostic = dict(details) or None
    elif event == PlanEvent.TASK_FAILED:
        _move_task(state.task, TaskStatus.FAILED)
        state.task.diagnostic = dict(details)
    elif event == PlanEvent.TASK_CANCELLED:
        _move_task(state.task, TaskStatus.CANCELLED)
        state.task.diagnostic = dict(details) or None
    else:  # pragma: no cover - exhaustive over PlanEvent
        raise InvalidTransitionError(f"Unsupported plan event: {event}")

    state.last_sequence = max(state.last_sequence, record.sequence)
    return state


def _apply_split(state: TaskState, record: PlanRecord) -> None:
    original = _subtask(state, record)
    details = record.details
    completed = tuple(details["completed"])
    remainder_id = str(details["remainder_id"])
    _move(original, SubtaskStatus.COMPLETED)
    original.resources = completed
    original.session_id = None

    for dependent in state.dependents_of(original.subtask_id):
        if remainder_id not in dependent.depends_on:
            dependent.depends_on = (*dependent.depends_on, remainder_id)

    remainder = Subtask(
        subtask_id=remainder_id,
        task_id=state.task_id,
        resources=tuple(details["remainder"]),
        depends_on=(original.subtask_id,),
        status=SubtaskStatus.READY,
        oversized=bool(details.get("oversized", False)),
        attempt=int(details.get("attempt", original.attempt)),
        run_after=_parse_datetime(details.get("run_after")),
        origin_subtask_id=original.subtask_id,
        ready_sequence=record.sequence,
    )
    _add_subtask(state, remainder)


def _apply_isolation(state: TaskState, record: PlanRecord) -> None:
    """Keep the isolated resources on the subtask and move the rest to a ready remainder.

    Dependents are re-pointed along the resource edges: they keep depending on
    the isolated subtask only when one of its resources feeds them.
    """

    original = _subtask(state, record)
    details = record.details
    moved = tuple(details["remainder"])
    remainder_id = str(details["remainder_id"])
    original.resources = tuple(item for item in original.resources if item not in moved)
    original.oversized = len(original.resources) == 1

    kept = set(original.resources)
    edges = state.task.dependency_edges
    for dependent in state.dependents_of(original.subtask_id):
        targets = set(dependent.resources)
        fed_by_kept = any(before in kept and after in targets for before, after in edges)
        fed_by_moved = any(before in moved and after in targets for before, after in edges)
        depends_on = [item for item in dependent.depends_on if item != original.subtask_id]
        if fed_by_kept:
            depends_on.append(original.subtask_id)
        if fed_by_moved or not fed_by_kept:
            depends_on.append(remainder_id)
        dependent.depends_on = tuple(depends_on)

    remainder = Subtask(
        subtask_id=remainder_id,
        task_id=state.task_id,
        resources=moved,
        depends_on=original.depends_on,
        status=SubtaskStatus.READY,
        attempt=original.attempt,
        origin_subtask_id=original.subtask_id,
        ready_sequence=record.sequence,
    )
    _add_subtask(state, remainder)


def _add_subtask(state: TaskState, subtask: Subtask) -> None:
    if subtask.subtask_id in state.subtasks:
        raise InvalidTransitionError(f"Subtask already planned: {subtask.subtask_id}")
    if not subtask.resources:
        raise InvalidTransitionError(f"Subtask has no resources: {subtask.subtask_id}")
    state.subtasks[subtask.subtask_id] = subtask
    state.task.subtask_ids.append(subtask.subtask_id)


def _subtask_id(record: PlanRecord) -> str:
    if record.subtask_id is None:
        raise InvalidTransitionError(f"Record {record.event.value} is missing subtask_id")
    return record.subtask_id


def _subtask(state: TaskState, record: PlanRecord) -> Subtask:
    subtask_id = _subtask_id(record)
    subtask = state.subtasks.get(subtask_id)
    if subtask is None:
        raise InvalidTransitionError(f"Unknown subtask: {subtask_id}")
    return subtask


def _move(subtask: Subtask, target: SubtaskStatus) -> None:
    allowed = _SUBTASK_TRANSITIONS.get(subtask.status, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(
            f"Subtask {subtask.subtask_id} cannot move {subtask.status.value} -> {target.value}",
        )
    subtask.status = target


def _move_task(task: Task, target: TaskStatus) -> None:
    if task.status in TERMINAL_TASK_STATUSES or _TASK_RANK[target] <= _TASK_RANK[task.status]:
        raise InvalidTransitionError(
            f"Task {task.task_id} cannot move {task.status.value} -> {target.value}",
        )
    task.status = target


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return datetime.fromisoformat(value)
