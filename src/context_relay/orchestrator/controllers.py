"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from context_relay.config import Settings
from context_relay.ledger import PlanLedger, SqlLedgerBackend
from context_relay.orchestrator.backend import (
    CommandProcessor,
    CommandVerificationHook,
    EchoProcessor,
    FileSystemResourceProvider,
    ResourceProcessor,
)
from context_relay.orchestrator.errors import GraphError, ProcessorError
from context_relay.orchestrator.models import (
    ProgressEvent,
    RunSummary,
    SubtaskStatus,
    TaskOutcome,
    TaskStatus,
)
from context_relay.orchestrator.replay import TaskState, replay
from context_relay.orchestrator.scheduler import Scheduler


@dataclass(slots=True)
class RunCommand:
    """CLI input for submitting and running one task."""

    db_path: Path | None
    description: str
    resources: tuple[str, ...]
    edges: tuple[tuple[str, str], ...]
    resource_root: Path | None
    use_echo: bool
    processor_command: str | None
    verify_commands: tuple[str, ...]
    concurrency_limit: int | None = None
    max_resources_per_subtask: int | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class RecoverCommand:
    """CLI input for resuming unfinished tasks."""

    db_path: Path | None
    resource_root: Path | None
    use_echo: bool
    processor_command: str | None
    verify_commands: tuple[str, ...]
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str
    show_records: bool = False


@dataclass(slots=True)
class CancelTaskCommand:
    """CLI input for task cancellation."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates run, recovery and inspection CLI operations."""

    def run(
        self,
        command: RunCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunResult:
        settings = _settings_for(
            db_path=command.db_path,
            resource_root=command.resource_root,
            processor_command=command.processor_command,
            verify_commands=command.verify_commands,
        )
        if command.concurrency_limit is not None:
            settings.budget.concurrency_limit = command.concurrency_limit
        if command.max_resources_per_subtask is not None:
            settings.budget.max_resources_per_subtask = command.max_resources_per_subtask
        try:
            settings.validate()
        except ValueError as error:
            return RunResult(lines=[f"Configuration error: {error}"], success=False)

        provider = FileSystemResourceProvider(settings.worker.resource_root)
        resources = command.resources or tuple(
            provider.discover(exclude=(settings.db_path, settings.worker.workdir)),
        )
        if not resources:
            return RunResult(
                lines=[f"No resources found under {settings.worker.resource_root}"],
                success=False,
            )

        with _ledger(settings) as ledger:
            try:
                scheduler = _build_scheduler(
                    settings=settings,
                    ledger=ledger,
                    provider=provider,
                    use_echo=command.use_echo,
                )
            except ProcessorError as error:
                return RunResult(lines=[f"Processor error: {error}"], success=False)
            if on_progress is not None:
                scheduler.subscribe(lambda event: on_progress(_format_progress(event)))
            try:
                receipt = scheduler.submit(command.description, resources, command.edges)
            except (GraphError, OSError, ValueError) as error:
                return RunResult(lines=[f"Task rejected: {error}"], success=False)
            summary = scheduler.run_until_idle(timeout_seconds=command.timeout_seconds)
            state = scheduler.snapshot(receipt.task_id)
            outcome = scheduler.outcome(receipt.task_id)

        lines = [
            f"Task: {receipt.task_id} subtasks_planned={len(receipt.subtask_ids)}",
            *_summary_lines(summary),
            *_outcome_lines(state, outcome),
        ]
        return RunResult(lines=lines, success=state.task.status == TaskStatus.COMPLETED)

    def recover(
        self,
        command: RecoverCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunResult:
        settings = _settings_for(
            db_path=command.db_path,
            resource_root=command.resource_root,
            processor_command=command.processor_command,
            verify_commands=command.verify_commands,
        )
        try:
            settings.validate()
        except ValueError as error:
            return RunResult(lines=[f"Configuration error: {error}"], success=False)

        provider = FileSystemResourceProvider(settings.worker.resource_root)
        with _ledger(settings) as ledger:
            try:
                scheduler = _build_scheduler(
                    settings=settings,
                    ledger=ledger,
                    provider=provider,
                    use_echo=command.use_echo,
                )
            except ProcessorError as error:
                return RunResult(lines=[f"Processor error: {error}"], success=False)
            if on_progress is not None:
                scheduler.subscribe(lambda event: on_progress(_format_progress(event)))
            task_ids = scheduler.recover()
            if not task_ids:
                return RunResult(lines=["Recovered tasks: 0"], success=True)
            summary = scheduler.run_until_idle(timeout_seconds=command.timeout_seconds)
            states = [scheduler.snapshot(task_id) for task_id in task_ids]
            outcomes = [scheduler.outcome(task_id) for task_id in task_ids]

        lines = [f"Recovered tasks: {len(task_ids)}", *_summary_lines(summary)]
        for state, outcome in zip(states, outcomes, strict=True):
            lines.extend(_outcome_lines(state, outcome))
        return RunResult(
            lines=lines,
            success=all(state.task.status == TaskStatus.COMPLETED for state in states),
        )

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _ledger(settings) as ledger:
            task_ids = ledger.task_ids()[-command.limit :]
            states = [replay(ledger.read_all(task_id)) for task_id in task_ids]

        lines = [f"Tasks: {len(states)}"]
        for state in states:
            done = sum(
                1
                for subtask in state.subtasks.values()
                if subtask.status == SubtaskStatus.COMPLETED
            )
            lines.append(
                f"  {state.task_id} status={state.task.status.value} "
                f"resources={len(state.task.resources)} "
                f"subtasks={done}/{len(state.subtasks)} "
                f"description={state.task.description!r}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _ledger(settings) as ledger:
            records = ledger.read_all(command.task_id)
        if not records:
            return [f"Task not found: {command.task_id}"]

        state = replay(records)
        task = state.task
        lines = [
            f"Task: {task.task_id}",
            f"Description: {task.description}",
            f"Status: {task.status.value}",
            f"Resources: {len(task.resources)}",
            f"Edges: {len(task.dependency_edges)}",
            f"Diagnostic: {_json(task.diagnostic) if task.diagnostic else '-'}",
            f"Subtasks: {len(state.subtasks)}",
        ]
        for subtask_id in task.subtask_ids:
            subtask = state.subtasks[subtask_id]
            lines.append(
                f"  {subtask.subtask_id} status={subtask.status.value} "
                f"resources={','.join(subtask.resources)} "
                f"depends_on={','.join(subtask.depends_on) or '-'} "
                f"attempt={subtask.attempt} oversized={subtask.oversized} "
                f"origin={subtask.origin_subtask_id or '-'}",
            )
            if subtask.diagnostic:
                lines.append(f"    diagnostic={_json(subtask.diagnostic)}")
        lines.append(f"Records: {len(records)}")
        if command.show_records:
            for record in records:
                lines.append(
                    f"  #{record.sequence} {record.timestamp.isoformat()} {record.event.value} "
                    f"subtask={record.subtask_id or '-'} "
                    f"{record.from_state or '-'}->{record.to_state or '-'} "
                    f"worker={record.worker_id or '-'}",
                )
        return lines

    def cancel_task(self, command: CancelTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _ledger(settings) as ledger:
            scheduler = Scheduler(
                ledger=ledger,
                provider=FileSystemResourceProvider(settings.worker.resource_root),
                processor=EchoProcessor(),
                budget=settings.budget.to_budget(),
            )
            try:
                state = scheduler.load(command.task_id)
            except KeyError:
                return [f"Task not found: {command.task_id}"]
            if state.is_terminal():
                return [f"Task already {state.task.status.value}: {command.task_id}"]
            scheduler.cancel(command.task_id)
            state = scheduler.snapshot(command.task_id)
        return [f"Task cancelled: task_id={command.task_id} status={state.task.status.value}"]


@contextmanager
def _ledger(settings: Settings) -> Iterator[PlanLedger]:
    backend = SqlLedgerBackend(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    backend.init_schema()
    try:
        yield PlanLedger(backend)
    finally:
        backend.close()


def _settings_for(
    *,
    db_path: Path | None,
    resource_root: Path | None,
    processor_command: str | None,
    verify_commands: tuple[str, ...],
) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    worker = settings.worker
    if resource_root is not None:
        worker = replace(worker, resource_root=resource_root)
    if processor_command:
        worker = replace(worker, processor_command=processor_command)
    if verify_commands:
        worker = replace(worker, verify_commands=verify_commands)
    return replace(settings, worker=worker)


def _build_scheduler(
    *,
    settings: Settings,
    ledger: PlanLedger,
    provider: FileSystemResourceProvider,
    use_echo: bool,
) -> Scheduler:
    processor: ResourceProcessor
    if use_echo or not settings.worker.processor_command:
        processor = EchoProcessor()
    else:
        processor = CommandProcessor(
            settings.worker.processor_command,
            workdir=settings.worker.workdir,
            timeout_seconds=settings.worker.processor_timeout_seconds,
        )
    hooks = [
        CommandVerificationHook(
            f"verify-{index}",
            template,
            cwd=settings.worker.resource_root,
            timeout_seconds=settings.worker.processor_timeout_seconds,
        )
        for index, template in enumerate(settings.worker.verify_commands, start=1)
    ]
    return Scheduler(
        ledger=ledger,
        provider=provider,
        processor=processor,
        budget=settings.budget.to_budget(),
        hooks=hooks,
        cost_estimator=provider.estimate_units,
        worker_id_prefix=settings.worker.worker_id_prefix,
        retry_base_seconds=settings.retry.retry_base_seconds,
        retry_max_seconds=settings.retry.retry_max_seconds,
    )


def _format_progress(event: ProgressEvent) -> str:
    subject = event.subtask_id or event.task_id
    transition = ""
    if event.from_state or event.to_state:
        transition = f" {event.from_state or '-'}->{event.to_state or '-'}"
    worker = f" worker={event.worker_id}" if event.worker_id else ""
    clock = event.timestamp.strftime("%H:%M:%S")
    return f"[{clock}] {event.event.value} {subject}{transition}{worker}"


def _summary_lines(summary: RunSummary) -> list[str]:
    return [
        "Run summary: "
        f"dispatched={summary.dispatched} completed={summary.completed} "
        f"failed={summary.failed} cancelled={summary.cancelled} resets={summary.resets} "
        f"compactions={summary.compactions} crashes={summary.crashes}",
    ]


def _outcome_lines(state: TaskState, outcome: TaskOutcome | None) -> list[str]:
    lines = [f"Task {state.task_id} status={state.task.status.value}"]
    if state.task.diagnostic:
        lines.append(f"  diagnostic={_json(state.task.diagnostic)}")
    if outcome is not None and outcome.status == TaskStatus.COMPLETED:
        lines.append(f"  outputs written={len(outcome.outputs)}")
    return lines


def _json(payload: object) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
