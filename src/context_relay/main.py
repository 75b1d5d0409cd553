"""CLI entrypoint for context-relay."""

import logging
from pathlib import Path

import rich_click as click

from context_relay import __version__
from context_relay.orchestrator.controllers import (
    CancelTaskCommand,
    InspectTaskCommand,
    ListTasksCommand,
    OrchestratorCliController,
    RecoverCommand,
    RunCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="context-relay")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for orchestrator diagnostics.",
)
def context_relay(log_level: str) -> None:
    """Bounded-context task orchestration CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@context_relay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--root",
    "resource_root",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Resource root directory (defaults to CONTEXT_RELAY_RESOURCE_ROOT).",
)
@click.option(
    "--resource",
    "resources",
    multiple=True,
    help="Resource path relative to the root. Can be repeated; defaults to every file.",
)
@click.option(
    "--edge",
    "edges",
    type=(str, str),
    multiple=True,
    help="Dependency edge BEFORE AFTER: BEFORE is processed first. Can be repeated.",
)
@click.option("--description", required=True, help="Task description passed to the processor.")
@click.option(
    "--echo",
    "use_echo",
    is_flag=True,
    default=False,
    help="Use the built-in echo processor instead of the configured command.",
)
@click.option(
    "--processor-command",
    default=None,
    help="Processor command template with {resource}, {input_file}, {context_file}, {prompt}.",
)
@click.option(
    "--verify",
    "verify_commands",
    multiple=True,
    help="Verification command template with {resources}. Can be repeated.",
)
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Session limit.")
@click.option(
    "--max-resources",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum resources per subtask.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop dispatching after this many seconds; unfinished work stays recoverable.",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not print progress events.")
def run(  # noqa: PLR0913
    db_path: Path | None,
    resource_root: Path | None,
    resources: tuple[str, ...],
    edges: tuple[tuple[str, str], ...],
    description: str,
    use_echo: bool,
    processor_command: str | None,
    verify_commands: tuple[str, ...],
    concurrency: int | None,
    max_resources: int | None,
    timeout_seconds: float | None,
    quiet: bool,
) -> None:
    """Submit a task over resources and run it to completion."""

    result = ORCHESTRATOR_CONTROLLER.run(
        RunCommand(
            db_path=db_path,
            description=description,
            resources=resources,
            edges=edges,
            resource_root=resource_root,
            use_echo=use_echo,
            processor_command=processor_command,
            verify_commands=verify_commands,
            concurrency_limit=concurrency,
            max_resources_per_subtask=max_resources,
            timeout_seconds=timeout_seconds,
        ),
        on_progress=None if quiet else click.echo,
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task did not complete.")


@context_relay.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--root",
    "resource_root",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Resource root directory (defaults to CONTEXT_RELAY_RESOURCE_ROOT).",
)
@click.option("--echo", "use_echo", is_flag=True, default=False, help="Use the echo processor.")
@click.option("--processor-command", default=None, help="Processor command template.")
@click.option("--verify", "verify_commands", multiple=True, help="Verification command template.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop dispatching after this many seconds.",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not print progress events.")
def recover(  # noqa: PLR0913
    db_path: Path | None,
    resource_root: Path | None,
    use_echo: bool,
    processor_command: str | None,
    verify_commands: tuple[str, ...],
    timeout_seconds: float | None,
    quiet: bool,
) -> None:
    """Replay unfinished tasks from the ledger and run them to completion."""

    result = ORCHESTRATOR_CONTROLLER.recover(
        RecoverCommand(
            db_path=db_path,
            resource_root=resource_root,
            use_echo=use_echo,
            processor_command=processor_command,
            verify_commands=verify_commands,
            timeout_seconds=timeout_seconds,
        ),
        on_progress=None if quiet else click.echo,
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Not every recovered task completed.")


@context_relay.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Show at most this many of the most recent tasks.",
)
def tasks(db_path: Path | None, limit: int) -> None:
    """List tasks recorded in the plan ledger."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.list_tasks(ListTasksCommand(db_path=db_path, limit=limit)))


@context_relay.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--records", "show_records", is_flag=True, default=False, help="Print every record.")
def inspect(task_id: str, db_path: Path | None, show_records: bool) -> None:
    """Replay one task from the ledger and print its subtasks."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id, show_records=show_records),
        ),
    )


@context_relay.command("cancel")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cancel(task_id: str, db_path: Path | None) -> None:
    """Record cancellation of a task that no process is running."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.cancel_task(CancelTaskCommand(db_path=db_path, task_id=task_id)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    context_relay()
