from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from context_relay.ledger import PlanLedger, SqlLedgerBackend
from context_relay.main import context_relay
from context_relay.orchestrator.backend import EchoProcessor, FileSystemResourceProvider
from context_relay.orchestrator.scheduler import Scheduler

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    for name in ("CONTEXT_RELAY_PROCESSOR_COMMAND", "CONTEXT_RELAY_VERIFY_COMMANDS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CONTEXT_RELAY_WORKDIR", str(tmp_path / "work"))
    root = tmp_path / "repo"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "a.md").write_text("alpha", "utf-8")
    (root / "docs" / "b.md").write_text("beta", "utf-8")
    (root / "setup.cfg").write_text("[x]", "utf-8")
    return root, tmp_path / "relay.db"


def _task_id(output: str) -> str:
    match = re.search(r"Task: (\S+) subtasks_planned=", output)
    assert match is not None, output
    return match.group(1)


def test_run_then_list_and_inspect(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace
    runner = CliRunner()

    run = runner.invoke(
        context_relay,
        [
            "run",
            "--db-path",
            str(db_path),
            "--root",
            str(root),
            "--description",
            "echo everything",
            "--echo",
            "--max-resources",
            "1",
        ],
    )

    assert run.exit_code == 0, run.output
    task_id = _task_id(run.output)
    assert "subtasks_planned=3" in run.output
    assert f"Task {task_id} status=completed" in run.output
    assert "outputs written=3" in run.output
    assert "session_started" in run.output

    listed = runner.invoke(context_relay, ["tasks", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert f"{task_id} status=completed resources=3 subtasks=3/3" in listed.output

    inspected = runner.invoke(
        context_relay,
        ["inspect", task_id, "--db-path", str(db_path), "--records"],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert f"{task_id}.s2 status=completed resources=docs/a.md" in inspected.output
    assert "task_submitted" in inspected.output
    assert "task_completed" in inspected.output


def test_run_selected_resources_quietly(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace

    result = CliRunner().invoke(
        context_relay,
        [
            "run",
            "--db-path",
            str(db_path),
            "--root",
            str(root),
            "--resource",
            "docs/b.md",
            "--resource",
            "docs/a.md",
            "--edge",
            "docs/a.md",
            "docs/b.md",
            "--description",
            "ordered",
            "--echo",
            "--quiet",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "session_started" not in result.output
    assert "status=completed" in result.output


def test_run_rejects_cyclic_edges(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace

    result = CliRunner().invoke(
        context_relay,
        [
            "run",
            "--db-path",
            str(db_path),
            "--root",
            str(root),
            "--edge",
            "docs/a.md",
            "docs/b.md",
            "--edge",
            "docs/b.md",
            "docs/a.md",
            "--description",
            "loop",
            "--echo",
            "--quiet",
        ],
    )

    assert result.exit_code != 0
    assert "Task rejected" in result.output


def test_cancel_unknown_and_finished_tasks(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace
    runner = CliRunner()
    run = runner.invoke(
        context_relay,
        [
            "run",
            "--db-path",
            str(db_path),
            "--root",
            str(root),
            "--description",
            "x",
            "--echo",
            "--quiet",
        ],
    )
    task_id = _task_id(run.output)

    missing = runner.invoke(context_relay, ["cancel", "missing-task", "--db-path", str(db_path)])
    finished = runner.invoke(context_relay, ["cancel", task_id, "--db-path", str(db_path)])

    assert "Task not found: missing-task" in missing.output
    assert f"Task already completed: {task_id}" in finished.output


def test_cancel_then_recover_skips_the_cancelled_task(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace
    backend = SqlLedgerBackend(db_path)
    backend.init_schema()
    receipt = Scheduler(
        ledger=PlanLedger(backend),
        provider=FileSystemResourceProvider(root),
        processor=EchoProcessor(),
    ).submit("never started", ["docs/a.md"])
    backend.close()
    runner = CliRunner()

    cancelled = runner.invoke(context_relay, ["cancel", receipt.task_id, "--db-path", str(db_path)])
    recovered = runner.invoke(
        context_relay,
        ["recover", "--db-path", str(db_path), "--root", str(root), "--echo", "--quiet"],
    )

    assert f"Task cancelled: task_id={receipt.task_id} status=cancelled" in cancelled.output
    assert recovered.exit_code == 0, recovered.output
    assert "Recovered tasks: 0" in recovered.output


def test_recover_finishes_a_planned_task(workspace: tuple[Path, Path]) -> None:
    root, db_path = workspace
    backend = SqlLedgerBackend(db_path)
    backend.init_schema()
    receipt = Scheduler(
        ledger=PlanLedger(backend),
        provider=FileSystemResourceProvider(root),
        processor=EchoProcessor(),
    ).submit("resume me", ["docs/a.md", "docs/b.md"])
    backend.close()

    result = CliRunner().invoke(
        context_relay,
        ["recover", "--db-path", str(db_path), "--root", str(root), "--echo", "--quiet"],
    )

    assert result.exit_code == 0, result.output
    assert "Recovered tasks: 1" in result.output
    assert f"Task {receipt.task_id} status=completed" in result.output
