from __future__ import annotations

from pathlib import Path

import allure
import pytest

from context_relay.ledger import PlanLedger, SqlLedgerBackend
from context_relay.orchestrator.backend import EchoProcessor, InMemoryResourceProvider
from context_relay.orchestrator.models import (
    Budget,
    PlanEvent,
    ResourceOutput,
    SubtaskStatus,
    TaskStatus,
)
from context_relay.orchestrator.replay import replay
from context_relay.orchestrator.scheduler import Scheduler

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Crash Recovery"),
]


class _RecordingProcessor:
    def __init__(self) -> None:
        self.seen: list[str] = []

    def process(self, request):
        self.seen.append(request.resource_id)
        return ResourceOutput(content=request.content.upper(), units=1)


def _budget(**overrides) -> Budget:
    values = {
        "max_resources_per_subtask": 8,
        "soft_threshold": 1_000,
        "hard_threshold": 2_000,
        "concurrency_limit": 2,
        "post_compaction_baseline": 10,
        "max_session_retries": 2,
    }
    values.update(overrides)
    return Budget(**values)


def _provider() -> InMemoryResourceProvider:
    return InMemoryResourceProvider({"r1": "<r1>", "r2": "<r2>", "r3": "<r3>"})


def _orphan_task(ledger: PlanLedger, *, compacting: bool = False) -> str:
    """Plan a task and leave its only subtask mid-session, as a killed process would."""

    planner = Scheduler(
        ledger=ledger,
        provider=_provider(),
        processor=EchoProcessor(),
        budget=_budget(),
    )
    receipt = planner.submit("interrupted work", ["r1", "r2", "r3"])
    task_id = receipt.task_id
    subtask_id = receipt.subtask_ids[0]
    ledger.append(
        task_id=task_id,
        event=PlanEvent.TASK_STARTED,
        from_state=TaskStatus.PLANNED.value,
        to_state=TaskStatus.IN_PROGRESS.value,
    )
    ledger.append(
        task_id=task_id,
        event=PlanEvent.SESSION_STARTED,
        subtask_id=subtask_id,
        from_state=SubtaskStatus.READY.value,
        to_state=SubtaskStatus.DISPATCHED.value,
        worker_id="relay-worker-dead",
        details={"resources": ["r1", "r2", "r3"], "attempt": 0},
    )
    ledger.append(
        task_id=task_id,
        event=PlanEvent.RESOURCE_COMPLETED,
        subtask_id=subtask_id,
        worker_id="relay-worker-dead",
        details={"resource": "r1", "output": "R1!", "units": 1},
    )
    if compacting:
        ledger.append(
            task_id=task_id,
            event=PlanEvent.COMPACTION_STARTED,
            subtask_id=subtask_id,
            from_state=SubtaskStatus.DISPATCHED.value,
            to_state=SubtaskStatus.COMPACTING.value,
            worker_id="relay-worker-dead",
        )
    return task_id


@pytest.mark.parametrize("compacting", [False, True])
def test_recover_resumes_without_reprocessing_completed_resources(
    ledger: PlanLedger,
    compacting: bool,
) -> None:
    task_id = _orphan_task(ledger, compacting=compacting)
    provider = _provider()
    processor = _RecordingProcessor()
    scheduler = Scheduler(ledger=ledger, provider=provider, processor=processor, budget=_budget())

    recovered = scheduler.recover()
    resumed = scheduler.snapshot(task_id)

    assert recovered == [task_id]
    assert resumed.subtasks[f"{task_id}.s1"].status == SubtaskStatus.COMPLETED
    assert resumed.subtasks[f"{task_id}.s2"].resources == ("r2", "r3")
    assert resumed.subtasks[f"{task_id}.s2"].attempt == 1

    scheduler.run_until_idle(timeout_seconds=30)

    state = scheduler.snapshot(task_id)
    assert state.task.status == TaskStatus.COMPLETED
    assert processor.seen == ["r2", "r3"]
    assert [provider.read(item) for item in ("r1", "r2", "r3")] == ["R1!", "<R2>", "<R3>"]
    assert replay(ledger.read_all(task_id)) == state


def test_recover_fails_orphan_when_no_retries_remain(ledger: PlanLedger) -> None:
    task_id = _orphan_task(ledger)
    processor = _RecordingProcessor()
    scheduler = Scheduler(
        ledger=ledger,
        provider=_provider(),
        processor=processor,
        budget=_budget(max_session_retries=0),
    )

    scheduler.recover()
    scheduler.run_until_idle(timeout_seconds=30)

    state = scheduler.snapshot(task_id)
    assert state.task.status == TaskStatus.FAILED
    failed = state.subtasks[f"{task_id}.s1"]
    assert failed.status == SubtaskStatus.FAILED
    diagnostic = failed.diagnostic or {}
    assert diagnostic["failure_class"] == "session_crash"
    assert diagnostic["reason_code"] == "orphaned_session"
    assert diagnostic["resource"] == "r2"
    assert diagnostic["completed_resources"] == ["r1"]
    assert processor.seen == []


def test_recover_skips_terminal_tasks(ledger: PlanLedger) -> None:
    first = Scheduler(
        ledger=ledger,
        provider=_provider(),
        processor=EchoProcessor(),
        budget=_budget(),
    )
    receipt = first.submit("done already", ["r1"])
    first.run_until_idle(timeout_seconds=30)

    second = Scheduler(
        ledger=ledger,
        provider=_provider(),
        processor=EchoProcessor(),
        budget=_budget(),
    )

    assert second.recover() == []
    assert second.load(receipt.task_id).task.status == TaskStatus.COMPLETED
    records_before = len(ledger.read_all(receipt.task_id))
    second.run_until_idle(timeout_seconds=5)
    assert len(ledger.read_all(receipt.task_id)) == records_before


def test_load_of_unknown_task_raises(ledger: PlanLedger) -> None:
    scheduler = Scheduler(
        ledger=ledger,
        provider=_provider(),
        processor=EchoProcessor(),
        budget=_budget(),
    )

    with pytest.raises(KeyError):
        scheduler.load("missing-task")


def test_sql_ledger_survives_a_new_process(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"
    backend = SqlLedgerBackend(db_path)
    backend.init_schema()
    scheduler = Scheduler(
        ledger=PlanLedger(backend),
        provider=_provider(),
        processor=EchoProcessor(default_units=10),
        budget=_budget(soft_threshold=15, hard_threshold=20, post_compaction_baseline=5),
    )
    receipt = scheduler.submit("durable", ["r1", "r2", "r3"])
    scheduler.run_until_idle(timeout_seconds=30)
    live = scheduler.snapshot(receipt.task_id)
    backend.close()

    reopened = SqlLedgerBackend(db_path)
    try:
        records = PlanLedger(reopened).read_all(receipt.task_id)
        assert reopened.task_ids() == [receipt.task_id]
    finally:
        reopened.close()

    assert [record.sequence for record in records] == sorted(record.sequence for record in records)
    assert replay(records) == live
    assert live.task.status == TaskStatus.COMPLETED
    assert sorted(live.covered_resources()) == ["r1", "r2", "r3"]
