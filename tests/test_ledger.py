from __future__ import annotations

from pathlib import Path

import allure
import pytest

from context_relay.ledger import InMemoryLedgerBackend, PlanLedger, SqlLedgerBackend
from context_relay.orchestrator.errors import LedgerUnavailableError
from context_relay.orchestrator.models import PlanEvent

pytestmark = [
    allure.epic("Durability"),
    allure.feature("Plan Ledger"),
]


@pytest.fixture(params=["memory", "sqlite"])
def any_ledger(request, tmp_path: Path):
    if request.param == "memory":
        yield PlanLedger(InMemoryLedgerBackend())
        return
    backend = SqlLedgerBackend(tmp_path / "ledger.db")
    backend.init_schema()
    try:
        yield PlanLedger(backend)
    finally:
        backend.close()


def test_records_are_read_back_in_append_order(any_ledger: PlanLedger) -> None:
    any_ledger.append(task_id="t1", event=PlanEvent.TASK_SUBMITTED, details={"resources": ["a"]})
    any_ledger.append(task_id="t2", event=PlanEvent.TASK_SUBMITTED)
    any_ledger.append(
        task_id="t1",
        event=PlanEvent.SUBTASK_PLANNED,
        subtask_id="t1.s1",
        to_state="pending",
        details={"resources": ["a"], "depends_on": []},
    )

    records = any_ledger.read_all("t1")

    assert [record.event for record in records] == [
        PlanEvent.TASK_SUBMITTED,
        PlanEvent.SUBTASK_PLANNED,
    ]
    assert records[0].sequence < records[1].sequence
    assert records[1].subtask_id == "t1.s1"
    assert records[1].to_state == "pending"
    assert records[0].timestamp.tzinfo is not None
    assert any_ledger.task_ids() == ["t1", "t2"]
    assert any_ledger.read_all("missing") == []


def test_details_round_trip_through_json(any_ledger: PlanLedger) -> None:
    details = {"resource": "notes/ä.txt", "output": "line\nbreak", "units": 7, "flags": [1, 2]}

    stored = any_ledger.append(
        task_id="t1",
        event=PlanEvent.RESOURCE_COMPLETED,
        subtask_id="t1.s1",
        worker_id="relay-worker-1",
        details=details,
    )

    [record] = any_ledger.read_all("t1")
    assert record.details == details
    assert stored.details == details
    assert record.worker_id == "relay-worker-1"
    assert any_ledger.append(task_id="t1", event=PlanEvent.TASK_STARTED).details == {}


class _BrokenBackend:
    def append(self, record):
        raise OSError("disk full")

    def read_all(self, task_id):
        raise OSError("io error")

    def task_ids(self):
        raise OSError("io error")


def test_backend_errors_surface_as_ledger_unavailable() -> None:
    ledger = PlanLedger(_BrokenBackend())

    with pytest.raises(LedgerUnavailableError, match="disk full"):
        ledger.append(task_id="t1", event=PlanEvent.TASK_SUBMITTED)
    with pytest.raises(LedgerUnavailableError):
        ledger.read_all("t1")
    with pytest.raises(LedgerUnavailableError):
        ledger.task_ids()
