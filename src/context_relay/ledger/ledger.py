"""Plan ledger facade over a durable append-only backend."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from typing import Any, Protocol

from context_relay.orchestrator.errors import LedgerUnavailableError
from context_relay.orchestrator.models import PlanEvent, PlanRecord
from context_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


class LedgerBackend(Protocol):
    """Durable append-only store for plan records."""

    def append(self, record: PlanRecord) -> PlanRecord:
        """Persist one record and return it with its assigned sequence."""

    def read_all(self, task_id: str) -> list[PlanRecord]:
        """Return every record of a task in append order."""

    def task_ids(self) -> list[str]:
        """Return known task ids in order of first appearance."""


class PlanLedger:
    """Records state transitions; backend failures halt the orchestrator."""

    def __init__(self, backend: LedgerBackend) -> None:
        self.backend = backend

    def append(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event: PlanEvent,
        subtask_id: str | None = None,
        from_state: str | None = None,
        to_state: str | None = None,
        worker_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> PlanRecord:
        record = PlanRecord(
            task_id=task_id,
            subtask_id=subtask_id,
            event=event,
            from_state=from_state,
            to_state=to_state,
            worker_id=worker_id,
            timestamp=utc_now(),
            details=details or {},
        )
        try:
            return self.backend.append(record)
        except Exception as error:  # noqa: BLE001
            logger.error("Ledger append failed for task %s (%s): %s", task_id, event.value, error)
            raise LedgerUnavailableError(f"Ledger append failed: {error}") from error

    def read_all(self, task_id: str) -> list[PlanRecord]:
        try:
            return self.backend.read_all(task_id)
        except Exception as error:  # noqa: BLE001
            raise LedgerUnavailableError(f"Ledger read failed: {error}") from error

    def task_ids(self) -> list[str]:
        try:
            return self.backend.task_ids()
        except Exception as error:  # noqa: BLE001
            raise LedgerUnavailableError(f"Ledger read failed: {error}") from error


class InMemoryLedgerBackend:
    """Process-local backend for tests and dry runs."""

    def __init__(self) -> None:
        self._records: list[PlanRecord] = []
        self._lock = threading.Lock()

    def append(self, record: PlanRecord) -> PlanRecord:
        details = json.loads(json.dumps(record.details, ensure_ascii=False, sort_keys=True))
        with self._lock:
            stored = replace(record, details=details, sequence=len(self._records) + 1)
            self._records.append(stored)
        return stored

    def read_all(self, task_id: str) -> list[PlanRecord]:
        with self._lock:
            return [record for record in self._records if record.task_id == task_id]

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(dict.fromkeys(record.task_id for record in self._records))
