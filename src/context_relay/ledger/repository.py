"""SQLite-backed plan ledger backend."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import func
from sqlmodel import Session, col, select

from context_relay.orchestrator.models import PlanEvent, PlanRecord
from context_relay.storage.alembic_runner import upgrade_head
from context_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
)
from context_relay.storage.sqlmodel_models import PlanRecordRow


class SqlLedgerBackend:
    """Append-only record store backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def append(self, record: PlanRecord) -> PlanRecord:
        with Session(self.engine) as session:
            row = PlanRecordRow(
                task_id=record.task_id,
                subtask_id=record.subtask_id,
                event=record.event.value,
                from_state=record.from_state,
                to_state=record.to_state,
                worker_id=record.worker_id,
                details_json=json.dumps(record.details, ensure_ascii=False, sort_keys=True)
                if record.details
                else None,
                created_at=to_db_datetime(record.timestamp),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def read_all(self, task_id: str) -> list[PlanRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PlanRecordRow)
                .where(PlanRecordRow.task_id == task_id)
                .order_by(col(PlanRecordRow.id).asc()),
            ).all()
        return [_to_record(row) for row in rows]

    def task_ids(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PlanRecordRow.task_id, func.min(PlanRecordRow.id).label("first_id"))
                .group_by(PlanRecordRow.task_id)
                .order_by("first_id"),
            ).all()
        return [task_id for task_id, _ in rows]


def _to_record(row: PlanRecordRow) -> PlanRecord:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return PlanRecord(
        task_id=row.task_id,
        subtask_id=row.subtask_id,
        event=PlanEvent(row.event),
        from_state=row.from_state,
        to_state=row.to_state,
        worker_id=row.worker_id,
        timestamp=to_utc_aware_datetime(row.created_at),
        details=details,
        sequence=row.id or 0,
    )
