from pathlib import Path

import allure
from sqlalchemy import inspect, text

from context_relay.ledger import SqlLedgerBackend
from context_relay.storage.alembic_runner import head_revision, ledger_config

pytestmark = [
    allure.epic("Durability"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    backend = SqlLedgerBackend(tmp_path / "migrations.db")
    backend.init_schema()

    with backend.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    inspector = inspect(backend.engine)
    columns = {column["name"] for column in inspector.get_columns("plan_records")}
    indexes = {index["name"] for index in inspector.get_indexes("plan_records")}
    backend.close()

    assert version == head_revision(ledger_config(tmp_path / "migrations.db")) == "20261016_0001"
    assert {"id", "task_id", "subtask_id", "event", "details_json", "created_at"} <= columns
    assert "idx_plan_records_task_sequence" in indexes


def test_init_schema_is_idempotent_and_creates_parent_dirs(tmp_path: Path) -> None:
    backend = SqlLedgerBackend(tmp_path / "nested" / "twice.db")
    backend.init_schema()
    backend.init_schema()

    assert backend.task_ids() == []
    backend.close()
