"""SQLModel ORM tables for the plan ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class PlanRecordRow(SQLModel, table=True):
    __tablename__ = "plan_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_plan_records_task_sequence", "task_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    subtask_id: str | None = Field(default=None, index=True)
    event: str = Field(index=True)
    from_state: str | None = None
    to_state: str | None = None
    worker_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
