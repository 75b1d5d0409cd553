"""Create append-only plan ledger table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "plan_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("subtask_id", sa.String(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_records_task_id", "plan_records", ["task_id"], unique=False)
    op.create_index("ix_plan_records_subtask_id", "plan_records", ["subtask_id"], unique=False)
    op.create_index("ix_plan_records_event", "plan_records", ["event"], unique=False)
    op.create_index(
        "idx_plan_records_task_sequence",
        "plan_records",
        ["task_id", "id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_plan_records_task_sequence", table_name="plan_records")
    op.drop_index("ix_plan_records_event", table_name="plan_records")
    op.drop_index("ix_plan_records_subtask_id", table_name="plan_records")
    op.drop_index("ix_plan_records_task_id", table_name="plan_records")
    op.drop_table("plan_records")
