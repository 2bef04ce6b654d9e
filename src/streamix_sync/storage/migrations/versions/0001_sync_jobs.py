"""
Fallback-очередь задач синхронизации.

Создаёт таблицы:
- sync_jobs
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_sync_jobs"
down_revision = None
branch_labels = None
depends_on = None

_STATES = ("available", "executing", "retryable", "completed", "discarded")


def upgrade() -> None:
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("task_type", sa.String(length=64), nullable=False),
        sa.Column("args", sa.JSON(), nullable=False),
        sa.Column("unique_key", sa.String(length=64), nullable=False),
        sa.Column("state", sa.Enum(*_STATES, name="sync_job_state"), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("inserted_at", sa.DateTime(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("discarded_at", sa.DateTime(), nullable=True),
        sa.Column("attempted_by", sa.String(length=255), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_sync_jobs_state_scheduled_at", "sync_jobs", ["state", "scheduled_at"], unique=False
    )
    op.create_index("ix_sync_jobs_unique_key", "sync_jobs", ["unique_key"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sync_jobs_unique_key", table_name="sync_jobs")
    op.drop_index("ix_sync_jobs_state_scheduled_at", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    sa.Enum(name="sync_job_state").drop(op.get_bind(), checkfirst=True)
