"""
ORM-модели базы данных.

Назначение:
- Durable fallback-очередь задач синхронизации (когда брокер выключен)
- Трассируемость попыток и ошибок
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from streamix_sync.common.time import utc_now_naive
from streamix_sync.domain.enums import JobState


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# SYNC JOBS
# =============================================================================
class SyncJob(Base):
    """
    Одна задача синхронизации = одна строка.
    Воркер забирает её (executing), затем completed / retryable / discarded.
    """

    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    task_type: Mapped[str] = mapped_column(String(64), nullable=False)
    args: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # sha256 от {type, args}: для окна уникальности
    unique_key: Mapped[str] = mapped_column(String(64), nullable=False)

    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="sync_job_state"), default=JobState.available, nullable=False
    )
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    inserted_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, nullable=False)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    attempted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # [{attempt, at, error}]
    errors: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        Index("ix_sync_jobs_state_scheduled_at", "state", "scheduled_at"),
        Index("ix_sync_jobs_unique_key", "unique_key"),
    )
