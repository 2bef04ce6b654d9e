"""
Durable fallback-очередь задач синхронизации (БД).

Назначение:
- вставка задачи, когда брокер выключен (одна строка на логический запрос)
- захват задач воркерами: SELECT ... FOR UPDATE SKIP LOCKED
- завершение / повтор с экспоненциальным backoff / discard после max_attempts
- обслуживание: возврат зависших executing-задач, чистка старых завершённых

Правила:
- SyncJobRepository: только запросы, без бизнес-логики
- JobStore: транзакции и переходы состояний
- окно уникальности: проверка дубля и вставка под advisory lock на unique_key
  (PostgreSQL), параллельные enqueue_job одной задачи не вставляют две строки
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from streamix_sync.common.config import get_settings
from streamix_sync.common.errors import AppError, ErrCode, JobStoreError
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.time import utc_now_iso, utc_now_naive
from streamix_sync.contracts.envelope import build_envelope
from streamix_sync.domain.enums import JobState, TaskType
from streamix_sync.queue.retry import RetryPolicy
from streamix_sync.storage.db import get_session_factory, session_scope
from streamix_sync.storage.models import SyncJob

log = get_project_logger()

_PENDING_STATES = (JobState.available, JobState.retryable)
_FINISHED_STATES = (JobState.completed, JobState.discarded)


def unique_key_for(task_type: str, args: Mapping[str, Any]) -> str:
    raw = json.dumps({"type": task_type, "args": dict(args)}, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def advisory_lock_id(unique_key: str) -> int:
    # signed bigint для pg_advisory_xact_lock
    return int.from_bytes(bytes.fromhex(unique_key[:16]), "big", signed=True)


@dataclass
class JobInsertResult:
    ok: bool
    job_id: int | None = None
    duplicate: bool = False
    reason: str | None = None


@dataclass
class ClaimedJob:
    id: int
    task_type: str
    args: dict[str, Any]
    attempt: int
    max_attempts: int

    def as_task(self) -> dict[str, Any]:
        return {"type": self.task_type, **self.args}


def _claimed(job: SyncJob) -> ClaimedJob:
    return ClaimedJob(
        id=job.id,
        task_type=job.task_type,
        args=dict(job.args or {}),
        attempt=job.attempt,
        max_attempts=job.max_attempts,
    )


@dataclass
class RescueResult:
    rescued: list[int] = field(default_factory=list)
    discarded: list[ClaimedJob] = field(default_factory=list)


# =============================================================================
# REPOSITORY
# =============================================================================
class SyncJobRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, job_id: int) -> SyncJob | None:
        return self.session.get(SyncJob, job_id)

    def add(self, job: SyncJob) -> SyncJob:
        self.session.add(job)
        self.session.flush()
        return job

    def lock_unique_key(self, unique_key: str) -> None:
        """
        Сериализует проверку дубля и вставку для одного unique_key.
        PostgreSQL: advisory lock до конца транзакции. SQLite (тесты) пропускается.
        """
        if self.session.get_bind().dialect.name != "postgresql":
            return
        self.session.execute(select(func.pg_advisory_xact_lock(advisory_lock_id(unique_key))))

    def find_pending_duplicate(self, unique_key: str, since: datetime) -> SyncJob | None:
        stmt = (
            select(SyncJob)
            .where(
                SyncJob.unique_key == unique_key,
                SyncJob.state.in_(_PENDING_STATES),
                SyncJob.inserted_at >= since,
            )
            .order_by(SyncJob.id)
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def lock_due(self, now: datetime, limit: int) -> list[SyncJob]:
        stmt = (
            select(SyncJob)
            .where(SyncJob.state.in_(_PENDING_STATES), SyncJob.scheduled_at <= now)
            .order_by(SyncJob.scheduled_at, SyncJob.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(self.session.scalars(stmt).all())

    def list_stuck(self, attempted_before: datetime) -> list[SyncJob]:
        stmt = (
            select(SyncJob)
            .where(SyncJob.state == JobState.executing, SyncJob.attempted_at < attempted_before)
            .with_for_update(skip_locked=True)
        )
        return list(self.session.scalars(stmt).all())

    def delete_finished_before(self, cutoff: datetime) -> int:
        stmt = delete(SyncJob).where(
            SyncJob.state.in_(_FINISHED_STATES),
            func.coalesce(SyncJob.completed_at, SyncJob.discarded_at) < cutoff,
        )
        res = self.session.execute(stmt)
        return int(res.rowcount or 0)

    def count_by_state(self) -> dict[str, int]:
        stmt = select(SyncJob.state, func.count()).group_by(SyncJob.state)
        return {JobState(state).value: int(n) for state, n in self.session.execute(stmt).all()}


# =============================================================================
# JOB STORE
# =============================================================================
class JobStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        unique_period_sec: int | None = None,
    ) -> None:
        s = get_settings()
        self._session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=s.jobs_max_attempts,
            base_delay_sec=s.jobs_backoff_base_sec,
            max_delay_sec=s.jobs_backoff_max_sec,
        )
        self.unique_period_sec = (
            s.jobs_unique_period_sec if unique_period_sec is None else unique_period_sec
        )

    def _session(self):
        return session_scope(self._session_factory or get_session_factory())

    # -------------------------------------------------------------------------
    # Вставка
    # -------------------------------------------------------------------------
    def enqueue_job(self, task_type: TaskType | str, payload: Mapping[str, Any]) -> JobInsertResult:
        """
        Вставить задачу. Одинаковая {type, payload}, ещё не взятая в работу
        в окне уникальности, повторно не вставляется.
        """
        try:
            env = build_envelope(task_type, payload)
        except AppError as e:
            return JobInsertResult(ok=False, reason=f"{e.code}: {e.message}")

        args = dict(env.fields)
        key = unique_key_for(env.type.value, args)
        try:
            with self._session() as session:
                repo = SyncJobRepository(session)
                if self.unique_period_sec > 0:
                    repo.lock_unique_key(key)
                    since = utc_now_naive() - timedelta(seconds=self.unique_period_sec)
                    dup = repo.find_pending_duplicate(key, since)
                    if dup is not None:
                        log.info(
                            "job_duplicate_skipped",
                            extra={"payload": {**env.log_context(), "job_id": dup.id}},
                        )
                        return JobInsertResult(ok=True, job_id=dup.id, duplicate=True)

                now = utc_now_naive()
                job = repo.add(
                    SyncJob(
                        task_type=env.type.value,
                        args=args,
                        unique_key=key,
                        state=JobState.available,
                        attempt=0,
                        max_attempts=self.retry_policy.max_attempts,
                        inserted_at=now,
                        scheduled_at=now,
                        errors=[],
                    )
                )
                job_id = job.id
        except SQLAlchemyError as e:
            log.error(
                "job_insert_failed",
                extra={"payload": {**env.log_context(), "err": str(e)[:200]}},
            )
            return JobInsertResult(ok=False, reason=f"{ErrCode.DB_ERROR}: {str(e)[:200]}")

        return JobInsertResult(ok=True, job_id=job_id)

    # -------------------------------------------------------------------------
    # Воркер
    # -------------------------------------------------------------------------
    def claim(self, *, limit: int = 1, worker_id: str | None = None) -> list[ClaimedJob]:
        now = utc_now_naive()
        with self._session() as session:
            jobs = SyncJobRepository(session).lock_due(now, limit)
            claimed: list[ClaimedJob] = []
            for job in jobs:
                job.state = JobState.executing
                job.attempt = int(job.attempt or 0) + 1
                job.attempted_at = now
                job.attempted_by = worker_id
                claimed.append(_claimed(job))
            return claimed

    def complete(self, job_id: int) -> None:
        with self._session() as session:
            job = self._require(session, job_id)
            job.state = JobState.completed
            job.completed_at = utc_now_naive()

    def fail(self, job_id: int, error: str) -> JobState:
        """
        Зафиксировать ошибку попытки. Возвращает новое состояние:
        retryable (с backoff) или discarded (попытки исчерпаны).
        """
        with self._session() as session:
            job = self._require(session, job_id)
            now = utc_now_naive()
            # новый список: JSON-колонка не отслеживает мутации на месте
            job.errors = [
                *(job.errors or []),
                {"attempt": job.attempt, "at": utc_now_iso(), "error": (error or "")[:500]},
            ]
            if job.attempt >= job.max_attempts:
                job.state = JobState.discarded
                job.discarded_at = now
            else:
                job.state = JobState.retryable
                job.scheduled_at = now + timedelta(seconds=self.retry_policy.delay_for(job.attempt))
            return job.state

    def get(self, job_id: int) -> SyncJob | None:
        with self._session() as session:
            job = SyncJobRepository(session).get(job_id)
            if job is not None:
                session.expunge(job)
            return job

    # -------------------------------------------------------------------------
    # Обслуживание
    # -------------------------------------------------------------------------
    def rescue_stuck(self, older_than_sec: int) -> RescueResult:
        """
        executing-задачи, брошенные упавшим воркером.

        - попытки остались -> retryable (сразу к выполнению)
        - попытка была последней -> discarded (задача, роняющая воркер, не крутится бесконечно)
        """
        cutoff = utc_now_naive() - timedelta(seconds=older_than_sec)
        result = RescueResult()
        with self._session() as session:
            now = utc_now_naive()
            for job in SyncJobRepository(session).list_stuck(cutoff):
                if job.attempt >= job.max_attempts:
                    job.errors = [
                        *(job.errors or []),
                        {"attempt": job.attempt, "at": utc_now_iso(), "error": ErrCode.DELIVERIES_EXHAUSTED},
                    ]
                    job.state = JobState.discarded
                    job.discarded_at = now
                    result.discarded.append(_claimed(job))
                else:
                    job.state = JobState.retryable
                    job.scheduled_at = now
                    result.rescued.append(job.id)
        if result.rescued:
            log.warning(
                "jobs_rescued",
                extra={"payload": {"count": len(result.rescued), "ids": result.rescued[:50]}},
            )
        if result.discarded:
            log.error(
                "stuck_jobs_discarded",
                extra={
                    "payload": {
                        "count": len(result.discarded),
                        "ids": [j.id for j in result.discarded][:50],
                    }
                },
            )
        return result

    def prune(self, max_age_sec: int) -> int:
        cutoff = utc_now_naive() - timedelta(seconds=max_age_sec)
        with self._session() as session:
            deleted = SyncJobRepository(session).delete_finished_before(cutoff)
        if deleted:
            log.info("jobs_pruned", extra={"payload": {"deleted": deleted}})
        return deleted

    def count_by_state(self) -> dict[str, int]:
        with self._session() as session:
            return SyncJobRepository(session).count_by_state()

    @staticmethod
    def _require(session: Session, job_id: int) -> SyncJob:
        job = SyncJobRepository(session).get(job_id)
        if job is None:
            raise JobStoreError("Задача не найдена", {"job_id": job_id})
        return job
