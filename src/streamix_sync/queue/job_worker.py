"""
Fallback-воркер: выполнение задач из таблицы sync_jobs (брокер выключен).

Алгоритм (на каждый слот-поток):
- claim одной задачи (FOR UPDATE SKIP LOCKED)
- run_task по той же таблице handler'ов, что и у consumer pipeline
- complete / fail (retryable с backoff или discarded)
- discarded -> mark_sync_status(provider_id, "failed")

Обслуживание (отдельный поток):
- rescue_stuck: executing-задачи упавших воркеров -> retryable
  (или discarded + хук провала, если упали на последней попытке)
- prune: удаление старых completed/discarded
"""

from __future__ import annotations

import os
import socket
import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from streamix_sync.common.config import get_settings
from streamix_sync.common.errors import AppError, ErrCode
from streamix_sync.common.logging import get_queue_logger
from streamix_sync.common.metrics import record_processed, track_task
from streamix_sync.domain.enums import JobState
from streamix_sync.queue.handlers import HandlerTable, run_task
from streamix_sync.storage.jobs import ClaimedJob, JobStore

log = get_queue_logger()

JOBS_QUEUE_LABEL = "sync_jobs"

PermanentFailureHook = Callable[[dict[str, Any], str], None]


class JobWorkerPool:
    def __init__(
        self,
        store: JobStore,
        handlers: HandlerTable,
        *,
        concurrency: int | None = None,
        poll_interval_sec: float | None = None,
        task_timeout_sec: float | None = None,
        cancel_grace_sec: float | None = None,
        maintenance_interval_sec: float | None = None,
        rescue_after_sec: int | None = None,
        prune_max_age_sec: int | None = None,
        on_permanent_failure: PermanentFailureHook | None = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.handlers = handlers
        self.concurrency = max(1, concurrency or s.jobs_concurrency)
        self.poll_interval_sec = (
            s.jobs_poll_interval_sec if poll_interval_sec is None else poll_interval_sec
        )
        self.task_timeout_sec = (
            s.queue_task_timeout_sec if task_timeout_sec is None else task_timeout_sec
        )
        self.cancel_grace_sec = (
            s.queue_cancel_grace_sec if cancel_grace_sec is None else cancel_grace_sec
        )
        self.maintenance_interval_sec = (
            s.jobs_maintenance_interval_sec
            if maintenance_interval_sec is None
            else maintenance_interval_sec
        )
        self.rescue_after_sec = s.jobs_rescue_after_sec if rescue_after_sec is None else rescue_after_sec
        self.prune_max_age_sec = (
            s.jobs_prune_max_age_sec if prune_max_age_sec is None else prune_max_age_sec
        )
        self.on_permanent_failure = on_permanent_failure

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._inflight = 0
        self._inflight_lock = threading.Lock()
        self.last_error: str | None = None

    @property
    def name(self) -> str:
        return "jobs"

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================
    def start(self) -> None:
        self._stop.clear()
        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(f"{socket.gethostname()}-{os.getpid()}-jobs-{slot}",),
                name=f"jobs#{slot}",
                daemon=True,
            )
            for slot in range(self.concurrency)
        ]
        threads.append(
            threading.Thread(target=self._maintenance_loop, name="jobs-maintenance", daemon=True)
        )
        self._threads = threads
        for t in self._threads:
            t.start()
        log.info(
            "job_worker_pool_started",
            extra={"payload": {"concurrency": self.concurrency, "poll_interval_sec": self.poll_interval_sec}},
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        log.info("job_worker_pool_stopped")

    def is_alive(self) -> bool:
        return bool(self._threads) and all(t.is_alive() for t in self._threads)

    def is_drained(self) -> bool:
        """Все потоки (включая зависшие в handler'е) завершились."""
        return not any(t.is_alive() for t in self._threads)

    def health(self) -> dict[str, Any]:
        return {
            "alive": self.is_alive(),
            "workers_alive": sum(1 for t in self._threads if t.is_alive()),
            "concurrency": self.concurrency,
            "inflight": self._inflight,
            "last_error": self.last_error,
        }

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                if self.run_once(worker_id) is None:
                    self._stop.wait(self.poll_interval_sec)
            except SQLAlchemyError as e:
                self.last_error = str(e)[:200]
                log.error(
                    "job_worker_db_error",
                    extra={"payload": {"worker": worker_id, "err": str(e)[:200]}},
                )
                self._stop.wait(max(1.0, self.poll_interval_sec))

    def _maintenance_loop(self) -> None:
        while not self._stop.wait(self.maintenance_interval_sec):
            try:
                self.run_maintenance()
            except SQLAlchemyError as e:
                self.last_error = str(e)[:200]
                log.error("job_maintenance_failed", extra={"payload": {"err": str(e)[:200]}})

    # =========================================================================
    # ОБРАБОТКА
    # =========================================================================
    def run_once(self, worker_id: str = "jobs-0") -> JobState | None:
        """
        Забрать и выполнить одну задачу. None — готовых задач нет.
        """
        claimed = self.store.claim(limit=1, worker_id=worker_id)
        if not claimed:
            return None
        return self.execute(claimed[0])

    def execute(self, job: ClaimedJob) -> JobState:
        task = job.as_task()
        log.info(
            "job_processing",
            extra={
                "payload": {
                    "job_id": job.id,
                    "type": job.task_type,
                    "provider_id": job.args.get("provider_id"),
                    "path": job.args.get("path"),
                    "attempt": job.attempt,
                    "max_attempts": job.max_attempts,
                }
            },
        )

        with self._inflight_lock:
            self._inflight += 1
        try:
            with track_task(JOBS_QUEUE_LABEL, job.task_type):
                result = run_task(
                    task,
                    self.handlers,
                    task_id=f"job-{job.id}",
                    attempt=job.attempt,
                    timeout_sec=self.task_timeout_sec,
                    cancel_grace_sec=self.cancel_grace_sec,
                )
        finally:
            with self._inflight_lock:
                self._inflight -= 1

        if result.ok:
            self.store.complete(job.id)
            record_processed(queue=JOBS_QUEUE_LABEL, task_type=job.task_type, result="completed")
            log.info(
                "job_completed",
                extra={"payload": {"job_id": job.id, "type": job.task_type, "summary": result.summary}},
            )
            return JobState.completed

        reason = result.reason or ErrCode.HANDLER_ERROR
        state = self.store.fail(job.id, reason)
        record_processed(
            queue=JOBS_QUEUE_LABEL,
            task_type=job.task_type,
            result="discarded" if state == JobState.discarded else "retry",
        )
        log.error(
            "job_failed",
            extra={
                "payload": {
                    "job_id": job.id,
                    "type": job.task_type,
                    "attempt": job.attempt,
                    "state": state.value,
                    "reason": reason,
                }
            },
        )
        if state == JobState.discarded:
            self._notify_permanent_failure(job, reason)
        return state

    def _notify_permanent_failure(self, job: ClaimedJob, reason: str) -> None:
        if self.on_permanent_failure is None:
            return
        try:
            self.on_permanent_failure(job.as_task(), reason)
        except Exception as e:
            log.error(
                "permanent_failure_hook_error",
                extra={"payload": {"job_id": job.id, "err": str(e)[:200]}},
            )

    def run_maintenance(self) -> dict[str, int]:
        started = time.perf_counter()
        rescue = self.store.rescue_stuck(self.rescue_after_sec)
        for job in rescue.discarded:
            # воркер упал на последней попытке
            record_processed(queue=JOBS_QUEUE_LABEL, task_type=job.task_type, result="discarded")
            self._notify_permanent_failure(job, ErrCode.DELIVERIES_EXHAUSTED)
        pruned = self.store.prune(self.prune_max_age_sec)
        report = {"rescued": len(rescue.rescued), "discarded": len(rescue.discarded), "pruned": pruned}
        log.debug(
            "job_maintenance_done",
            extra={
                "payload": {
                    **report,
                    "elapsed_ms": int((time.perf_counter() - started) * 1000),
                }
            },
        )
        return report


def provider_status_hook(mark_sync_status: Callable[[Any, str], None]) -> PermanentFailureHook:
    """
    Хук окончательного провала: провайдер помечается как failed (флаг в UI).
    """

    def hook(task: dict[str, Any], reason: str) -> None:
        provider_id = task.get("provider_id")
        if provider_id in (None, ""):
            return
        try:
            mark_sync_status(provider_id, "failed")
        except AppError as e:
            log.warning(
                "mark_sync_status_failed",
                extra={"payload": {"provider_id": provider_id, "err": e.message, "reason": reason}},
            )

    return hook
