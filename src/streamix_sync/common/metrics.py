"""
Метрики Prometheus для очереди синхронизации.

Назначение:
- Экспорт /metrics из процесса воркера
- Счётчики постановки / обработки / DLQ, глубина очередей, состояние fallback-задач
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

# Постановка задач через фасад
SYNC_TASKS_SUBMITTED_TOTAL = Counter(
    "sync_tasks_submitted_total",
    "Количество поставленных задач синхронизации",
    ["backend", "type", "result"],  # backend=broker|direct, result=ok|failed
)

# Исход обработки сообщений / задач
SYNC_TASKS_PROCESSED_TOTAL = Counter(
    "sync_tasks_processed_total",
    "Количество обработанных задач синхронизации",
    ["queue", "type", "result"],  # result=acked|requeued|dead_lettered|pending|completed|retry|discarded
)

SYNC_DEAD_LETTERED_TOTAL = Counter(
    "sync_dead_lettered_total",
    "Количество сообщений, отправленных в DLQ",
    ["queue", "reason"],
)

SYNC_TASK_LATENCY_MS = Histogram(
    "sync_task_latency_ms",
    "Длительность выполнения handler'а (мс)",
    ["queue", "type"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 300000, 600000),
)

SYNC_INFLIGHT = Gauge(
    "sync_inflight",
    "Задачи, выполняющиеся прямо сейчас",
    ["queue"],
)

QUEUE_DEPTH = Gauge(
    "sync_queue_depth",
    "Текущая глубина stream-очередей",
    ["queue"],
)

DLQ_DEPTH = Gauge(
    "sync_dlq_depth",
    "Текущая глубина DLQ",
)

QUEUE_PENDING = Gauge(
    "sync_queue_pending",
    "Текущее количество pending (неподтверждённых) сообщений в consumer group",
    ["queue", "group"],
)

JOBS_BY_STATE = Gauge(
    "sync_jobs",
    "Количество fallback-задач в БД по состояниям",
    ["state"],
)

SUPERVISOR_RESTARTS_TOTAL = Counter(
    "sync_supervisor_restarts_total",
    "Перезапуски упавших компонентов супервизором",
    ["component"],
)

METRICS_COLLECTION_ERRORS_TOTAL = Counter(
    "sync_metrics_collection_errors_total",
    "Ошибки сборки служебных метрик",
    ["source"],
)


@contextmanager
def track_task(queue: str, task_type: str) -> Iterator[None]:
    SYNC_INFLIGHT.labels(queue=queue).inc()
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        SYNC_TASK_LATENCY_MS.labels(queue=queue, type=task_type).observe(elapsed_ms)
        SYNC_INFLIGHT.labels(queue=queue).dec()


def record_submitted(*, backend: str, task_type: str, ok: bool) -> None:
    SYNC_TASKS_SUBMITTED_TOTAL.labels(
        backend=backend, type=task_type, result="ok" if ok else "failed"
    ).inc()


def record_processed(*, queue: str, task_type: str, result: str) -> None:
    SYNC_TASKS_PROCESSED_TOTAL.labels(queue=queue, type=task_type, result=result).inc()


def record_dead_lettered(*, queue: str, reason: str) -> None:
    SYNC_DEAD_LETTERED_TOTAL.labels(queue=queue, reason=reason).inc()


def _stream_len(r, stream: str) -> int:
    try:
        return int(r.xlen(stream))
    except Exception:
        return 0


def _xpending_count(r, stream: str, group: str) -> int:
    try:
        pending = r.xpending(stream, group)
        if isinstance(pending, dict):
            return int(pending.get("pending", 0))
    except Exception:
        return 0
    return 0


def refresh_queue_metrics() -> None:
    try:
        from streamix_sync.queue.redis import redis_client
        from streamix_sync.queue.streams import all_queue_names, dead_letter_name, group_name

        r = redis_client()
        group = group_name()
        for queue in all_queue_names():
            QUEUE_DEPTH.labels(queue=queue).set(_stream_len(r, queue))
            QUEUE_PENDING.labels(queue=queue, group=group).set(_xpending_count(r, queue, group))
        DLQ_DEPTH.set(_stream_len(r, dead_letter_name()))
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="queue_metrics").inc()


def refresh_job_metrics() -> None:
    try:
        from streamix_sync.storage.jobs import JobStore

        for state, count in JobStore().count_by_state().items():
            JOBS_BY_STATE.labels(state=state).set(count)
    except Exception:
        METRICS_COLLECTION_ERRORS_TOTAL.labels(source="job_metrics").inc()


# =============================================================================
# ENDPOINT /metrics
# =============================================================================
def setup_metrics_endpoint(
    app: FastAPI, refreshers: list[Callable[[], None]] | None = None
) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """
    collectors = list(refreshers or [])

    @app.get("/metrics")
    def metrics() -> Response:
        for refresh in collectors:
            refresh()
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
