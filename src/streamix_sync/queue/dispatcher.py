"""
Фасад постановки задач синхронизации.

Назначение:
- единая точка входа для вызывающего кода (контексты провайдеров, админка, скрипты)
- валидация конверта до любого I/O
- выбор backend'а: брокер (Redis Streams) или прямая durable-очередь в БД
- fan-out синхронизации провайдера в независимые задачи по папкам

Правила:
- backend выбирается один раз при создании фасада (QUEUE_BROKER_ENABLED);
  reset_sync_queue() пересоздаёт фасад после смены настройки
- автоматического переключения broker -> direct при ошибке нет
- ошибки публикации / вставки возвращаются как SubmitResult(ok=False), без ретраев
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from streamix_sync.common.config import broker_enabled
from streamix_sync.common.errors import AppError
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.metrics import record_submitted
from streamix_sync.contracts.envelope import TaskEnvelope, build_envelope
from streamix_sync.domain.enums import FOLDER_TASK_TYPES, Priority, TaskType
from streamix_sync.queue.publisher import Publisher, PublishResult
from streamix_sync.storage.jobs import JobStore

log = get_project_logger()

BACKEND_BROKER = "broker"
BACKEND_DIRECT = "direct"


@dataclass
class SubmitResult:
    ok: bool
    backend: str
    task_type: str | None = None
    submitted: int = 0
    failed: int = 0
    ids: list[str] = field(default_factory=list)
    duplicate: bool = False
    reason: str | None = None


@dataclass
class FanOutItem:
    envelope: TaskEnvelope
    priority: Priority


# =============================================================================
# BACKENDS
# =============================================================================
class TaskSubmitter(Protocol):
    backend: str
    # True: синхронизация провайдера разбивается на задачи по папкам
    fan_out: bool

    def submit(self, envelope: TaskEnvelope, priority: Priority) -> SubmitResult: ...

    def submit_batch(
        self, envelopes: list[TaskEnvelope], priority: Priority
    ) -> list[SubmitResult]: ...


class BrokerSubmitter:
    backend = BACKEND_BROKER
    fan_out = True

    def __init__(self, publisher: Publisher | None = None) -> None:
        self.publisher = publisher or Publisher()

    def submit(self, envelope: TaskEnvelope, priority: Priority) -> SubmitResult:
        return self._result(envelope, self.publisher.publish(envelope, priority))

    def submit_batch(self, envelopes: list[TaskEnvelope], priority: Priority) -> list[SubmitResult]:
        batch = self.publisher.publish_batch(envelopes, priority)
        return [self._result(env, res) for env, res in zip(envelopes, batch.results)]

    def _result(self, envelope: TaskEnvelope, res: PublishResult) -> SubmitResult:
        if not res.ok:
            return SubmitResult(
                ok=False,
                backend=self.backend,
                task_type=envelope.type.value,
                failed=1,
                reason=res.reason,
            )
        return SubmitResult(
            ok=True,
            backend=self.backend,
            task_type=envelope.type.value,
            submitted=1,
            ids=[res.task_id or ""],
        )


class DirectSubmitter:
    backend = BACKEND_DIRECT
    fan_out = False

    def __init__(self, store: JobStore | None = None) -> None:
        self.store = store or JobStore()

    def submit(self, envelope: TaskEnvelope, priority: Priority) -> SubmitResult:
        # в БД приоритетов нет: порядок выполнения определяет scheduled_at
        res = self.store.enqueue_job(envelope.type, envelope.fields)
        if not res.ok:
            return SubmitResult(
                ok=False,
                backend=self.backend,
                task_type=envelope.type.value,
                failed=1,
                reason=res.reason,
            )
        return SubmitResult(
            ok=True,
            backend=self.backend,
            task_type=envelope.type.value,
            submitted=1,
            ids=[str(res.job_id)],
            duplicate=res.duplicate,
        )

    def submit_batch(self, envelopes: list[TaskEnvelope], priority: Priority) -> list[SubmitResult]:
        return [self.submit(env, priority) for env in envelopes]


def build_submitter() -> TaskSubmitter:
    if broker_enabled():
        return BrokerSubmitter()
    return DirectSubmitter()


# =============================================================================
# FAN-OUT
# =============================================================================
def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _paths(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [p for p in value if isinstance(p, str) and p.strip()]


def plan_provider_sync(provider: Any) -> list[FanOutItem]:
    """
    Разбивает синхронизацию GIndex-провайдера на независимые задачи:
    - movies_path   -> gindex_movies (normal)
    - series_paths  -> gindex_series на каждую папку (low)
    - animes_path   -> gindex_animes (low)
    Если путей нет, одна задача gindex_full_sync.
    """
    provider_id = _get(provider, "id")
    drives = _get(provider, "gindex_drives") or {}

    plan: list[FanOutItem] = []
    for path in _paths(_get(drives, "movies_path")):
        plan.append(
            FanOutItem(
                build_envelope(TaskType.gindex_movies, {"provider_id": provider_id, "path": path}),
                Priority.normal,
            )
        )
    for path in _paths(_get(drives, "series_paths")):
        plan.append(
            FanOutItem(
                build_envelope(TaskType.gindex_series, {"provider_id": provider_id, "path": path}),
                Priority.low,
            )
        )
    for path in _paths(_get(drives, "animes_path")):
        plan.append(
            FanOutItem(
                build_envelope(TaskType.gindex_animes, {"provider_id": provider_id, "path": path}),
                Priority.low,
            )
        )

    if not plan:
        plan.append(
            FanOutItem(
                build_envelope(TaskType.gindex_full_sync, {"provider_id": provider_id}),
                Priority.normal,
            )
        )
    return plan


# =============================================================================
# ФАСАД
# =============================================================================
class SyncQueue:
    def __init__(self, submitter: TaskSubmitter) -> None:
        self.submitter = submitter

    @property
    def backend(self) -> str:
        return self.submitter.backend

    def enqueue_sync(
        self,
        task_type: TaskType | str,
        payload: Mapping[str, Any] | None,
        priority: Priority | str = Priority.normal,
    ) -> SubmitResult:
        """
        Поставить одну задачу. Невалидная задача отклоняется до обращения к backend'у.
        """
        try:
            envelope = build_envelope(task_type, payload)
            prio = Priority(priority)
        except (AppError, ValueError) as e:
            reason = f"{e.code}: {e.message}" if isinstance(e, AppError) else f"validation: {e}"
            log.warning(
                "enqueue_rejected",
                extra={"payload": {"type": str(task_type)[:100], "reason": reason}},
            )
            return SubmitResult(ok=False, backend=self.backend, task_type=str(task_type), reason=reason)

        return self._submit(envelope, prio)

    def enqueue_provider_sync(self, provider: Any) -> SubmitResult:
        """
        Синхронизация GIndex-провайдера.

        broker: fan-out в задачи по папкам, каждая в свою очередь по приоритету.
        direct: одна задача gindex_full_sync на провайдера.
        """
        provider_id = _get(provider, "id")
        try:
            if self.submitter.fan_out:
                plan = plan_provider_sync(provider)
            else:
                plan = [
                    FanOutItem(
                        build_envelope(TaskType.gindex_full_sync, {"provider_id": provider_id}),
                        Priority.normal,
                    )
                ]
        except AppError as e:
            reason = f"{e.code}: {e.message}"
            log.warning(
                "enqueue_rejected",
                extra={"payload": {"type": "provider_sync", "provider_id": provider_id, "reason": reason}},
            )
            return SubmitResult(ok=False, backend=self.backend, reason=reason)

        log.info(
            "enqueue_provider_sync",
            extra={
                "payload": {
                    "provider_id": provider_id,
                    "backend": self.backend,
                    "tasks": [item.envelope.type.value for item in plan],
                }
            },
        )
        return self._submit_many(plan, task_type="provider_sync")

    def enqueue_folder_tasks(
        self,
        provider_id: Any,
        folders: Iterable[str],
        task_type: TaskType | str = TaskType.gindex_movies,
        priority: Priority | str = Priority.normal,
    ) -> SubmitResult:
        """
        Одна задача на папку (ручной пересбор отдельных папок).
        """
        parsed = TaskType.parse(task_type)
        if parsed not in FOLDER_TASK_TYPES:
            reason = f"validation: {task_type} не папочный тип задачи"
            return SubmitResult(ok=False, backend=self.backend, task_type=str(task_type), reason=reason)

        try:
            prio = Priority(priority)
            plan = [
                FanOutItem(
                    build_envelope(parsed, {"provider_id": provider_id, "path": path}),
                    prio,
                )
                for path in _paths(list(folders))
            ]
        except (AppError, ValueError) as e:
            reason = f"{e.code}: {e.message}" if isinstance(e, AppError) else f"validation: {e}"
            return SubmitResult(ok=False, backend=self.backend, task_type=parsed.value, reason=reason)

        return self._submit_many(plan, task_type=parsed.value)

    # -------------------------------------------------------------------------
    def _submit(self, envelope: TaskEnvelope, priority: Priority) -> SubmitResult:
        res = self.submitter.submit(envelope, priority)
        self._record(envelope, priority, res)
        return res

    def _record(self, envelope: TaskEnvelope, priority: Priority, res: SubmitResult) -> None:
        record_submitted(backend=self.backend, task_type=envelope.type.value, ok=res.ok)
        log.info(
            "enqueue_sync",
            extra={
                "payload": {
                    **envelope.log_context(),
                    "backend": self.backend,
                    "priority": priority.value,
                    "ok": res.ok,
                    "duplicate": res.duplicate,
                    "reason": res.reason,
                }
            },
        )

    def _submit_many(self, plan: list[FanOutItem], *, task_type: str) -> SubmitResult:
        # одна пачка на очередь приоритета, порядок внутри очереди сохраняется
        groups: dict[Priority, list[TaskEnvelope]] = {}
        for item in plan:
            groups.setdefault(item.priority, []).append(item.envelope)

        results: list[SubmitResult] = []
        for priority, envelopes in groups.items():
            batch = self.submitter.submit_batch(envelopes, priority)
            for envelope, res in zip(envelopes, batch):
                self._record(envelope, priority, res)
            results.extend(batch)

        submitted = sum(r.submitted for r in results)
        failed = sum(r.failed for r in results)
        reasons = [r.reason for r in results if r.reason]
        return SubmitResult(
            ok=failed == 0,
            backend=self.backend,
            task_type=task_type,
            submitted=submitted,
            failed=failed,
            ids=[i for r in results for i in r.ids],
            reason="; ".join(reasons[:5]) if reasons else None,
        )


_sync_queue: SyncQueue | None = None
_lock = threading.Lock()


def get_sync_queue() -> SyncQueue:
    global _sync_queue
    if _sync_queue is None:
        with _lock:
            if _sync_queue is None:
                _sync_queue = SyncQueue(build_submitter())
                log.info("sync_queue_ready", extra={"payload": {"backend": _sync_queue.backend}})
    return _sync_queue


def reset_sync_queue() -> SyncQueue:
    """Пересоздать фасад (после смены QUEUE_BROKER_ENABLED)."""
    global _sync_queue
    with _lock:
        _sync_queue = SyncQueue(build_submitter())
    log.info("sync_queue_reset", extra={"payload": {"backend": _sync_queue.backend}})
    return _sync_queue


def enqueue_sync(
    task_type: TaskType | str,
    payload: Mapping[str, Any] | None,
    priority: Priority | str = Priority.normal,
) -> SubmitResult:
    return get_sync_queue().enqueue_sync(task_type, payload, priority)


def enqueue_provider_sync(provider: Any) -> SubmitResult:
    return get_sync_queue().enqueue_provider_sync(provider)
