"""
Таблица обработчиков задач синхронизации.

Назначение:
- фиксированное соответствие TaskType -> handler (8 типов, всё остальное = ошибка)
- одна и та же таблица для consumer pipeline (брокер) и fallback-воркера (БД)
- жёсткий таймаут на задачу с кооперативной отменой через TaskContext

Контракт handler'а:
- принимает TaskContext и поля конверта (без "type")
- выполняет ровно одну единицу работы
- возвращает HandlerResult (ok + summary | ошибка + reason)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from streamix_sync.common.errors import AppError, ErrCode
from streamix_sync.common.logging import get_queue_logger
from streamix_sync.domain.enums import TaskType
from streamix_sync.sync.base import SyncCollaborators, TaskContext

log = get_queue_logger()

_CANCEL_IGNORED_POLL_SEC = 1.0


@dataclass
class HandlerResult:
    ok: bool
    summary: dict[str, Any] | None = None
    reason: str | None = None

    @classmethod
    def success(cls, summary: dict[str, Any] | None = None) -> HandlerResult:
        return cls(ok=True, summary=summary or {})

    @classmethod
    def failure(cls, reason: str) -> HandlerResult:
        return cls(ok=False, reason=reason)


Handler = Callable[[TaskContext, Mapping[str, Any]], HandlerResult]
HandlerTable = Mapping[TaskType, Handler]


# =============================================================================
# ПОСТРОЕНИЕ ТАБЛИЦЫ
# =============================================================================
def build_handler_table(collaborators: SyncCollaborators) -> HandlerTable:
    """
    Таблица только для чтения: её разделяют все воркеры процесса.
    """
    c = collaborators

    def _count(method: Callable[..., int], key: str) -> Handler:
        def handler(ctx: TaskContext, fields: Mapping[str, Any]) -> HandlerResult:
            count = method(ctx, fields["provider_id"])
            return HandlerResult.success({key: int(count or 0)})

        return handler

    def _folder(method: Callable[..., dict[str, Any]]) -> Handler:
        def handler(ctx: TaskContext, fields: Mapping[str, Any]) -> HandlerResult:
            summary = method(ctx, fields["provider_id"], fields["path"])
            return HandlerResult.success(dict(summary or {}))

        return handler

    def _full_sync(ctx: TaskContext, fields: Mapping[str, Any]) -> HandlerResult:
        return HandlerResult.success(dict(c.sync_gindex_provider(ctx, fields["provider_id"]) or {}))

    table: dict[TaskType, Handler] = {
        TaskType.gindex_full_sync: _full_sync,
        TaskType.gindex_movies: _folder(c.scrape_gindex_movies),
        TaskType.gindex_series: _folder(c.scrape_gindex_series),
        TaskType.gindex_animes: _folder(c.scrape_gindex_animes),
        TaskType.iptv_categories: _count(c.sync_iptv_categories, "categories"),
        TaskType.iptv_live: _count(c.sync_iptv_live, "live_channels"),
        TaskType.iptv_movies: _count(c.sync_iptv_movies, "movies"),
        TaskType.iptv_series: _count(c.sync_iptv_series, "series"),
    }
    return MappingProxyType(table)


# =============================================================================
# DISPATCH
# =============================================================================
def dispatch(
    task: Mapping[str, Any],
    handlers: HandlerTable,
    ctx: TaskContext | None = None,
) -> HandlerResult:
    """
    Находит handler по task["type"] и вызывает ровно его.

    - нет type                     -> invalid_task
    - type вне таблицы             -> unknown_task_type (collaborator не вызывается)
    - нет provider_id / path       -> invalid_task
    - исключение внутри handler'а  -> ошибка с текстом исключения
    """
    raw_type = task.get("type")
    if raw_type is None:
        return HandlerResult.failure(ErrCode.INVALID_TASK)

    task_type = TaskType.parse(raw_type)
    handler = handlers.get(task_type) if task_type is not None else None
    if handler is None:
        log.warning("task_unknown_type", extra={"payload": {"type": str(raw_type)[:100]}})
        return HandlerResult.failure(ErrCode.UNKNOWN_TASK_TYPE)

    fields = {k: v for k, v in task.items() if k != "type"}
    if fields.get("provider_id") in (None, ""):
        return HandlerResult.failure(ErrCode.INVALID_TASK)
    if task_type.requires_path and not fields.get("path"):
        return HandlerResult.failure(ErrCode.INVALID_TASK)

    if ctx is None:
        ctx = TaskContext(task_type=task_type.value)

    try:
        return handler(ctx, fields)
    except AppError as e:
        return HandlerResult.failure(f"{e.code}: {e.message}")
    except Exception as e:
        log.exception(
            "task_handler_exception",
            extra={
                "payload": {
                    "type": task_type.value,
                    "provider_id": fields.get("provider_id"),
                    "path": fields.get("path"),
                }
            },
        )
        return HandlerResult.failure(f"{type(e).__name__}: {str(e)[:250]}")


def run_task(
    task: Mapping[str, Any],
    handlers: HandlerTable,
    *,
    task_id: str | None = None,
    attempt: int = 1,
    timeout_sec: float | None = None,
    cancel_grace_sec: float = 0.0,
) -> HandlerResult:
    """
    dispatch() с жёстким таймаутом.

    По таймауту выставляется ctx.cancel_event, и мы ждём cancel_grace_sec,
    пока handler сам остановится. Результат в любом случае = ошибка timeout.

    Важно:
    - возврат только после фактического завершения handler'а: слот не берёт
      следующее сообщение, пока старый вызов жив (иначе вызовов больше N, а
      повторная доставка того же конверта пересекается с первой)
    """
    ctx = TaskContext(
        task_type=str(task.get("type")),
        task_id=task_id,
        attempt=attempt,
        timeout_sec=timeout_sec if timeout_sec and timeout_sec > 0 else None,
    )
    if ctx.timeout_sec is None:
        return dispatch(task, handlers, ctx)

    box: dict[str, HandlerResult] = {}

    def _target() -> None:
        box["result"] = dispatch(task, handlers, ctx)

    runner = threading.Thread(
        target=_target,
        name=f"task-{task_id or ctx.task_type}",
        daemon=True,
    )
    runner.start()
    runner.join(ctx.timeout_sec)

    if runner.is_alive():
        ctx.cancel()
        runner.join(max(0.0, cancel_grace_sec))
        payload = {
            "type": ctx.task_type,
            "task_id": task_id,
            "provider_id": task.get("provider_id"),
            "path": task.get("path"),
            "timeout_sec": ctx.timeout_sec,
        }
        log.warning("task_timeout", extra={"payload": {**payload, "cancel_ignored": runner.is_alive()}})
        if runner.is_alive():
            waited = time.monotonic()
            while runner.is_alive():
                runner.join(_CANCEL_IGNORED_POLL_SEC)
            log.warning(
                "task_cancel_ignored_finished",
                extra={"payload": {**payload, "overrun_sec": round(time.monotonic() - waited, 3)}},
            )
        return HandlerResult.failure(ErrCode.TIMEOUT)

    return box.get("result") or HandlerResult.failure(ErrCode.HANDLER_ERROR)
