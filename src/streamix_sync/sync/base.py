"""
Контракт внешних обработчиков синхронизации (collaborators).

Назначение:
- единый интерфейс, через который очередь вызывает sync/scrape логику
- ядро очереди не знает, как устроены upsert'ы и скрейпинг

Требования к реализациям:
- идемпотентность: повторный вызов с теми же аргументами даёт то же состояние (upsert)
- ошибки сообщаются исключением; очередь сама превращает их в HandlerResult
- длительные операции периодически проверяют ctx.cancelled / ctx.raise_if_cancelled()
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from streamix_sync.common.errors import TaskTimeoutError


@dataclass
class TaskContext:
    """
    Контекст одного выполнения задачи: дедлайн и кооперативная отмена.
    """

    task_type: str
    task_id: str | None = None
    attempt: int = 1
    timeout_sec: float | None = None
    started_at: float = field(default_factory=time.monotonic)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def deadline(self) -> float | None:
        if self.timeout_sec is None:
            return None
        return self.started_at + self.timeout_sec

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float | None:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def cancel(self) -> None:
        self.cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskTimeoutError(self.timeout_sec or 0.0)


class SyncCollaborators(Protocol):
    # GIndex
    def sync_gindex_provider(self, ctx: TaskContext, provider_id: Any) -> dict[str, Any]: ...

    def scrape_gindex_movies(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]: ...

    def scrape_gindex_series(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]: ...

    def scrape_gindex_animes(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]: ...

    # IPTV (Xtream): возвращают количество синхронизированных записей
    def sync_iptv_categories(self, ctx: TaskContext, provider_id: Any) -> int: ...

    def sync_iptv_live(self, ctx: TaskContext, provider_id: Any) -> int: ...

    def sync_iptv_movies(self, ctx: TaskContext, provider_id: Any) -> int: ...

    def sync_iptv_series(self, ctx: TaskContext, provider_id: Any) -> int: ...

    # Статус провайдера (флаг в UI); вызывается при окончательном провале задачи
    def mark_sync_status(self, provider_id: Any, status: str) -> None: ...
