from __future__ import annotations

from typing import Any

from streamix_sync.common.logging import get_project_logger
from streamix_sync.sync.base import SyncCollaborators, TaskContext

log = get_project_logger()


class MockSyncCollaborators(SyncCollaborators):
    """Заглушка: ничего не синхронизирует, возвращает нулевые счётчики для проверки очереди end-to-end."""

    def sync_gindex_provider(self, ctx: TaskContext, provider_id: Any) -> dict[str, Any]:
        return {"movies_count": 0, "series_count": 0, "episodes_count": 0}

    def scrape_gindex_movies(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]:
        return {"path": path, "movies": 0}

    def scrape_gindex_series(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]:
        return {"path": path, "series": 0}

    def scrape_gindex_animes(self, ctx: TaskContext, provider_id: Any, path: str) -> dict[str, Any]:
        return {"path": path, "animes": 0}

    def sync_iptv_categories(self, ctx: TaskContext, provider_id: Any) -> int:
        return 0

    def sync_iptv_live(self, ctx: TaskContext, provider_id: Any) -> int:
        return 0

    def sync_iptv_movies(self, ctx: TaskContext, provider_id: Any) -> int:
        return 0

    def sync_iptv_series(self, ctx: TaskContext, provider_id: Any) -> int:
        return 0

    def mark_sync_status(self, provider_id: Any, status: str) -> None:
        log.info(
            "mock_sync_status", extra={"payload": {"provider_id": provider_id, "status": status}}
        )
