"""
Топология очередей брокера.

- одна durable stream-очередь на приоритет: <prefix>.<priority>
  (streamix.sync.high / streamix.sync.normal / streamix.sync.low)
- общая DLQ: <prefix>.dead
- одна consumer group на все очереди: <prefix>.workers
"""

from __future__ import annotations

import redis

from streamix_sync.common.config import get_settings
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.utils import parse_csv
from streamix_sync.domain.enums import Priority

log = get_project_logger()

DEFAULT_PREFIX = "streamix.sync"


def _prefix(prefix: str | None = None) -> str:
    return (prefix or get_settings().queue_prefix or DEFAULT_PREFIX).strip()


def queue_name(priority: Priority | str = Priority.normal, *, prefix: str | None = None) -> str:
    return f"{_prefix(prefix)}.{Priority(priority).value}"


def dead_letter_name(*, prefix: str | None = None) -> str:
    return f"{_prefix(prefix)}.dead"


def group_name(*, prefix: str | None = None) -> str:
    return f"{_prefix(prefix)}.workers"


def all_queue_names(*, prefix: str | None = None) -> list[str]:
    return [queue_name(p, prefix=prefix) for p in Priority]


def configured_priorities() -> list[Priority]:
    """Приоритеты, которые потребляет этот процесс (QUEUE_PRIORITIES)."""
    out: list[Priority] = []
    for raw in parse_csv(get_settings().queue_priorities):
        p = Priority(raw.lower())
        if p not in out:
            out.append(p)
    return out or list(Priority)


def ensure_group(r: redis.Redis, stream: str, group: str) -> None:
    """
    XGROUP CREATE ... MKSTREAM; BUSYGROUP (группа уже есть) не ошибка.
    """
    try:
        r.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
        log.info("queue_group_created", extra={"payload": {"queue": stream, "group": group}})
    except redis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise
