"""
Доменные перечисления (enum).

Используются во всей системе:
- типы задач синхронизации (закрытое множество)
- приоритеты очередей
- состояния задач fallback-очереди
- исход обработки сообщения брокера
"""

from __future__ import annotations

import enum


class TaskType(str, enum.Enum):
    """
    Тип задачи синхронизации (тег конверта).
    """

    gindex_full_sync = "gindex_full_sync"
    gindex_movies = "gindex_movies"
    gindex_series = "gindex_series"
    gindex_animes = "gindex_animes"
    iptv_categories = "iptv_categories"
    iptv_live = "iptv_live"
    iptv_movies = "iptv_movies"
    iptv_series = "iptv_series"

    @property
    def requires_path(self) -> bool:
        return self in FOLDER_TASK_TYPES

    @classmethod
    def parse(cls, value: object) -> TaskType | None:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


FOLDER_TASK_TYPES = frozenset(
    {TaskType.gindex_movies, TaskType.gindex_series, TaskType.gindex_animes}
)


class Priority(str, enum.Enum):
    """
    Приоритет постановки (определяет очередь).
    """

    high = "high"
    normal = "normal"
    low = "low"


class JobState(str, enum.Enum):
    """
    Состояние задачи в fallback-очереди (БД).
    """

    available = "available"
    executing = "executing"
    retryable = "retryable"
    completed = "completed"
    discarded = "discarded"


class Disposition(str, enum.Enum):
    """
    Чем закончилась обработка доставленного сообщения.
    """

    acked = "acked"
    requeued = "requeued"
    dead_lettered = "dead_lettered"
    # брокер не принял ack/requeue: сообщение осталось pending, его заберёт XAUTOCLAIM
    pending = "pending"
