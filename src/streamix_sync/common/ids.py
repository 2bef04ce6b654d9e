"""
Генерация идентификаторов.

Назначение:
- task_id для трассировки задачи между публикацией, доставкой и DLQ
- имена consumer'ов в consumer group
"""

from __future__ import annotations

import os
import secrets
import socket
from datetime import UTC, datetime


def new_task_id(prefix: str = "task") -> str:
    """
    Идентификатор задачи.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(6)
    return f"{prefix}_{ts}_{rnd}"


def new_consumer_name(queue: str, slot: int) -> str:
    """
    Имя consumer'а в группе: уникально для процесса и слота.
    Формат: <host>-<pid>-<queue>-<slot>
    """
    return f"{socket.gethostname()}-{os.getpid()}-{queue}-{slot}"
