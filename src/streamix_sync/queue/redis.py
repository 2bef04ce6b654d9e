"""
Redis-клиент брокера (Redis Streams).

Назначение:
- единая точка подключения к брокеру
- используется publisher'ом, consumer pipeline и метриками
- URL передаётся в клиентскую библиотеку как есть (QUEUE_BROKER_URL)
"""

from __future__ import annotations

import threading

import redis

from streamix_sync.common.config import get_settings

_client: redis.Redis | None = None
_lock = threading.Lock()


def redis_client() -> redis.Redis:
    """
    Singleton Redis client (внутри пул соединений, потокобезопасен).
    """
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                _client = redis.Redis.from_url(
                    get_settings().queue_broker_url,
                    decode_responses=True,
                    health_check_interval=30,
                )
    return _client
