"""
Retry/backoff утилиты.

Назначение:
- экспоненциальный backoff для fallback-задач в БД
- backoff перезапуска упавших компонентов супервизором
- (брокер) правило "requeue once": сколько доставок допустимо

Важно:
- это синхронная реализация (подходит для наших потоковых воркеров)
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_sec: float = 15.0
    max_delay_sec: float = 3600.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """
        Задержка перед следующей попыткой после неудачной попытки номер `attempt` (1..N).
        """
        return backoff_delay(
            attempt,
            base_sec=self.base_delay_sec,
            max_sec=self.max_delay_sec,
            jitter=self.jitter,
        )

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


def backoff_delay(
    attempt: int,
    *,
    base_sec: float,
    max_sec: float,
    jitter: float = 0.0,
) -> float:
    """
    base * 2^(attempt-1), не больше max; jitter — доля случайного разброса (0.1 = ±10%).
    """
    n = max(1, int(attempt))
    delay = min(max_sec, base_sec * (2 ** (n - 1)))
    if jitter > 0 and delay > 0:
        delay += delay * random.uniform(-jitter, jitter)
    return max(0.0, min(max_sec, delay))


def should_requeue(attempt: int, max_deliveries: int) -> bool:
    """
    Requeue-once: attempt — номер доставки, которая только что провалилась.
    При max_deliveries=2 первая неудача -> повтор, вторая -> DLQ.
    """
    return attempt < max(1, max_deliveries)
