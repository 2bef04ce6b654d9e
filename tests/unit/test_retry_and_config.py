from __future__ import annotations

import pytest

from streamix_sync.common.config import Settings
from streamix_sync.queue.retry import RetryPolicy, backoff_delay, should_requeue
from streamix_sync.queue.streams import configured_priorities, dead_letter_name, group_name, queue_name


def test_backoff_doubles_and_caps() -> None:
    delays = [backoff_delay(n, base_sec=15, max_sec=100) for n in range(1, 6)]
    assert delays == [15, 30, 60, 100, 100]


def test_backoff_jitter_stays_in_bounds() -> None:
    for _ in range(50):
        d = backoff_delay(2, base_sec=10, max_sec=1000, jitter=0.1)
        assert 18 <= d <= 22


def test_retry_policy_exhaustion() -> None:
    p = RetryPolicy(max_attempts=3, jitter=0)
    assert [p.exhausted(n) for n in (1, 2, 3)] == [False, False, True]
    assert p.delay_for(1) == 15


@pytest.mark.parametrize(
    "attempt,max_deliveries,expected",
    [(1, 2, True), (2, 2, False), (3, 2, False), (1, 1, False), (2, 3, True)],
)
def test_requeue_once_rule(attempt, max_deliveries, expected) -> None:
    assert should_requeue(attempt, max_deliveries) is expected


def test_queue_topology_names() -> None:
    assert queue_name("high", prefix="streamix.sync") == "streamix.sync.high"
    assert dead_letter_name(prefix="streamix.sync") == "streamix.sync.dead"
    assert group_name(prefix="streamix.sync") == "streamix.sync.workers"
    with pytest.raises(ValueError):
        queue_name("urgent", prefix="streamix.sync")


def test_configured_priorities_dedupes(monkeypatch) -> None:
    from streamix_sync.common.config import get_settings

    monkeypatch.setattr(get_settings(), "queue_priorities", "LOW, high,low")
    assert [p.value for p in configured_priorities()] == ["low", "high"]


def test_settings_defaults(monkeypatch) -> None:
    monkeypatch.delenv("QUEUE_BROKER_ENABLED", raising=False)
    s = Settings(_env_file=None)
    assert s.queue_broker_enabled is False
    assert s.queue_processor_concurrency == 5
    assert s.queue_max_deliveries == 2
    assert s.jobs_max_attempts == 3
    assert s.jobs_unique_period_sec == 300


def test_settings_read_env_and_file_override(monkeypatch, tmp_path) -> None:
    secret = tmp_path / "broker_url"
    secret.write_text("redis://secret-host:6379/1\n", encoding="utf-8")
    monkeypatch.setenv("QUEUE_BROKER_ENABLED", "true")
    monkeypatch.setenv("QUEUE_BROKER_URL_FILE", str(secret))

    s = Settings(_env_file=None)

    assert s.queue_broker_enabled is True
    assert s.queue_broker_url == "redis://secret-host:6379/1"
