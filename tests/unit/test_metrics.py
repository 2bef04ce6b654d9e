from __future__ import annotations

from fakes import FakeRedis

from streamix_sync.common import metrics
from streamix_sync.common.config import get_settings
from streamix_sync.queue.streams import ensure_group


def test_refresh_queue_metrics_sets_depths(monkeypatch) -> None:
    r = FakeRedis()
    monkeypatch.setattr(get_settings(), "queue_prefix", "streamix.sync")
    monkeypatch.setattr("streamix_sync.queue.redis.redis_client", lambda: r)
    ensure_group(r, "streamix.sync.high", "streamix.sync.workers")
    for _ in range(3):
        r.xadd("streamix.sync.high", {"body": "{}"})
    r.xreadgroup("streamix.sync.workers", "c-1", {"streamix.sync.high": ">"}, count=1)
    r.xadd("streamix.sync.dead", {"body": "{}"})

    metrics.refresh_queue_metrics()

    assert metrics.QUEUE_DEPTH.labels(queue="streamix.sync.high")._value.get() == 3
    assert (
        metrics.QUEUE_PENDING.labels(queue="streamix.sync.high", group="streamix.sync.workers")
        ._value.get()
        == 1
    )
    assert metrics.DLQ_DEPTH._value.get() == 1


def test_refresh_job_metrics_sets_gauges(monkeypatch) -> None:
    class _Store:
        def count_by_state(self):
            return {"available": 4, "discarded": 1}

    monkeypatch.setattr("streamix_sync.storage.jobs.JobStore", _Store)

    metrics.refresh_job_metrics()

    assert metrics.JOBS_BY_STATE.labels(state="available")._value.get() == 4
    assert metrics.JOBS_BY_STATE.labels(state="discarded")._value.get() == 1


def test_record_submitted_counts_by_backend() -> None:
    c = metrics.SYNC_TASKS_SUBMITTED_TOTAL.labels(backend="direct", type="iptv_live", result="failed")
    before = c._value.get()
    metrics.record_submitted(backend="direct", task_type="iptv_live", ok=False)
    assert c._value.get() == before + 1
