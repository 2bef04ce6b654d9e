from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from fakes import FakeRedis

from streamix_sync.common.config import get_settings
from streamix_sync.domain.enums import JobState, Priority, TaskType
from streamix_sync.queue import dispatcher
from streamix_sync.queue.dispatcher import (
    BrokerSubmitter,
    DirectSubmitter,
    SyncQueue,
    plan_provider_sync,
)
from streamix_sync.queue.publisher import F_BODY, Publisher


@pytest.fixture()
def broker_queue(fake_redis: FakeRedis) -> SyncQueue:
    return SyncQueue(BrokerSubmitter(Publisher(lambda: fake_redis, prefix="streamix.sync")))


@pytest.fixture()
def direct_queue(job_store) -> SyncQueue:
    return SyncQueue(DirectSubmitter(job_store))


def _bodies(r: FakeRedis, queue: str) -> list[dict]:
    return [json.loads(fields[F_BODY]) for _, fields in r.entries(queue)]


def _provider(**drives):
    return SimpleNamespace(id=7, gindex_drives=drives)


def test_fan_out_movies_and_series_without_animes(broker_queue, fake_redis) -> None:
    provider = _provider(
        movies_path="/1:/Filmes/",
        series_paths=["/1:/Séries/A/", "/1:/Séries/B/"],
        animes_path=None,
    )

    res = broker_queue.enqueue_provider_sync(provider)

    assert res.ok is True
    assert res.backend == "broker"
    assert res.submitted == 3
    assert _bodies(fake_redis, "streamix.sync.normal") == [
        {"type": "gindex_movies", "provider_id": 7, "path": "/1:/Filmes/"}
    ]
    assert _bodies(fake_redis, "streamix.sync.low") == [
        {"type": "gindex_series", "provider_id": 7, "path": "/1:/Séries/A/"},
        {"type": "gindex_series", "provider_id": 7, "path": "/1:/Séries/B/"},
    ]
    all_types = [b["type"] for q in ("high", "normal", "low") for b in _bodies(fake_redis, f"streamix.sync.{q}")]
    assert "gindex_animes" not in all_types


def test_fan_out_includes_animes_at_low_priority() -> None:
    plan = plan_provider_sync(
        {"id": 3, "gindex_drives": {"animes_path": "/1:/Animes/", "series_paths": []}}
    )
    assert [(i.envelope.type, i.priority) for i in plan] == [(TaskType.gindex_animes, Priority.low)]


@pytest.mark.parametrize("drives", [None, {}, {"movies_path": None, "series_paths": []}])
def test_provider_without_paths_gets_single_full_sync(drives) -> None:
    plan = plan_provider_sync(SimpleNamespace(id=9, gindex_drives=drives))
    assert len(plan) == 1
    assert plan[0].envelope.to_dict() == {"type": "gindex_full_sync", "provider_id": 9}


def test_direct_mode_inserts_one_full_sync_job(direct_queue, job_store, fake_redis) -> None:
    provider = _provider(movies_path="/1:/Filmes/", series_paths=["/1:/Séries/A/"])

    res = direct_queue.enqueue_provider_sync(provider)

    assert res.ok is True
    assert res.backend == "direct"
    assert res.submitted == 1
    job = job_store.get(int(res.ids[0]))
    assert job.task_type == "gindex_full_sync"
    assert job.args == {"provider_id": 7}
    assert job.state == JobState.available
    assert fake_redis.streams == {}


def test_enqueue_sync_rejects_invalid_before_io(broker_queue, fake_redis) -> None:
    for task_type, payload in [
        ("", {"provider_id": 1}),
        ("bogus", {"provider_id": 1}),
        ("iptv_live", {}),
        ("gindex_series", {"provider_id": 1}),
    ]:
        res = broker_queue.enqueue_sync(task_type, payload)
        assert res.ok is False
        assert res.reason

    res = broker_queue.enqueue_sync("iptv_live", {"provider_id": 1}, priority="urgent")
    assert res.ok is False
    assert fake_redis.streams == {}


def test_enqueue_sync_publishes_to_requested_priority(broker_queue, fake_redis) -> None:
    res = broker_queue.enqueue_sync("iptv_live", {"provider_id": 42}, Priority.high)
    assert res.ok is True
    assert _bodies(fake_redis, "streamix.sync.high") == [{"type": "iptv_live", "provider_id": 42}]


def test_broker_failure_is_returned_not_retried(broker_queue, fake_redis) -> None:
    fake_redis.fail_writes = True
    res = broker_queue.enqueue_sync("iptv_live", {"provider_id": 42})
    assert res.ok is False
    assert res.backend == "broker"
    assert res.reason.startswith("broker_error")


def test_enqueue_folder_tasks_one_per_folder(broker_queue, fake_redis) -> None:
    res = broker_queue.enqueue_folder_tasks(
        7, ["/1:/Filmes/Ação/", "", "/1:/Filmes/Drama/"], TaskType.gindex_movies, Priority.high
    )
    assert res.ok is True
    assert res.submitted == 2
    assert [b["path"] for b in _bodies(fake_redis, "streamix.sync.high")] == [
        "/1:/Filmes/Ação/",
        "/1:/Filmes/Drama/",
    ]

    bad = broker_queue.enqueue_folder_tasks(7, ["/x/"], TaskType.iptv_live)
    assert bad.ok is False


def test_mode_is_selected_from_settings(monkeypatch) -> None:
    s = get_settings()
    monkeypatch.setattr(s, "queue_broker_enabled", True)
    assert isinstance(dispatcher.reset_sync_queue().submitter, BrokerSubmitter)
    assert dispatcher.get_sync_queue().backend == "broker"

    monkeypatch.setattr(s, "queue_broker_enabled", False)
    # до reset фасад не меняется
    assert dispatcher.get_sync_queue().backend == "broker"
    assert isinstance(dispatcher.reset_sync_queue().submitter, DirectSubmitter)
    assert dispatcher.get_sync_queue().backend == "direct"


def test_mode_routes_every_call_to_one_backend(monkeypatch) -> None:
    calls: list[str] = []

    class _Publisher:
        def publish(self, envelope, priority):
            calls.append(f"publish:{envelope.type.value}")
            return SimpleNamespace(ok=True, task_id="t-1", reason=None)

    class _JobStore:
        def enqueue_job(self, task_type, payload):
            calls.append(f"job:{task_type.value}")
            return SimpleNamespace(ok=True, job_id=1, duplicate=False, reason=None)

    monkeypatch.setattr(dispatcher, "Publisher", _Publisher)
    monkeypatch.setattr(dispatcher, "JobStore", _JobStore)
    monkeypatch.setattr(dispatcher, "_sync_queue", None)
    s = get_settings()

    monkeypatch.setattr(s, "queue_broker_enabled", False)
    dispatcher.reset_sync_queue()
    dispatcher.enqueue_sync("iptv_live", {"provider_id": 42})
    assert calls == ["job:iptv_live"]

    calls.clear()
    monkeypatch.setattr(s, "queue_broker_enabled", True)
    dispatcher.reset_sync_queue()
    dispatcher.enqueue_sync("iptv_live", {"provider_id": 42}, "normal")
    assert calls == ["publish:iptv_live"]


def test_enqueue_sync_default_priority_lands_on_normal_queue(broker_queue, fake_redis) -> None:
    res = broker_queue.enqueue_sync("iptv_live", {"provider_id": 42})

    assert res.ok is True
    assert res.submitted == 1
    (_, fields), = fake_redis.entries("streamix.sync.normal")
    assert fields[F_BODY] == '{"type":"iptv_live","provider_id":42}'
    assert fake_redis.xlen("streamix.sync.high") == 0
    assert fake_redis.xlen("streamix.sync.low") == 0


def test_fan_out_publishes_one_batch_per_priority(fake_redis) -> None:
    batches: list[tuple[str, int]] = []

    class _CountingPublisher(Publisher):
        def publish_batch(self, envelopes, priority=Priority.normal):
            envelopes = list(envelopes)
            batches.append((Priority(priority).value, len(envelopes)))
            return super().publish_batch(envelopes, priority)

    queue = SyncQueue(BrokerSubmitter(_CountingPublisher(lambda: fake_redis, prefix="streamix.sync")))
    provider = _provider(
        movies_path="/1:/Filmes/",
        series_paths=["/1:/Séries/A/", "/1:/Séries/B/"],
        animes_path="/1:/Animes/",
    )

    res = queue.enqueue_provider_sync(provider)

    assert res.ok is True
    assert res.submitted == 4
    assert len(res.ids) == 4
    assert batches == [("normal", 1), ("low", 3)]
    assert [b["type"] for b in _bodies(fake_redis, "streamix.sync.low")] == [
        "gindex_series",
        "gindex_series",
        "gindex_animes",
    ]
