from __future__ import annotations

import threading

from fakes import RecordingCollaborators

from streamix_sync.common import metrics
from streamix_sync.common.config import get_settings
from streamix_sync.queue.supervisor import SyncSupervisor, build_supervisor


class _FakeComponent:
    def __init__(self, name: str, fail_start: bool = False) -> None:
        self.name = name
        self.alive = False
        self.fail_start = fail_start
        self.stopped = False

    def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("broker unreachable")
        self.alive = True

    def stop(self, timeout=None) -> None:
        self.stopped = True
        self.alive = False

    def is_alive(self) -> bool:
        return self.alive

    def is_drained(self) -> bool:
        return not self.alive

    def health(self):
        return {"alive": self.alive, "last_error": None}


def _supervisor(created: list[_FakeComponent], **kw) -> SyncSupervisor:
    def factory() -> _FakeComponent:
        comp = _FakeComponent("pipeline:test", **kw)
        created.append(comp)
        return comp

    return SyncSupervisor(
        {"pipeline:test": factory},
        check_interval_sec=60,
        backoff_base_sec=2,
        backoff_max_sec=60,
    )


def test_crashed_component_is_restarted_after_backoff() -> None:
    created: list[_FakeComponent] = []
    sup = _supervisor(created)
    sup.start()
    try:
        assert sup.is_alive() is True
        before = metrics.SUPERVISOR_RESTARTS_TOTAL.labels(component="pipeline:test")._value.get()

        created[0].alive = False  # упал
        assert sup.check_once(now=100.0) == []
        assert sup.health()["status"] == "degraded"
        assert created[0].stopped is True

        # backoff (2 сек, без jitter) ещё не истёк
        assert sup.check_once(now=100.5) == []
        assert sup.check_once(now=103.0) == ["pipeline:test"]

        assert len(created) == 2
        assert sup.is_alive() is True
        assert sup.health()["components"]["pipeline:test"]["restarts"] == 1
        after = metrics.SUPERVISOR_RESTARTS_TOTAL.labels(component="pipeline:test")._value.get()
        assert after == before + 1
    finally:
        sup.stop(timeout=1)


def test_failed_start_does_not_break_supervisor() -> None:
    created: list[_FakeComponent] = []
    sup = _supervisor(created, fail_start=True)
    sup.start()
    try:
        health = sup.health()
        assert health["status"] == "degraded"
        assert "broker unreachable" in health["components"]["pipeline:test"]["last_error"]
    finally:
        sup.stop(timeout=1)


def test_build_supervisor_components_follow_mode(monkeypatch, job_store) -> None:
    s = get_settings()
    collab = RecordingCollaborators()

    monkeypatch.setattr(s, "queue_broker_enabled", False)
    sup = build_supervisor(collab, job_store=job_store)
    assert list(sup._slots) == ["jobs"]

    monkeypatch.setattr(s, "queue_broker_enabled", True)
    monkeypatch.setattr(s, "queue_priorities", "high,low")
    monkeypatch.setattr(s, "queue_prefix", "streamix.sync")
    sup = build_supervisor(collab, job_store=job_store)
    assert list(sup._slots) == [
        "pipeline:streamix.sync.high",
        "pipeline:streamix.sync.low",
        "jobs",
    ]


class _LingeringComponent(_FakeComponent):
    """Один слот упал, второй ещё внутри handler'а."""

    def __init__(self, name: str, release: threading.Event) -> None:
        super().__init__(name)
        self.busy = threading.Thread(target=release.wait, daemon=True)

    def start(self) -> None:
        super().start()
        self.busy.start()

    def is_drained(self) -> bool:
        return not self.busy.is_alive()


def test_restart_waits_until_crashed_component_threads_exit() -> None:
    release = threading.Event()
    created: list[_LingeringComponent] = []

    def factory() -> _LingeringComponent:
        comp = _LingeringComponent("pipeline:test", release)
        created.append(comp)
        return comp

    sup = SyncSupervisor(
        {"pipeline:test": factory},
        check_interval_sec=60,
        backoff_base_sec=2,
        backoff_max_sec=60,
    )
    sup.start()
    try:
        created[0].alive = False
        assert sup.check_once(now=100.0) == []

        # backoff истёк, но старый слот ещё работает
        assert sup.check_once(now=110.0) == []
        assert len(created) == 1
        assert sup.health()["components"]["pipeline:test"]["draining"] is True

        release.set()
        created[0].busy.join(1)
        assert sup.check_once(now=111.0) == ["pipeline:test"]
        assert len(created) == 2
        assert sup.health()["components"]["pipeline:test"]["restarts"] == 1
    finally:
        release.set()
        sup.stop(timeout=1)
