from __future__ import annotations

import threading
import time

import pytest
from fakes import RecordingCollaborators

from streamix_sync.common.errors import ErrCode, ValidationError
from streamix_sync.domain.enums import TaskType
from streamix_sync.queue.handlers import build_handler_table, dispatch, run_task

_EXPECTED_METHOD = {
    "gindex_full_sync": "sync_gindex_provider",
    "gindex_movies": "scrape_gindex_movies",
    "gindex_series": "scrape_gindex_series",
    "gindex_animes": "scrape_gindex_animes",
    "iptv_categories": "sync_iptv_categories",
    "iptv_live": "sync_iptv_live",
    "iptv_movies": "sync_iptv_movies",
    "iptv_series": "sync_iptv_series",
}


def test_handler_table_covers_every_task_type(handlers) -> None:
    assert set(handlers) == set(TaskType)
    with pytest.raises(TypeError):
        handlers[TaskType.iptv_live] = lambda ctx, fields: None  # type: ignore[index]


@pytest.mark.parametrize("task_type", [t.value for t in TaskType])
def test_dispatch_calls_exactly_one_handler(task_type: str) -> None:
    collab = RecordingCollaborators()
    task = {"type": task_type, "provider_id": 5}
    if TaskType(task_type).requires_path:
        task["path"] = "/1:/Filmes/"

    res = dispatch(task, build_handler_table(collab))

    assert res.ok is True
    assert collab.methods_called() == [_EXPECTED_METHOD[task_type]]


def test_iptv_counts_are_wrapped_into_summary(collaborators, handlers) -> None:
    assert dispatch({"type": "iptv_live", "provider_id": 42}, handlers).summary == {
        "live_channels": 10
    }
    assert dispatch({"type": "iptv_categories", "provider_id": 42}, handlers).summary == {
        "categories": 4
    }
    assert collaborators.calls[0] == ("sync_iptv_live", (42,))


def test_folder_task_passes_path(collaborators, handlers) -> None:
    res = dispatch({"type": "gindex_movies", "provider_id": 7, "path": "/1:/Filmes/"}, handlers)
    assert res.summary == {"path": "/1:/Filmes/", "movies": 3}
    assert collaborators.calls == [("scrape_gindex_movies", (7, "/1:/Filmes/"))]


def test_unknown_type_does_not_call_collaborators(collaborators, handlers) -> None:
    res = dispatch({"type": "bogus", "provider_id": 1}, handlers)
    assert res.ok is False
    assert res.reason == ErrCode.UNKNOWN_TASK_TYPE
    assert collaborators.calls == []


@pytest.mark.parametrize(
    "task",
    [
        {"provider_id": 1},
        {"type": "iptv_live"},
        {"type": "gindex_series", "provider_id": 1},
    ],
)
def test_incomplete_task_is_invalid(collaborators, handlers, task) -> None:
    res = dispatch(task, handlers)
    assert res.ok is False
    assert res.reason == ErrCode.INVALID_TASK
    assert collaborators.calls == []


def test_collaborator_exception_becomes_failure(handlers, collaborators) -> None:
    collaborators.failures["sync_iptv_series"] = 1
    res = dispatch({"type": "iptv_series", "provider_id": 9}, handlers)
    assert res.ok is False
    assert res.reason == "RuntimeError: sync_iptv_series failed"


def test_app_error_keeps_code(collaborators) -> None:
    class _Strict(RecordingCollaborators):
        def sync_iptv_movies(self, ctx, provider_id):
            raise ValidationError("provider is not xtream")

    res = dispatch({"type": "iptv_movies", "provider_id": 1}, build_handler_table(_Strict()))
    assert res.reason == "validation: provider is not xtream"


def test_run_task_times_out_and_cancels() -> None:
    seen_cancel = threading.Event()

    class _Slow(RecordingCollaborators):
        def sync_iptv_live(self, ctx, provider_id):
            # кооперативный handler: ждёт отмены
            if ctx.cancel_event.wait(5):
                seen_cancel.set()
                ctx.raise_if_cancelled()
            return 1

    res = run_task(
        {"type": "iptv_live", "provider_id": 1},
        build_handler_table(_Slow()),
        task_id="t-1",
        timeout_sec=0.05,
        cancel_grace_sec=1.0,
    )

    assert res.ok is False
    assert res.reason == ErrCode.TIMEOUT
    assert seen_cancel.wait(1.0)


def test_run_task_without_timeout_runs_inline(handlers) -> None:
    res = run_task({"type": "iptv_movies", "provider_id": 1}, handlers, timeout_sec=None)
    assert res.ok is True
    assert res.summary == {"movies": 20}


def test_run_task_returns_only_after_stubborn_handler_exits() -> None:
    finished = threading.Event()

    class _Stubborn(RecordingCollaborators):
        def sync_iptv_live(self, ctx, provider_id):
            # отмену игнорирует
            time.sleep(0.3)
            finished.set()
            return 1

    res = run_task(
        {"type": "iptv_live", "provider_id": 1},
        build_handler_table(_Stubborn()),
        timeout_sec=0.05,
        cancel_grace_sec=0.01,
    )

    assert res.reason == ErrCode.TIMEOUT
    assert finished.is_set()
