from __future__ import annotations

from fakes import FakeRedis

from streamix_sync.queue.dead_letters import list_dead_letters, replay_dead_letters
from streamix_sync.queue.publisher import F_ATTEMPT, F_BODY

DLQ = "streamix.sync.dead"


def _dead(r: FakeRedis, reason: str, body: str = '{"type":"iptv_live","provider_id":1}') -> str:
    return r.xadd(
        DLQ,
        {
            F_BODY: body,
            "type": "iptv_live",
            F_ATTEMPT: "2",
            "task_id": "iptv_live_x",
            "source_queue": "streamix.sync.normal",
            "reason": reason,
        },
    )


def test_replay_moves_letters_back_to_source_queue(fake_redis: FakeRedis) -> None:
    ok_id = _dead(fake_redis, "RuntimeError: boom")
    bad_id = _dead(fake_redis, "decode_error", body="{oops")

    report = replay_dead_letters(client_factory=lambda: fake_redis, dead_letter_queue=DLQ)

    assert report.replayed == [ok_id]
    assert report.skipped == [bad_id]
    (_, fields), = fake_redis.entries("streamix.sync.normal")
    assert fields[F_BODY] == '{"type":"iptv_live","provider_id":1}'
    assert fields[F_ATTEMPT] == "1"
    assert [d.message_id for d in list_dead_letters(client_factory=lambda: fake_redis, dead_letter_queue=DLQ)] == [bad_id]


def test_replay_dry_run_and_id_filter(fake_redis: FakeRedis) -> None:
    first = _dead(fake_redis, "timeout")
    _dead(fake_redis, "timeout")

    report = replay_dead_letters(
        ids=[first], dry_run=True, client_factory=lambda: fake_redis, dead_letter_queue=DLQ
    )

    assert report.replayed == [first]
    assert fake_redis.xlen(DLQ) == 2
    assert fake_redis.xlen("streamix.sync.normal") == 0


def test_force_replays_decode_errors(fake_redis: FakeRedis) -> None:
    bad_id = _dead(fake_redis, "decode_error", body="{oops")
    report = replay_dead_letters(force=True, client_factory=lambda: fake_redis, dead_letter_queue=DLQ)
    assert report.replayed == [bad_id]
