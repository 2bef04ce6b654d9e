"""
Разбор DLQ (streamix.sync.dead).

Назначение:
- просмотр сообщений, исчерпавших повторную доставку или не прошедших decode
- ручной replay: сообщение возвращается в исходную очередь как новая задача (attempt=1)

Правила:
- replay = XADD в source_queue + XDEL из DLQ в одном MULTI
- битые (decode_error) сообщения не переигрываются без --force
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import redis

from streamix_sync.common.errors import ErrCode
from streamix_sync.common.logging import get_queue_logger
from streamix_sync.common.time import utc_now_iso
from streamix_sync.queue.publisher import F_ATTEMPT, F_BODY, F_ENQUEUED_AT, F_TASK_ID, F_TYPE
from streamix_sync.queue.redis import redis_client
from streamix_sync.queue.streams import dead_letter_name

log = get_queue_logger()


@dataclass
class DeadLetter:
    message_id: str
    fields: dict[str, Any]

    @property
    def source_queue(self) -> str | None:
        return self.fields.get("source_queue") or None

    @property
    def reason(self) -> str:
        return str(self.fields.get("reason") or "")

    @property
    def replayable(self) -> bool:
        return bool(self.source_queue) and not self.reason.startswith(ErrCode.DECODE_ERROR)


@dataclass
class ReplayReport:
    replayed: list[str]
    skipped: list[str]


def list_dead_letters(
    *,
    count: int = 100,
    client_factory: Callable[[], redis.Redis] = redis_client,
    dead_letter_queue: str | None = None,
) -> list[DeadLetter]:
    entries = client_factory().xrange(dead_letter_queue or dead_letter_name(), "-", "+", count=count)
    return [DeadLetter(message_id=mid, fields=dict(fields or {})) for mid, fields in entries]


def replay_dead_letters(
    *,
    ids: Iterable[str] | None = None,
    limit: int = 100,
    force: bool = False,
    dry_run: bool = False,
    client_factory: Callable[[], redis.Redis] = redis_client,
    dead_letter_queue: str | None = None,
) -> ReplayReport:
    dlq = dead_letter_queue or dead_letter_name()
    wanted = set(ids or [])
    letters = list_dead_letters(
        count=limit if not wanted else max(limit, len(wanted)),
        client_factory=client_factory,
        dead_letter_queue=dlq,
    )
    if wanted:
        letters = [d for d in letters if d.message_id in wanted]

    report = ReplayReport(replayed=[], skipped=[])
    r = client_factory()
    for letter in letters:
        if not letter.source_queue or not (letter.replayable or force):
            report.skipped.append(letter.message_id)
            continue
        if dry_run:
            report.replayed.append(letter.message_id)
            continue

        entry = {
            F_BODY: letter.fields.get(F_BODY, ""),
            F_TYPE: letter.fields.get(F_TYPE, ""),
            F_ATTEMPT: "1",
            F_TASK_ID: letter.fields.get(F_TASK_ID, ""),
            F_ENQUEUED_AT: utc_now_iso(),
        }
        pipe = r.pipeline(transaction=True)
        pipe.xadd(letter.source_queue, entry)
        pipe.xdel(dlq, letter.message_id)
        pipe.execute()
        report.replayed.append(letter.message_id)
        log.info(
            "dead_letter_replayed",
            extra={
                "payload": {
                    "message_id": letter.message_id,
                    "queue": letter.source_queue,
                    "type": letter.fields.get(F_TYPE),
                    "reason": letter.reason,
                }
            },
        )
    return report
