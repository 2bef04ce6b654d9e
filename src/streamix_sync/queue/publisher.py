"""
Publisher задач синхронизации в брокер (Redis Streams).

Назначение:
- сериализация конверта в JSON
- выбор очереди по приоритету (streamix.sync.<priority>)
- XADD: возвращаемся, как только брокер принял сообщение (fire-and-forget)

Важно:
- ошибки соединения не ретраим и не уходим в fallback: вызывающий получает ok=False
- тело сообщения = ровно конверт; task_id / attempt / enqueued_at лежат отдельными полями записи
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

import redis

from streamix_sync.common.errors import ErrCode
from streamix_sync.common.ids import new_task_id
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.time import utc_now_iso
from streamix_sync.contracts.envelope import TaskEnvelope
from streamix_sync.domain.enums import Priority
from streamix_sync.queue.redis import redis_client
from streamix_sync.queue.streams import queue_name

log = get_project_logger()

# Поля stream-записи
F_BODY = "body"
F_TYPE = "type"
F_ATTEMPT = "attempt"
F_TASK_ID = "task_id"
F_ENQUEUED_AT = "enqueued_at"
F_LAST_ERROR = "last_error"


@dataclass
class PublishResult:
    ok: bool
    queue: str
    task_id: str | None = None
    message_id: str | None = None
    reason: str | None = None


@dataclass
class BatchResult:
    success: int
    failed: int
    results: list[PublishResult]

    @property
    def ok(self) -> bool:
        return self.failed == 0


class Publisher:
    def __init__(
        self,
        client_factory: Callable[[], redis.Redis] = redis_client,
        *,
        prefix: str | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._prefix = prefix

    def queue_for(self, priority: Priority | str) -> str:
        return queue_name(priority, prefix=self._prefix)

    def publish(
        self, envelope: TaskEnvelope, priority: Priority | str = Priority.normal
    ) -> PublishResult:
        queue = self.queue_for(priority)
        task_id = new_task_id(envelope.type.value)
        entry = {
            F_BODY: envelope.to_json(),
            F_TYPE: envelope.type.value,
            F_ATTEMPT: "1",
            F_TASK_ID: task_id,
            F_ENQUEUED_AT: utc_now_iso(),
        }
        try:
            message_id = self._client_factory().xadd(queue, entry)
        except redis.RedisError as e:
            log.error(
                "publish_failed",
                extra={
                    "payload": {
                        **envelope.log_context(),
                        "queue": queue,
                        "err": str(e)[:200],
                    }
                },
            )
            return PublishResult(
                ok=False, queue=queue, task_id=task_id, reason=f"{ErrCode.BROKER_ERROR}: {e}"
            )

        log.debug(
            "task_published",
            extra={"payload": {**envelope.log_context(), "queue": queue, "task_id": task_id}},
        )
        return PublishResult(ok=True, queue=queue, task_id=task_id, message_id=str(message_id))

    def publish_batch(
        self, envelopes: Iterable[TaskEnvelope], priority: Priority | str = Priority.normal
    ) -> BatchResult:
        results = [self.publish(env, priority) for env in envelopes]
        success = sum(1 for r in results if r.ok)
        failed = len(results) - success
        log.info(
            "batch_published",
            extra={
                "payload": {
                    "queue": self.queue_for(priority),
                    "success": success,
                    "failed": failed,
                }
            },
        )
        return BatchResult(success=success, failed=failed, results=results)
