"""
Consumer pipeline: обработка задач синхронизации из одной priority-очереди.

Алгоритм (на каждый слот-поток):
- XAUTOCLAIM зависших сообщений упавших consumer'ов (раз в claim_interval)
- XREADGROUP COUNT=1 из очереди (N слотов => не больше N неподтверждённых сообщений)
- decode JSON -> dispatch по таблице handler'ов -> ack / requeue once / DLQ

Состояния сообщения:
Delivered -> Decoding -> Dispatching -> {Acked | Requeued | DeadLettered}

Правила:
- битый JSON: сразу в DLQ, повторная доставка дала бы те же байты
- ошибка handler'а / неизвестный тип: одна повторная доставка, затем DLQ
- повтор = новая запись (attempt+1) + XACK старой, атомарно в MULTI
- номер попытки учитывает счётчик доставок Redis (сообщения упавших consumer'ов)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import redis

from streamix_sync.common.config import get_settings
from streamix_sync.common.errors import DecodeError, ErrCode
from streamix_sync.common.ids import new_consumer_name
from streamix_sync.common.logging import get_queue_logger
from streamix_sync.common.metrics import record_dead_lettered, record_processed, track_task
from streamix_sync.common.time import utc_now_iso
from streamix_sync.common.utils import snippet
from streamix_sync.contracts.envelope import decode_task
from streamix_sync.domain.enums import Disposition
from streamix_sync.queue.handlers import HandlerResult, HandlerTable, run_task
from streamix_sync.queue.publisher import (
    F_ATTEMPT,
    F_BODY,
    F_ENQUEUED_AT,
    F_LAST_ERROR,
    F_TASK_ID,
    F_TYPE,
)
from streamix_sync.queue.redis import redis_client
from streamix_sync.queue.retry import should_requeue
from streamix_sync.queue.streams import dead_letter_name, ensure_group, group_name

log = get_queue_logger()

PermanentFailureHook = Callable[[dict[str, Any], str], None]


@dataclass
class Delivery:
    message_id: str
    fields: dict[str, Any] | None
    # счётчик доставок Redis: 1 для нового сообщения, >1 для забранного через XAUTOCLAIM
    deliveries: int = 1


@dataclass
class PipelineStats:
    acked: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    pending: int = 0
    inflight: int = 0
    last_error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def bump(self, disposition: Disposition) -> None:
        with self._lock:
            name = disposition.value
            setattr(self, name, getattr(self, name) + 1)

    def enter(self) -> None:
        with self._lock:
            self.inflight += 1

    def leave(self) -> None:
        with self._lock:
            self.inflight -= 1


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class ConsumerPipeline:
    def __init__(
        self,
        queue: str,
        handlers: HandlerTable,
        *,
        client_factory: Callable[[], redis.Redis] = redis_client,
        group: str | None = None,
        dead_letter_queue: str | None = None,
        concurrency: int | None = None,
        max_deliveries: int | None = None,
        task_timeout_sec: float | None = None,
        cancel_grace_sec: float | None = None,
        block_ms: int | None = None,
        claim_idle_ms: int | None = None,
        claim_interval_sec: float | None = None,
        on_permanent_failure: PermanentFailureHook | None = None,
    ) -> None:
        s = get_settings()
        self.queue = queue
        self.handlers = handlers
        self._client_factory = client_factory
        self.group = group or group_name()
        self.dead_letter_queue = dead_letter_queue or dead_letter_name()
        self.concurrency = max(1, concurrency or s.queue_processor_concurrency)
        self.max_deliveries = max(1, max_deliveries or s.queue_max_deliveries)
        self.task_timeout_sec = (
            s.queue_task_timeout_sec if task_timeout_sec is None else task_timeout_sec
        )
        self.cancel_grace_sec = (
            s.queue_cancel_grace_sec if cancel_grace_sec is None else cancel_grace_sec
        )
        self.block_ms = s.queue_block_ms if block_ms is None else block_ms
        self.claim_idle_ms = s.queue_claim_idle_ms if claim_idle_ms is None else claim_idle_ms
        self.claim_interval_sec = (
            s.queue_claim_interval_sec if claim_interval_sec is None else claim_interval_sec
        )
        self.on_permanent_failure = on_permanent_failure

        self.stats = PipelineStats()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def name(self) -> str:
        return f"pipeline:{self.queue}"

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================
    def start(self) -> None:
        ensure_group(self._client_factory(), self.queue, self.group)
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(slot,),
                name=f"{self.queue}#{slot}",
                daemon=True,
            )
            for slot in range(self.concurrency)
        ]
        for t in self._threads:
            t.start()
        log.info(
            "consumer_pipeline_started",
            extra={
                "payload": {
                    "queue": self.queue,
                    "group": self.group,
                    "concurrency": self.concurrency,
                    "max_deliveries": self.max_deliveries,
                }
            },
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        log.info("consumer_pipeline_stopped", extra={"payload": {"queue": self.queue}})

    def is_alive(self) -> bool:
        return bool(self._threads) and all(t.is_alive() for t in self._threads)

    def is_drained(self) -> bool:
        """Все потоки (включая зависшие в handler'е) завершились."""
        return not any(t.is_alive() for t in self._threads)

    def health(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "alive": self.is_alive(),
            "workers_alive": sum(1 for t in self._threads if t.is_alive()),
            "concurrency": self.concurrency,
            "inflight": self.stats.inflight,
            "acked": self.stats.acked,
            "requeued": self.stats.requeued,
            "dead_lettered": self.stats.dead_lettered,
            "last_error": self.stats.last_error,
        }

    def _worker_loop(self, slot: int) -> None:
        consumer = new_consumer_name(self.queue, slot)
        # слоты не должны claim'ить одновременно
        next_claim = time.monotonic() + (self.claim_interval_sec * slot / self.concurrency)

        while not self._stop.is_set():
            try:
                do_claim = time.monotonic() >= next_claim
                if do_claim:
                    next_claim = time.monotonic() + self.claim_interval_sec
                self.poll_once(consumer, claim=do_claim)
            except redis.RedisError as e:
                self.stats.last_error = str(e)[:200]
                log.error(
                    "consumer_broker_error",
                    extra={"payload": {"queue": self.queue, "consumer": consumer, "err": str(e)[:200]}},
                )
                self._stop.wait(1.0)

    # =========================================================================
    # ПОЛУЧЕНИЕ СООБЩЕНИЙ
    # =========================================================================
    def poll_once(self, consumer: str, *, claim: bool = False) -> Disposition | None:
        """
        Одна итерация слота: забрать (или прочитать) одно сообщение и обработать.
        None — сообщений не было.
        """
        delivery = self._claim_stale(consumer) if claim else None
        if delivery is None:
            delivery = self._read_new(consumer)
        if delivery is None:
            return None
        return self.process(delivery)

    def _read_new(self, consumer: str) -> Delivery | None:
        resp = self._client_factory().xreadgroup(
            self.group,
            consumer,
            {self.queue: ">"},
            count=1,
            block=self.block_ms if self.block_ms > 0 else None,
        )
        for _stream, entries in resp or []:
            for message_id, fields in entries or []:
                return Delivery(message_id=message_id, fields=fields, deliveries=1)
        return None

    def _claim_stale(self, consumer: str) -> Delivery | None:
        if self.claim_idle_ms <= 0:
            return None
        r = self._client_factory()
        res = r.xautoclaim(
            self.queue,
            self.group,
            consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=1,
        )
        entries = res[1] if res and len(res) > 1 else []
        for message_id, fields in entries or []:
            deliveries = 1
            info = r.xpending_range(
                self.queue, self.group, min=message_id, max=message_id, count=1
            )
            if info:
                deliveries = _as_int(info[0].get("times_delivered"), 1)
            log.warning(
                "task_reclaimed",
                extra={
                    "payload": {
                        "queue": self.queue,
                        "message_id": message_id,
                        "consumer": consumer,
                        "deliveries": deliveries,
                    }
                },
            )
            return Delivery(message_id=message_id, fields=fields, deliveries=deliveries)
        return None

    # =========================================================================
    # ОБРАБОТКА
    # =========================================================================
    def process(self, delivery: Delivery) -> Disposition:
        fields = delivery.fields or {}
        raw = fields.get(F_BODY)
        attempt = _as_int(fields.get(F_ATTEMPT), 1) + max(0, delivery.deliveries - 1)

        try:
            task = decode_task(raw)
        except DecodeError as e:
            log.error(
                "task_decode_failed",
                extra={
                    "payload": {
                        "queue": self.queue,
                        "message_id": delivery.message_id,
                        "err": e.message,
                        "raw": snippet(raw, 300),
                    }
                },
            )
            return self._dead_letter(delivery, None, ErrCode.DECODE_ERROR, attempt)

        task_type = str(task.get("type") or fields.get(F_TYPE) or "unknown")

        if attempt > self.max_deliveries:
            # сообщение уже доставлялось max_deliveries раз без ack (consumer падал)
            return self._dead_letter(delivery, task, ErrCode.DELIVERIES_EXHAUSTED, attempt)

        log.info(
            "task_processing",
            extra={
                "payload": {
                    **self._task_ctx(task),
                    "queue": self.queue,
                    "task_id": fields.get(F_TASK_ID),
                    "attempt": attempt,
                }
            },
        )

        self.stats.enter()
        try:
            with track_task(self.queue, task_type):
                result = run_task(
                    task,
                    self.handlers,
                    task_id=fields.get(F_TASK_ID),
                    attempt=attempt,
                    timeout_sec=self.task_timeout_sec,
                    cancel_grace_sec=self.cancel_grace_sec,
                )
        finally:
            self.stats.leave()

        if result.ok:
            return self._ack(delivery, task, result, attempt)

        log.error(
            "task_failed",
            extra={
                "payload": {
                    **self._task_ctx(task),
                    "queue": self.queue,
                    "task_id": fields.get(F_TASK_ID),
                    "attempt": attempt,
                    "reason": result.reason,
                }
            },
        )
        reason = result.reason or ErrCode.HANDLER_ERROR
        if should_requeue(attempt, self.max_deliveries):
            return self._requeue(delivery, task, attempt, reason)
        return self._dead_letter(delivery, task, reason, attempt)

    def _ack(
        self, delivery: Delivery, task: dict[str, Any], result: HandlerResult, attempt: int
    ) -> Disposition:
        try:
            self._client_factory().xack(self.queue, self.group, delivery.message_id)
        except redis.RedisError as e:
            return self._left_pending(delivery, task, "ack", e)

        log.info(
            "task_completed",
            extra={
                "payload": {
                    **self._task_ctx(task),
                    "queue": self.queue,
                    "attempt": attempt,
                    "summary": result.summary,
                }
            },
        )
        return self._finish(task, Disposition.acked)

    def _requeue(
        self, delivery: Delivery, task: dict[str, Any], attempt: int, reason: str
    ) -> Disposition:
        fields = delivery.fields or {}
        retry_fields = {
            F_BODY: fields.get(F_BODY),
            F_TYPE: str(task.get("type") or fields.get(F_TYPE) or ""),
            F_ATTEMPT: str(attempt + 1),
            F_TASK_ID: fields.get(F_TASK_ID) or "",
            F_ENQUEUED_AT: fields.get(F_ENQUEUED_AT) or utc_now_iso(),
            F_LAST_ERROR: reason[:300],
        }
        try:
            pipe = self._client_factory().pipeline(transaction=True)
            pipe.xadd(self.queue, retry_fields)
            pipe.xack(self.queue, self.group, delivery.message_id)
            pipe.execute()
        except redis.RedisError as e:
            return self._left_pending(delivery, task, "requeue", e)

        log.warning(
            "task_requeued",
            extra={
                "payload": {
                    **self._task_ctx(task),
                    "queue": self.queue,
                    "attempt": attempt,
                    "next_attempt": attempt + 1,
                    "reason": reason,
                }
            },
        )
        return self._finish(task, Disposition.requeued)

    def _dead_letter(
        self,
        delivery: Delivery,
        task: dict[str, Any] | None,
        reason: str,
        attempt: int,
    ) -> Disposition:
        fields = delivery.fields or {}
        raw = fields.get(F_BODY)
        dead_fields = {
            F_BODY: raw if isinstance(raw, str) else "",
            F_TYPE: str((task or {}).get("type") or fields.get(F_TYPE) or ""),
            F_ATTEMPT: str(attempt),
            F_TASK_ID: fields.get(F_TASK_ID) or "",
            "source_queue": self.queue,
            "source_id": delivery.message_id,
            "reason": reason[:300],
            "failed_at": utc_now_iso(),
        }
        try:
            pipe = self._client_factory().pipeline(transaction=True)
            pipe.xadd(self.dead_letter_queue, dead_fields)
            pipe.xack(self.queue, self.group, delivery.message_id)
            pipe.execute()
        except redis.RedisError as e:
            return self._left_pending(delivery, task, "dead_letter", e)

        record_dead_lettered(queue=self.queue, reason=reason.split(":", 1)[0][:64])
        log.error(
            "task_dead_lettered",
            extra={
                "payload": {
                    **(self._task_ctx(task) if task else {"raw": snippet(raw, 300)}),
                    "queue": self.queue,
                    "dlq": self.dead_letter_queue,
                    "attempt": attempt,
                    "reason": reason,
                }
            },
        )
        if task is not None:
            self._notify_permanent_failure(task, reason)
        return self._finish(task, Disposition.dead_lettered)

    def _left_pending(
        self, delivery: Delivery, task: dict[str, Any] | None, op: str, err: Exception
    ) -> Disposition:
        self.stats.last_error = str(err)[:200]
        log.error(
            "task_disposition_failed",
            extra={
                "payload": {
                    **(self._task_ctx(task) if task else {}),
                    "queue": self.queue,
                    "message_id": delivery.message_id,
                    "op": op,
                    "err": str(err)[:200],
                }
            },
        )
        return self._finish(task, Disposition.pending)

    def _finish(self, task: dict[str, Any] | None, disposition: Disposition) -> Disposition:
        self.stats.bump(disposition)
        record_processed(
            queue=self.queue,
            task_type=str((task or {}).get("type") or "unknown"),
            result=disposition.value,
        )
        return disposition

    def _notify_permanent_failure(self, task: dict[str, Any], reason: str) -> None:
        if self.on_permanent_failure is None:
            return
        try:
            self.on_permanent_failure(task, reason)
        except Exception as e:
            log.error(
                "permanent_failure_hook_error",
                extra={"payload": {**self._task_ctx(task), "err": str(e)[:200]}},
            )

    @staticmethod
    def _task_ctx(task: dict[str, Any] | None) -> dict[str, Any]:
        task = task or {}
        ctx = {"type": task.get("type"), "provider_id": task.get("provider_id")}
        if task.get("path") is not None:
            ctx["path"] = task.get("path")
        return ctx
