"""
Супервизор воркер-процесса синхронизации.

Назначение:
- поднять consumer pipeline на каждую потребляемую priority-очередь (если брокер включён)
- всегда поднять пул fallback-воркеров (остатки в БД дорабатываются при смене режима)
- следить за компонентами и перезапускать упавшие с экспоненциальным backoff

Важно:
- компоненты не делят состояние: падение одного не трогает остальные
- перезапуск = stop() + новый экземпляр из фабрики
- новый экземпляр стартует только когда все потоки старого завершились
  (иначе уцелевшие слоты старого + N новых превышают лимит конкуренции)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from streamix_sync.common.config import broker_enabled, get_settings
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.metrics import SUPERVISOR_RESTARTS_TOTAL
from streamix_sync.queue.consumer import ConsumerPipeline
from streamix_sync.queue.handlers import HandlerTable, build_handler_table
from streamix_sync.queue.job_worker import JobWorkerPool, provider_status_hook
from streamix_sync.queue.retry import backoff_delay
from streamix_sync.queue.streams import configured_priorities, queue_name
from streamix_sync.storage.jobs import JobStore
from streamix_sync.sync.base import SyncCollaborators
from streamix_sync.sync.registry import build_collaborators

log = get_project_logger()


class Component(Protocol):
    @property
    def name(self) -> str: ...

    def start(self) -> None: ...

    def stop(self, timeout: float | None = None) -> None: ...

    def is_alive(self) -> bool: ...

    def is_drained(self) -> bool: ...

    def health(self) -> dict[str, Any]: ...


ComponentFactory = Callable[[], Component]


@dataclass
class _Slot:
    name: str
    factory: ComponentFactory
    component: Component | None = None
    # остановленный после падения экземпляр, чьи потоки ещё не вышли
    draining: Component | None = None
    restarts: int = 0
    failures_in_row: int = 0
    next_start_at: float = 0.0
    last_error: str | None = None


class SyncSupervisor:
    def __init__(
        self,
        factories: dict[str, ComponentFactory],
        *,
        check_interval_sec: float | None = None,
        backoff_base_sec: float | None = None,
        backoff_max_sec: float | None = None,
    ) -> None:
        s = get_settings()
        self.check_interval_sec = (
            s.supervisor_check_interval_sec if check_interval_sec is None else check_interval_sec
        )
        self.backoff_base_sec = (
            s.supervisor_restart_backoff_sec if backoff_base_sec is None else backoff_base_sec
        )
        self.backoff_max_sec = (
            s.supervisor_restart_backoff_max_sec if backoff_max_sec is None else backoff_max_sec
        )
        self._slots = {name: _Slot(name=name, factory=f) for name, f in factories.items()}
        self._stop = threading.Event()
        self._monitor: threading.Thread | None = None
        self._lock = threading.Lock()

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================
    def start(self) -> None:
        self._stop.clear()
        for slot in self._slots.values():
            self._start_slot(slot)
        self._monitor = threading.Thread(target=self._monitor_loop, name="supervisor", daemon=True)
        self._monitor.start()
        log.info("supervisor_started", extra={"payload": {"components": list(self._slots)}})

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._monitor is not None:
            self._monitor.join(timeout)
        with self._lock:
            for slot in self._slots.values():
                if slot.component is not None:
                    slot.component.stop(timeout)
                if slot.draining is not None:
                    slot.draining.stop(timeout)
        log.info("supervisor_stopped")

    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.check_interval_sec):
            self.check_once()

    def check_once(self, now: float | None = None) -> list[str]:
        """
        Одна проверка: упавшие компоненты перезапускаются, если истёк их backoff.
        Возвращает имена перезапущенных компонентов.
        """
        restarted: list[str] = []
        with self._lock:
            for slot in self._slots.values():
                comp = slot.component
                if comp is not None and comp.is_alive():
                    slot.failures_in_row = 0
                    continue

                ts = time.monotonic() if now is None else now
                if comp is not None:
                    # только что обнаружили падение: назначаем backoff
                    self._on_crash(slot, ts)
                    continue
                if ts < slot.next_start_at:
                    continue
                if not self._drained(slot):
                    continue
                slot.restarts += 1
                SUPERVISOR_RESTARTS_TOTAL.labels(component=slot.name).inc()
                if self._start_slot(slot):
                    restarted.append(slot.name)
        return restarted

    def _on_crash(self, slot: _Slot, now: float) -> None:
        comp = slot.component
        slot.component = None
        slot.failures_in_row += 1
        delay = backoff_delay(
            slot.failures_in_row, base_sec=self.backoff_base_sec, max_sec=self.backoff_max_sec
        )
        slot.next_start_at = now + delay
        try:
            if comp is not None:
                slot.last_error = str((comp.health() or {}).get("last_error") or "crashed")
                comp.stop(0)
        except Exception as e:
            slot.last_error = str(e)[:200]
        slot.draining = comp
        log.error(
            "component_crashed",
            extra={
                "payload": {
                    "component": slot.name,
                    "failures_in_row": slot.failures_in_row,
                    "restart_in_sec": round(delay, 2),
                    "last_error": slot.last_error,
                }
            },
        )

    def _drained(self, slot: _Slot) -> bool:
        old = slot.draining
        if old is None:
            return True
        try:
            drained = old.is_drained()
        except Exception:
            log.exception("component_drain_check_failed", extra={"payload": {"component": slot.name}})
            return False
        if not drained:
            log.info("component_restart_waits_for_drain", extra={"payload": {"component": slot.name}})
            return False
        slot.draining = None
        return True

    def _start_slot(self, slot: _Slot) -> bool:
        try:
            comp = slot.factory()
            comp.start()
        except Exception as e:
            slot.failures_in_row += 1
            slot.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            slot.next_start_at = time.monotonic() + backoff_delay(
                slot.failures_in_row, base_sec=self.backoff_base_sec, max_sec=self.backoff_max_sec
            )
            log.exception("component_start_failed", extra={"payload": {"component": slot.name}})
            return False
        slot.component = comp
        log.info(
            "component_started",
            extra={"payload": {"component": slot.name, "restarts": slot.restarts}},
        )
        return True

    # =========================================================================
    # HEALTH
    # =========================================================================
    def is_alive(self) -> bool:
        with self._lock:
            return bool(self._slots) and all(
                s.component is not None and s.component.is_alive() for s in self._slots.values()
            )

    def health(self) -> dict[str, Any]:
        components: dict[str, dict[str, Any]] = {}
        with self._lock:
            for name, slot in self._slots.items():
                if slot.component is None:
                    info = {
                        "alive": False,
                        "draining": slot.draining is not None,
                        "last_error": slot.last_error,
                    }
                else:
                    info = dict(slot.component.health())
                components[name] = {**info, "restarts": slot.restarts}
        return {
            "status": "ok" if all(c.get("alive") for c in components.values()) else "degraded",
            "broker_enabled": broker_enabled(),
            "components": components,
        }


# =============================================================================
# СБОРКА ПРОЦЕССА
# =============================================================================
def build_supervisor(
    collaborators: SyncCollaborators | None = None,
    *,
    handlers: HandlerTable | None = None,
    job_store: JobStore | None = None,
) -> SyncSupervisor:
    collaborators = collaborators or build_collaborators()
    handlers = handlers or build_handler_table(collaborators)
    hook = provider_status_hook(collaborators.mark_sync_status)
    store = job_store or JobStore()

    factories: dict[str, ComponentFactory] = {}
    if broker_enabled():
        for priority in configured_priorities():
            queue = queue_name(priority)
            factories[f"pipeline:{queue}"] = (
                lambda q=queue: ConsumerPipeline(q, handlers, on_permanent_failure=hook)
            )
    factories["jobs"] = lambda: JobWorkerPool(store, handlers, on_permanent_failure=hook)

    return SyncSupervisor(factories)
