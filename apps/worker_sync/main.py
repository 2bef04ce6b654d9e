"""
Worker синхронизации.

Алгоритм:
- поднимаем супервизор: consumer pipeline на каждую priority-очередь
  (QUEUE_BROKER_ENABLED=true) + пул fallback-воркеров БД
- HTTP /health /ready /metrics через uvicorn в отдельном потоке
- ждём SIGTERM/SIGINT, затем останавливаем компоненты

Важно:
- процесс можно масштабировать горизонтально: consumer group и SKIP LOCKED
  распределяют задачи между экземплярами
"""

from __future__ import annotations

import signal
import threading

import uvicorn

from apps.worker_sync.health import create_health_app
from streamix_sync.common.config import broker_enabled, get_settings
from streamix_sync.common.logging import get_project_logger, setup_logging
from streamix_sync.queue.supervisor import build_supervisor

log = get_project_logger()


def _serve_health(server: uvicorn.Server) -> threading.Thread:
    t = threading.Thread(target=server.run, name="health-http", daemon=True)
    t.start()
    return t


def main() -> None:
    setup_logging()
    s = get_settings()

    supervisor = build_supervisor()
    supervisor.start()

    server = uvicorn.Server(
        uvicorn.Config(
            create_health_app(supervisor),
            host=s.health_host,
            port=s.health_port,
            log_config=None,
            access_log=False,
        )
    )
    _serve_health(server)

    log.info(
        "worker_sync_started",
        extra={
            "payload": {
                "broker_enabled": broker_enabled(),
                "health_port": s.health_port,
                "service": s.service_name,
            }
        },
    )

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        log.info("worker_sync_signal", extra={"payload": {"signal": signum}})
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    while not stop.wait(1.0):
        pass

    server.should_exit = True
    supervisor.stop()
    log.info("worker_sync_stopped")


if __name__ == "__main__":
    main()
