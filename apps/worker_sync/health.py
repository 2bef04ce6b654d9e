"""
HTTP-эндпоинты воркера синхронизации (FastAPI).

- /health  liveness: все компоненты супервизора живы
- /ready   readiness: брокер и БД отвечают
- /metrics Prometheus
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from streamix_sync.common.config import broker_enabled, get_settings
from streamix_sync.common.logging import get_project_logger
from streamix_sync.common.metrics import (
    refresh_job_metrics,
    refresh_queue_metrics,
    setup_metrics_endpoint,
)
from streamix_sync.queue.redis import redis_client
from streamix_sync.queue.supervisor import SyncSupervisor
from streamix_sync.storage.db import db_session

log = get_project_logger()

ReadinessCheck = Callable[[], None]


def _check_broker() -> None:
    redis_client().ping()


def _check_db() -> None:
    with db_session() as session:
        session.execute(text("SELECT 1"))


def default_checks() -> dict[str, ReadinessCheck]:
    checks: dict[str, ReadinessCheck] = {"db": _check_db}
    if broker_enabled():
        checks["broker"] = _check_broker
    return checks


def create_health_app(
    supervisor: SyncSupervisor,
    *,
    checks: dict[str, ReadinessCheck] | None = None,
    metrics_refreshers: list[Callable[[], None]] | None = None,
) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Streamix Sync Worker", version="0.1.0")
    readiness = default_checks() if checks is None else checks

    @app.get("/health")
    def health() -> JSONResponse:
        body = {"service": settings.service_name, **supervisor.health()}
        return JSONResponse(body, status_code=200 if body["status"] == "ok" else 503)

    @app.get("/ready")
    def ready() -> JSONResponse:
        results: dict[str, Any] = {}
        ok = True
        for name, check in readiness.items():
            try:
                check()
                results[name] = "ok"
            except Exception as e:
                ok = False
                results[name] = f"{type(e).__name__}: {str(e)[:200]}"
                log.warning("readiness_check_failed", extra={"payload": {"check": name, "err": str(e)[:200]}})
        return JSONResponse({"ready": ok, "checks": results}, status_code=200 if ok else 503)

    if metrics_refreshers is None:
        metrics_refreshers = [refresh_job_metrics]
        if broker_enabled():
            metrics_refreshers.append(refresh_queue_metrics)
    setup_metrics_endpoint(app, metrics_refreshers)
    return app
