"""
Логирование проекта.

- логирование в stdout (Docker-friendly)
- JSON по умолчанию, text для локальной отладки (LOG_FORMAT=text)
- контекст события передаётся через extra={"payload": {...}}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from streamix_sync.common.config import get_settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            payload["payload"] = extra_payload
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict) and extra_payload:
            line = f"{line} {json.dumps(extra_payload, ensure_ascii=False, default=str)}"
        return line


def _build_formatter() -> logging.Formatter:
    s = get_settings()
    if (s.log_format or "").lower() == "text":
        return TextFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    return JsonFormatter()


def setup_logging() -> None:
    s = get_settings()
    root = logging.getLogger()
    level = getattr(logging, (s.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_project_logger(name: str = "streamix-sync") -> logging.Logger:
    return logging.getLogger(name)


def get_queue_logger() -> logging.Logger:
    """
    Отдельный логгер для consumer/job воркеров (удобно фильтровать).
    """
    return logging.getLogger("streamix-sync.queue")
