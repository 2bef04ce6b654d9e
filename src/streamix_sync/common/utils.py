"""
Общие утилиты проекта.

Правила:
- сюда кладём только реально общие функции
- без бизнес-логики
"""

from __future__ import annotations

from typing import Any


def snippet(value: Any, max_len: int = 300) -> str:
    """
    Короткий фрагмент для логов (сырые тела сообщений, ошибки).
    """
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = value if isinstance(value, str) else repr(value)
    if len(text) > max_len:
        return text[:max_len] + "...(truncated)"
    return text


def parse_csv(raw: str | None) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]
