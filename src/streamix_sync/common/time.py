"""
Утилиты времени.

Назначение:
- единый формат времени (ISO UTC)
- naive UTC datetime для колонок БД
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """
    Текущее время в UTC в ISO формате.
    """
    return utc_now().isoformat()


def utc_now_naive() -> datetime:
    """
    Текущее время в UTC без tzinfo (колонки DateTime без timezone).
    """
    return utc_now().replace(tzinfo=None)
