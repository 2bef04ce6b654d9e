"""
Выбор реализации collaborators по настройке SYNC_COLLABORATORS.

Форматы:
- "mock"                   -> MockSyncCollaborators
- "package.module:factory" -> factory() из указанного модуля
"""

from __future__ import annotations

import importlib

from streamix_sync.common.config import get_settings
from streamix_sync.common.errors import ValidationError
from streamix_sync.sync.base import SyncCollaborators
from streamix_sync.sync.mock import MockSyncCollaborators


def build_collaborators(target: str | None = None) -> SyncCollaborators:
    raw = (target if target is not None else get_settings().sync_collaborators or "").strip()

    if raw.lower() in {"", "mock"}:
        return MockSyncCollaborators()

    module_name, sep, attr = raw.partition(":")
    if not sep or not module_name or not attr:
        raise ValidationError(
            "SYNC_COLLABORATORS должен быть 'mock' или 'module:factory'", {"value": raw}
        )

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValidationError("Фабрика collaborators не найдена", {"value": raw})
    return factory()
