"""
Конверт задачи синхронизации (wire-формат очереди).

Правила:
- тело сообщения = JSON-объект {"type": ..., <поля задачи>}
- provider_id обязателен всегда, path обязателен для папочных GIndex-задач
- конверт неизменяем; повторная попытка = новое сообщение, а не мутация
- служебные метаданные (task_id, attempt, enqueued_at) в тело не попадают
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from streamix_sync.common.errors import DecodeError, UnknownTaskTypeError, ValidationError
from streamix_sync.common.utils import snippet
from streamix_sync.domain.enums import TaskType


@dataclass(frozen=True)
class TaskEnvelope:
    type: TaskType
    fields: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def provider_id(self) -> Any:
        return self.fields.get("provider_id")

    @property
    def path(self) -> str | None:
        return self.fields.get("path")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.fields}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def log_context(self) -> dict[str, Any]:
        ctx: dict[str, Any] = {"type": self.type.value, "provider_id": self.provider_id}
        if self.path is not None:
            ctx["path"] = self.path
        return ctx


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def build_envelope(task_type: TaskType | str, payload: Mapping[str, Any] | None) -> TaskEnvelope:
    """
    Собирает и валидирует конверт до любого I/O.

    Ошибки:
    - ValidationError: пустой тип, нет provider_id / path, payload не объект
    - UnknownTaskTypeError: тип не из закрытого множества TaskType
    """
    if _is_blank(task_type):
        raise ValidationError("Пустой тип задачи")

    parsed = TaskType.parse(task_type)
    if parsed is None:
        raise UnknownTaskTypeError(task_type)

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError("payload должен быть объектом", {"type": parsed.value})

    fields = {str(k): v for k, v in payload.items()}
    if "type" in fields:
        raise ValidationError("payload не может переопределять type", {"type": parsed.value})

    if _is_blank(fields.get("provider_id")):
        raise ValidationError("provider_id обязателен", {"type": parsed.value})

    if parsed.requires_path and _is_blank(fields.get("path")):
        raise ValidationError(
            "path обязателен для папочной задачи",
            {"type": parsed.value, "provider_id": fields.get("provider_id")},
        )

    return TaskEnvelope(type=parsed, fields=fields)


def decode_task(raw: str | bytes | None) -> dict[str, Any]:
    """
    JSON-тело -> dict. Любая проблема формата = DecodeError (перманентная).
    """
    if raw is None:
        raise DecodeError("Пустое тело сообщения")
    try:
        task = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(
            "Некорректный JSON", {"err": str(e)[:200], "raw": snippet(raw, 200)}
        ) from e
    if not isinstance(task, dict):
        raise DecodeError(
            "Тело сообщения должно быть JSON-объектом", {"raw": snippet(raw, 200)}
        )
    return task
