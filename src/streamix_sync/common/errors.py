"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для логов / DLQ / результатов постановки задач
- единый стиль исключений по проекту
"""

from __future__ import annotations

from dataclasses import dataclass


class ErrCode:
    # Общие
    VALIDATION = "validation"

    # Задачи
    UNKNOWN_TASK_TYPE = "unknown_task_type"
    INVALID_TASK = "invalid_task"
    DECODE_ERROR = "decode_error"
    HANDLER_ERROR = "handler_error"
    TIMEOUT = "timeout"
    DELIVERIES_EXHAUSTED = "deliveries_exhausted"

    # Инфра
    BROKER_ERROR = "broker_error"
    DB_ERROR = "db_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class UnknownTaskTypeError(AppError):
    def __init__(self, task_type: object) -> None:
        super().__init__(
            ErrCode.UNKNOWN_TASK_TYPE,
            "Неизвестный тип задачи",
            {"type": str(task_type)[:100]},
        )


class DecodeError(AppError):
    def __init__(self, message: str = "Некорректный JSON", details: dict | None = None) -> None:
        super().__init__(ErrCode.DECODE_ERROR, message, details)


class JobStoreError(AppError):
    def __init__(self, message: str = "Ошибка хранилища задач", details: dict | None = None) -> None:
        super().__init__(ErrCode.DB_ERROR, message, details)


class TaskTimeoutError(AppError):
    def __init__(self, timeout_sec: float) -> None:
        super().__init__(ErrCode.TIMEOUT, "Превышен таймаут задачи", {"timeout_sec": timeout_sec})
