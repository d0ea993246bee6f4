"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP/очередей/DLQ
- таксономия для оркестраторов: transient / permanent / partial / fatal
- единый стиль исключений по проекту

Правило распространения:
- ошибки стадий ловятся и классифицируются на границе оркестратора
- наружу (на уровень процесса) уходит только FatalError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    SHUTDOWN = "shutdown"
    TIMEOUT = "timeout"

    # Очереди
    PUBLISH_ERROR = "publish_error"
    CONSUME_ERROR = "consume_error"
    ENVELOPE_DECODE = "envelope_decode"
    CODEC_VERSION = "codec_version"
    INVALID_TRANSITION = "invalid_transition"

    # Пайплайн
    FETCH_ERROR = "fetch_error"
    UNSUPPORTED_MEDIA = "unsupported_media"
    INFERENCE_ERROR = "inference_error"
    PERSIST_ERROR = "persist_error"

    # Бэкапы
    SNAPSHOT_ERROR = "snapshot_error"
    REGISTRY_ERROR = "registry_error"

    # Инфра/хранилища
    DB_ERROR = "db_error"
    REDIS_ERROR = "redis_error"
    STORAGE_ERROR = "storage_error"
    CONFIG_ERROR = "config_error"


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


# =============================================================================
# ТАКСОНОМИЯ ОРКЕСТРАЦИИ
# =============================================================================
class TransientError(AppError):
    """Сеть/таймаут: повторяем с backoff+jitter в пределах бюджета попыток."""

    def __init__(
        self, code: str = ErrCode.UNKNOWN, message: str = "Временная ошибка", details: dict | None = None
    ) -> None:
        super().__init__(code, message, details)


class PermanentError(AppError):
    """Некорректный вход / неподдерживаемый формат: без повторов, в dead-letter."""

    def __init__(
        self, code: str = ErrCode.VALIDATION, message: str = "Постоянная ошибка", details: dict | None = None
    ) -> None:
        super().__init__(code, message, details)


class PartialFailure(AppError):
    """Часть единиц батча упала, остальные прошли. Отчёт - в report."""

    def __init__(self, message: str, report: Any = None, details: dict | None = None) -> None:
        super().__init__(ErrCode.UNKNOWN, message, details)
        self.report = report


class FatalError(AppError):
    """Конфигурация / исчерпание ресурсов. Поднимается до уровня процесса."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFIG_ERROR, message, details)


# =============================================================================
# КОНКРЕТНЫЕ ОШИБКИ
# =============================================================================
class PublishError(AppError):
    def __init__(self, message: str = "Не удалось опубликовать задачу", details: dict | None = None) -> None:
        super().__init__(ErrCode.PUBLISH_ERROR, message, details)


class ConsumeError(AppError):
    def __init__(self, message: str = "Не удалось прочитать очередь", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONSUME_ERROR, message, details)


class EnvelopeDecodeError(PermanentError):
    def __init__(self, message: str = "Некорректный конверт задачи", details: dict | None = None) -> None:
        super().__init__(ErrCode.ENVELOPE_DECODE, message, details)


class UnsupportedCodecVersion(PermanentError):
    def __init__(self, version: object) -> None:
        super().__init__(
            ErrCode.CODEC_VERSION,
            "Неизвестная версия кодека конверта",
            details={"codec_version": version},
        )


class UnsupportedMediaError(PermanentError):
    def __init__(self, message: str = "Источник повреждён или не поддерживается", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNSUPPORTED_MEDIA, message, details)


class ShutdownRequested(TransientError):
    """
    Процесс останавливается (SIGTERM, scale-down): сообщение не подтверждается
    и будет доставлено заново. Задание при этом не помечается failed.
    """

    def __init__(self, details: dict | None = None) -> None:
        super().__init__(ErrCode.SHUTDOWN, "Процесс останавливается", details)


class InvalidTransition(AppError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            ErrCode.INVALID_TRANSITION,
            "Недопустимый переход состояния",
            details={"from": current, "to": target},
        )


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Не авторизован", details: dict | None = None) -> None:
        super().__init__(ErrCode.UNAUTHORIZED, message, details)


def error_kind(err: BaseException) -> str:
    """
    Класс ошибки для отчётов: transient | permanent | partial | fatal.
    Неизвестные исключения считаем временными (их безопасно повторить).
    """
    if isinstance(err, FatalError):
        return "fatal"
    if isinstance(err, PermanentError):
        return "permanent"
    if isinstance(err, PartialFailure):
        return "partial"
    return "transient"
