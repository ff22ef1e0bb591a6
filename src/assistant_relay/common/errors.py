"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для HTTP-ответов и логов
- единый стиль исключений по проекту
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"

    # Relay / upstream
    BAD_FRAME = "bad_frame"
    LLM_PROVIDER_ERROR = "llm_provider_error"
    STT_PROVIDER_ERROR = "stt_provider_error"


class AuthErrorKind(str, enum.Enum):
    missing = "missing"
    invalid = "invalid"


class UpstreamErrorKind(str, enum.Enum):
    network = "network"
    non_success_status = "non_success_status"
    malformed = "malformed"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки
    - message: безопасное сообщение
    - details: доп. данные (без секретов/PII)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Не найдено", details: dict | None = None) -> None:
        super().__init__(ErrCode.NOT_FOUND, message, details)


class ConflictError(AppError):
    def __init__(self, message: str = "Конфликт", details: dict | None = None) -> None:
        super().__init__(ErrCode.CONFLICT, message, details)


class AuthError(AppError):
    """
    Нет токена / токен битый (missing) или не прошёл проверку (invalid).
    Никогда не ретраится.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        message: str | None = None,
        details: dict | None = None,
    ) -> None:
        if message is None:
            message = "Missing token" if kind == AuthErrorKind.missing else "Invalid token"
        super().__init__(ErrCode.UNAUTHORIZED, message, details)
        self.kind = kind


class UpstreamError(AppError):
    """
    Ошибка upstream-провайдера.

    Для non_success_status message содержит тело ответа провайдера как есть.
    """

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        *,
        code: str = ErrCode.LLM_PROVIDER_ERROR,
        status: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(code, message, details)
        self.kind = kind
        self.status = status


class DecodeError(AppError):
    """
    Одна битая запись потока. Не фатальна: декодер её пропускает.
    """

    def __init__(self, message: str = "Некорректный фрейм", details: dict | None = None) -> None:
        super().__init__(ErrCode.BAD_FRAME, message, details)
