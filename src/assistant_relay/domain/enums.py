"""
Доменные перечисления (enum).

Используются во всей системе:
- состояние relay-сессии
- вид relay-сессии
- роли сообщений чата
"""

from __future__ import annotations

import enum


class SessionState(str, enum.Enum):
    """
    Состояние relay-сессии.
    """

    idle = "idle"
    authenticating = "authenticating"
    streaming = "streaming"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionState.completed, SessionState.cancelled, SessionState.failed}


class SessionKind(str, enum.Enum):
    """
    Что релеит сессия.
    """

    chat = "chat"
    transcription = "transcription"


class ChatRole(str, enum.Enum):
    """
    Роль сообщения. Relay не интерпретирует роли, только валидирует формат.
    """

    system = "system"
    user = "user"
    assistant = "assistant"
