"""
Генерация идентификаторов.

Назначение:
- session_id для сквозной корреляции логов relay-сессии
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def new_session_id(prefix: str = "rs") -> str:
    """
    Идентификатор relay-сессии.
    Формат: <prefix>_<UTCYYYYMMDDHHMMSS>_<rand>
    """
    ts = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    rnd = secrets.token_hex(5)
    return f"{prefix}_{ts}_{rnd}"
