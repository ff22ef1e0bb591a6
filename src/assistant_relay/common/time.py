"""
Утилиты времени.

Назначение:
- единый источник "сейчас" (UTC), подменяемый в тестах
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Текущее время в UTC (datetime).
    """
    return datetime.now(UTC)
