"""
Логирование relay.

- логирование в stdout (Docker-friendly)
- JSON по умолчанию, text для локальной отладки
- session_id и caller_id из payload поднимаются на верхний уровень записи,
  чтобы все события одной relay-сессии собирались одним фильтром
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from assistant_relay.common.config import Settings

# поля корреляции relay-сессии
CORRELATION_FIELDS = ("session_id", "caller_id")


def _correlation(record: logging.LogRecord) -> dict[str, Any]:
    payload = getattr(record, "payload", None)
    if not isinstance(payload, dict):
        return {}
    return {k: payload[k] for k in CORRELATION_FIELDS if payload.get(k) is not None}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_correlation(record))
        extra_payload = getattr(record, "payload", None)
        if isinstance(extra_payload, dict):
            rest = {k: v for k, v in extra_payload.items() if k not in CORRELATION_FIELDS}
            if rest:
                payload["payload"] = rest
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """
    Человекочитаемый формат: корреляция дописывается хвостом [session_id=...].
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _correlation(record)
        if not fields:
            return line
        tail = " ".join(f"{k}={v}" for k, v in fields.items())
        return f"{line} [{tail}]"


def _build_formatter(settings: Settings) -> logging.Formatter:
    if (settings.log_format or "").lower() == "text":
        return TextFormatter()
    return JsonFormatter()


def setup_logging(settings: Settings) -> None:
    root = logging.getLogger()
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    root.setLevel(level)

    # Не плодим хэндлеры при повторном вызове
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(settings))
    root.addHandler(handler)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)


def get_project_logger(name: str = "assistant-relay") -> logging.Logger:
    return logging.getLogger(name)


def get_relay_logger() -> logging.Logger:
    """
    Отдельный логгер для relay-сессий (удобно фильтровать/маршрутизировать).
    """
    return logging.getLogger("assistant-relay.relay")
