"""
Централизованная конфигурация relay (ENV / .env).

Важно:
- настройки читаются из .env и переменных окружения
- типизированные значения через pydantic-settings
- объект неизменяемый: строится один раз на старте и передаётся по ссылке
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_JWT_SECRET = "dev-secret"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    app_env: str = Field(default="dev", alias="APP_ENV")
    service_name: str = Field(default="assistant-relay", alias="SERVICE_NAME")
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=4000, alias="API_PORT")
    cors_allowed_origins: str = Field(default="*", alias="CORS_ALLOWED_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    jwt_secret: str = Field(default=DEV_JWT_SECRET, alias="JWT_SECRET")
    jwt_ttl_days: int = Field(default=7, alias="JWT_TTL_DAYS")
    jwt_clock_skew_sec: int = Field(default=0, alias="JWT_CLOCK_SKEW_SEC")

    # -------------------------------------------------------------------------
    # Upstream: chat completions (OpenRouter, OpenAI-compatible)
    # -------------------------------------------------------------------------
    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    openrouter_api_base: str = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_BASE"
    )
    openrouter_model: str = Field(default="openrouter/auto", alias="OPENROUTER_MODEL")
    frontend_url: str = Field(default="http://localhost:5173", alias="FRONTEND_URL")
    app_title: str = Field(default="Desktop Assistant", alias="APP_TITLE")

    # -------------------------------------------------------------------------
    # Upstream: transcription (OpenAI Whisper)
    # -------------------------------------------------------------------------
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_base: str = Field(default="https://api.openai.com/v1", alias="OPENAI_API_BASE")
    transcription_model: str = Field(default="whisper-1", alias="TRANSCRIPTION_MODEL")
    max_audio_bytes: int = Field(default=15 * 1024 * 1024, alias="MAX_AUDIO_BYTES")

    # Таймауты на каждый upstream-вызов (connect, read)
    upstream_connect_timeout_sec: float = Field(default=10.0, alias="UPSTREAM_CONNECT_TIMEOUT_SEC")
    upstream_read_timeout_sec: float = Field(default=120.0, alias="UPSTREAM_READ_TIMEOUT_SEC")

    # -------------------------------------------------------------------------
    # Storage (identity store)
    # -------------------------------------------------------------------------
    database_dsn: str = Field(default="sqlite:///./assistant.db", alias="DATABASE_DSN")

    # -------------------------------------------------------------------------
    # CLI client
    # -------------------------------------------------------------------------
    relay_base_url: str = Field(default="http://127.0.0.1:4000", alias="RELAY_BASE_URL")
    relay_token: str | None = Field(default=None, alias="RELAY_TOKEN")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json|text

    @property
    def is_prod(self) -> bool:
        return (self.app_env or "").strip().lower() in {"prod", "production"}

    @property
    def upstream_timeout(self) -> tuple[float, float]:
        return (self.upstream_connect_timeout_sec, self.upstream_read_timeout_sec)


def _file_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Значения из <NAME>_FILE (docker/k8s secrets) поверх обычного ENV.
    """
    env = os.environ if environ is None else environ
    known = {str(f.alias or name) for name, f in Settings.model_fields.items()}

    overrides: dict[str, Any] = {}
    for key, path in env.items():
        if not key.endswith("_FILE"):
            continue
        base = key[: -len("_FILE")]
        if base not in known:
            continue
        file_path = (path or "").strip()
        if not file_path:
            continue
        try:
            raw = Path(file_path).read_text(encoding="utf-8")
        except OSError as e:
            logging.getLogger("assistant-relay").error(
                "config_file_read_failed",
                extra={"payload": {"env_key": key, "path": file_path, "error": str(e)[:200]}},
            )
            raise RuntimeError(f"Failed to read {key} from {file_path}") from e
        overrides[base] = raw.strip()
    return overrides


def load_settings(**overrides: Any) -> Settings:
    """
    Собрать Settings: ENV/.env, затем *_FILE, затем явные overrides (тесты).
    """
    values = _file_overrides()
    values.update(overrides)
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
