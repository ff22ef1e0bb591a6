"""
Клиент upstream-провайдеров.

- chat completions (OpenRouter / OpenAI-compatible) в режиме stream=true
- транскрипция аудио (OpenAI Whisper), один multipart POST

Ретраев нет: повтор частично отданного стрима дублирует уже доставленные
токены. Любая ошибка сразу уходит в relay-сессию.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from assistant_relay.common.config import Settings
from assistant_relay.common.errors import ErrCode, UpstreamError, UpstreamErrorKind
from assistant_relay.common.metrics import record_upstream_error, track_upstream_latency

from .cancellation import CancellationToken
from .stream import ChatStream

log = logging.getLogger(__name__)


def _bearer(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


class UpstreamClient:
    """
    Исходящие запросы к провайдерам. Конфигурация только читается.
    """

    def __init__(self, settings: Settings, *, http: requests.Session | None = None) -> None:
        self.settings = settings
        self._http = http or requests.Session()
        if not settings.openrouter_api_key:
            log.warning("upstream_chat_key_missing")
        if not settings.openai_api_key:
            log.warning("upstream_transcription_key_missing")

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------
    def open_chat_stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None,
        cancel: CancellationToken,
    ) -> ChatStream:
        s = self.settings
        url = s.openrouter_api_base.rstrip("/") + "/chat/completions"
        payload = {
            "model": model or s.openrouter_model,
            "messages": messages,
            "stream": True,
        }
        headers = {
            **_bearer(s.openrouter_api_key),
            "Content-Type": "application/json",
            "HTTP-Referer": s.frontend_url,
            "X-Title": s.app_title,
        }

        try:
            with track_upstream_latency("chat"):
                resp = self._http.post(
                    url,
                    headers=headers,
                    json=payload,
                    stream=True,
                    timeout=s.upstream_timeout,
                )
        except requests.RequestException as e:
            log.error("llm_http_error", extra={"payload": {"err": str(e)[:500]}})
            record_upstream_error(operation="chat", kind=UpstreamErrorKind.network.value)
            raise UpstreamError(
                UpstreamErrorKind.network,
                "Ошибка HTTP при вызове LLM",
                details={"err": str(e)[:500]},
            ) from e

        if cancel.is_cancelled:
            # клиент ушёл, пока ждали заголовки
            resp.close()
            return ChatStream(resp, cancel)

        if not 200 <= resp.status_code < 300:
            try:
                body = resp.text
            finally:
                resp.close()
            record_upstream_error(operation="chat", kind=UpstreamErrorKind.non_success_status.value)
            log.warning(
                "llm_non_success_status",
                extra={"payload": {"status": resp.status_code, "text_head": body[:500]}},
            )
            raise UpstreamError(
                UpstreamErrorKind.non_success_status,
                body or f"LLM вернул HTTP {resp.status_code}",
                status=resp.status_code,
            )

        return ChatStream(resp, cancel)

    # -------------------------------------------------------------------------
    # Transcription
    # -------------------------------------------------------------------------
    def transcribe(
        self,
        audio: bytes,
        mime_hint: str | None = None,
        *,
        filename: str | None = None,
    ) -> str:
        s = self.settings
        url = s.openai_api_base.rstrip("/") + "/audio/transcriptions"
        files = {
            "file": (filename or "audio.webm", audio, mime_hint or "audio/webm"),
        }
        data = {"model": s.transcription_model}

        try:
            with track_upstream_latency("transcription"):
                resp = self._http.post(
                    url,
                    headers=_bearer(s.openai_api_key),
                    files=files,
                    data=data,
                    timeout=s.upstream_timeout,
                )
        except requests.RequestException as e:
            log.error("stt_http_error", extra={"payload": {"err": str(e)[:500]}})
            record_upstream_error(operation="transcription", kind=UpstreamErrorKind.network.value)
            raise UpstreamError(
                UpstreamErrorKind.network,
                "Ошибка HTTP при вызове STT",
                code=ErrCode.STT_PROVIDER_ERROR,
                details={"err": str(e)[:500]},
            ) from e

        if not 200 <= resp.status_code < 300:
            record_upstream_error(
                operation="transcription", kind=UpstreamErrorKind.non_success_status.value
            )
            # тело провайдера отдаём как есть, без переформулировок
            raise UpstreamError(
                UpstreamErrorKind.non_success_status,
                resp.text,
                code=ErrCode.STT_PROVIDER_ERROR,
                status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            record_upstream_error(operation="transcription", kind=UpstreamErrorKind.malformed.value)
            raise UpstreamError(
                UpstreamErrorKind.malformed,
                "STT вернул невалидный JSON",
                code=ErrCode.STT_PROVIDER_ERROR,
                details={"text_head": resp.text[:500]},
            ) from e

        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            record_upstream_error(operation="transcription", kind=UpstreamErrorKind.malformed.value)
            raise UpstreamError(
                UpstreamErrorKind.malformed,
                "В ответе STT нет поля text",
                code=ErrCode.STT_PROVIDER_ERROR,
                details={"data_head": str(data)[:500]},
            )
        return text
