"""
Клиент relay для потребителя (desktop-приложение, CLI).

- стрим чата читается по мере прихода и разбирается FrameDecoder
- неполный ответ (нет data: [DONE]) помечается complete=False
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from assistant_relay.relay.frames import FrameDecoder

log = logging.getLogger(__name__)


class RelayClientError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class ChatReply:
    text: str
    complete: bool


def normalize_base_url(raw: str) -> str:
    value = (raw or "").strip().rstrip("/")
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"relay base url must be http(s): {raw!r}")
    return value


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return (response.text or "").strip() or f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return str(data)


class RelayClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: tuple[float, float] = (10.0, 120.0),
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.token = token
        self.timeout = timeout
        self._http = http or requests.Session()

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _raise_for_status(self, response: requests.Response) -> None:
        if response.status_code >= 400:
            raise RelayClientError(_error_message(response), status=response.status_code)

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    def _auth(self, path: str, email: str, password: str) -> dict[str, Any]:
        response = self._http.post(
            f"{self.base_url}{path}",
            json={"email": email, "password": password},
            timeout=self.timeout,
        )
        self._raise_for_status(response)
        data = response.json()
        self.token = data["token"]
        return data["user"]

    def register(self, email: str, password: str) -> dict[str, Any]:
        return self._auth("/api/auth/register", email, password)

    def login(self, email: str, password: str) -> dict[str, Any]:
        return self._auth("/api/auth/login", email, password)

    def me(self) -> dict[str, Any]:
        response = self._http.get(f"{self.base_url}/api/me", headers=self._headers(), timeout=self.timeout)
        self._raise_for_status(response)
        return response.json()["user"]

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------
    def iter_chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        decoder: FrameDecoder | None = None,
    ) -> Iterator[str]:
        """
        Текстовые дельты ответа в порядке прихода.
        """
        decoder = decoder if decoder is not None else FrameDecoder()
        body: dict[str, Any] = {"messages": messages}
        if model:
            body["model"] = model

        with self._http.post(
            f"{self.base_url}/api/chat",
            json=body,
            headers=self._headers(),
            stream=True,
            timeout=self.timeout,
        ) as response:
            self._raise_for_status(response)
            for chunk in response.iter_content(chunk_size=None):
                yield from decoder.feed(chunk)
            yield from decoder.flush()

    def chat(
        self,
        messages: list[dict[str, str]],
        *,
        model: str | None = None,
        on_delta: Callable[[str], None] | None = None,
    ) -> ChatReply:
        decoder = FrameDecoder()
        try:
            for delta in self.iter_chat(messages, model=model, decoder=decoder):
                if on_delta is not None:
                    on_delta(delta)
        except requests.RequestException as e:
            if not decoder.text:
                raise RelayClientError(f"relay request failed: {e}") from e
            # обрыв посреди стрима: отдаём то, что успели получить
            log.warning("relay_chat_interrupted", extra={"payload": {"err": str(e)[:200]}})
        return ChatReply(text=decoder.text, complete=decoder.done)

    # -------------------------------------------------------------------------
    # Transcription
    # -------------------------------------------------------------------------
    def transcribe(
        self,
        audio: bytes | Path,
        *,
        mime: str = "audio/webm",
        filename: str | None = None,
    ) -> str:
        if isinstance(audio, Path):
            filename = filename or audio.name
            audio = audio.read_bytes()
        response = self._http.post(
            f"{self.base_url}/api/whisper",
            files={"audio": (filename or "audio.webm", audio, mime)},
            headers=self._headers(),
            timeout=self.timeout,
        )
        self._raise_for_status(response)
        return str(response.json()["text"])
