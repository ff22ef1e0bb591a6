"""
Relay-сессия: один запрос клиента от авторизации до закрытия upstream.

Состояния: idle → authenticating → streaming → completed | cancelled | failed.

Модель исполнения: блокирующий цикл чтения, next_chunk() делает ровно один
read из upstream и перед ним и после него смотрит флаг отмены. Отмену
(отключение клиента) вызывают из другого потока через cancel().

Частичный отказ: если upstream упал после того, как клиенту ушёл хотя бы один
байт, поток просто обрывается. Уже отданный префикс остаётся как есть,
отсутствие data: [DONE] означает неполный ответ.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from assistant_relay.common.errors import AppError, AuthError, UpstreamError
from assistant_relay.common.ids import new_session_id
from assistant_relay.common.logging import get_relay_logger
from assistant_relay.common.metrics import (
    RELAY_ACTIVE_SESSIONS,
    RELAY_BYTES_TOTAL,
    record_session_outcome,
)
from assistant_relay.common.security import CallerIdentity, CredentialVerifier, extract_bearer
from assistant_relay.domain.enums import SessionKind, SessionState
from assistant_relay.domain.state_machine import can_transition, transition
from assistant_relay.upstream.cancellation import CancellationToken
from assistant_relay.upstream.client import UpstreamClient
from assistant_relay.upstream.stream import ChatStream

log = get_relay_logger()


class ClientDisconnected(Exception):
    """Клиентское соединение закрыто; писать в него больше нельзя."""


class RelaySession:
    def __init__(
        self,
        *,
        verifier: CredentialVerifier,
        upstream: UpstreamClient,
        kind: SessionKind = SessionKind.chat,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or new_session_id()
        self.kind = kind
        self.state = SessionState.idle
        self.identity: CallerIdentity | None = None
        self.cancel_token = CancellationToken()
        self.error: AppError | None = None
        self.bytes_sent = 0
        self.chunks_sent = 0

        self._verifier = verifier
        self._upstream = upstream
        self._stream: ChatStream | None = None
        self._lock = threading.Lock()
        self._active = False
        self._released = False

    # -------------------------------------------------------------------------
    # Состояние
    # -------------------------------------------------------------------------
    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def _log_payload(self, **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "caller_id": self.identity.id if self.identity else None,
        }
        payload.update(extra)
        return payload

    def _advance(self, target: SessionState) -> None:
        with self._lock:
            self.state = transition(self.state, target).state

    def _finish(self, target: SessionState, *, reason: str, error: AppError | None = None) -> bool:
        """
        Перевести в терминальное состояние, если сессия ещё в него не попала.
        Гонка cancel() из event loop и конца чтения в worker-потоке решается здесь.
        """
        with self._lock:
            if not can_transition(self.state, target):
                return False
            self.state = transition(self.state, target, reason=reason).state
            if error is not None:
                self.error = error

        record_session_outcome(kind=self.kind.value, outcome=target.value)
        payload = self._log_payload(
            reason=reason,
            bytes_sent=self.bytes_sent,
            chunks_sent=self.chunks_sent,
        )
        if target == SessionState.failed:
            if error is not None:
                payload["error_code"] = error.code
            log.warning(f"relay_session_{target.value}", extra={"payload": payload})
        else:
            log.info(f"relay_session_{target.value}", extra={"payload": payload})
        return True

    # -------------------------------------------------------------------------
    # Авторизация
    # -------------------------------------------------------------------------
    def authenticate(self, authorization: str | None) -> CallerIdentity:
        self._advance(SessionState.authenticating)
        try:
            identity = self._verifier.verify(extract_bearer(authorization))
        except AuthError as e:
            self._finish(SessionState.failed, reason=f"auth_{e.kind.value}", error=e)
            raise
        self.identity = identity
        return identity

    # -------------------------------------------------------------------------
    # Chat stream
    # -------------------------------------------------------------------------
    def open_chat(self, messages: list[dict[str, Any]], model: str | None = None) -> None:
        # authenticating → streaming; второй open упадёт на переходе
        self._advance(SessionState.streaming)
        try:
            stream = self._upstream.open_chat_stream(messages, model, self.cancel_token)
        except UpstreamError as e:
            self._finish(SessionState.failed, reason=f"upstream_{e.kind.value}", error=e)
            raise
        with self._lock:
            self._stream = stream
            # cancel()/close() успели отработать, пока ждали upstream
            late = self._released or self.cancelled
            if not late:
                self._active = True
                RELAY_ACTIVE_SESSIONS.labels(kind=self.kind.value).inc()
        if late:
            stream.close()
            log.info("relay_stream_dropped", extra={"payload": self._log_payload(model=model)})
            return
        log.info("relay_stream_opened", extra={"payload": self._log_payload(model=model)})

    def next_chunk(self) -> bytes | None:
        """
        Один шаг цикла: следующий кусок для клиента или None (конец/отмена/обрыв).

        UpstreamError пробрасывается только пока клиенту не ушло ни байта.
        """
        stream = self._stream
        if stream is None:
            raise RuntimeError("upstream stream is not open")
        if self.cancelled or self.state != SessionState.streaming:
            return None

        try:
            chunk = stream.read()
        except UpstreamError as e:
            if self.bytes_sent == 0:
                self._finish(SessionState.failed, reason=f"upstream_{e.kind.value}", error=e)
                raise
            self._finish(SessionState.failed, reason="upstream_truncated", error=e)
            return None

        if chunk is None:
            if not self.cancelled:
                self._finish(SessionState.completed, reason="upstream_end")
            return None
        if self.cancelled:
            return None

        self.bytes_sent += len(chunk)
        self.chunks_sent += 1
        RELAY_BYTES_TOTAL.inc(len(chunk))
        return chunk

    def relay(self, write: Callable[[bytes], None]) -> SessionState:
        """
        Копировать байты upstream → клиент в порядке прихода, без переупаковки.
        """
        try:
            while True:
                chunk = self.next_chunk()
                if chunk is None or self.cancelled:
                    break
                try:
                    write(chunk)
                except ClientDisconnected:
                    self.cancel("client_disconnected")
                    break
        finally:
            self.close()
        return self.state

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
        self._advance(SessionState.streaming)
        RELAY_ACTIVE_SESSIONS.labels(kind=self.kind.value).inc()
        with self._lock:
            self._active = True
        try:
            text = self._upstream.transcribe(audio, mime_hint, filename=filename)
        except UpstreamError as e:
            self._finish(SessionState.failed, reason=f"upstream_{e.kind.value}", error=e)
            raise
        finally:
            self._release()
        self._finish(SessionState.completed, reason="upstream_end")
        return text

    # -------------------------------------------------------------------------
    # Отмена и освобождение ресурсов
    # -------------------------------------------------------------------------
    def cancel(self, reason: str = "client_disconnected") -> None:
        # сначала флаг: после него запись клиенту запрещена
        self.cancel_token.cancel(reason)
        self._finish(SessionState.cancelled, reason=reason)

    def close(self) -> None:
        """
        Освободить upstream и токен. Идемпотентно, вызывается на любом выходе.
        """
        if self.state == SessionState.streaming:
            self.cancel("session_closed")
        self._release()

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            stream, active = self._stream, self._active
        if stream is not None:
            stream.close()
        if active:
            RELAY_ACTIVE_SESSIONS.labels(kind=self.kind.value).dec()
