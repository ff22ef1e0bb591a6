"""
Handle потокового ответа upstream (chat completions, stream=true).

- read() отдаёт очередной кусок байтов по мере прихода, без буферизации всего ответа
- None: конец потока (upstream закончил или сработала отмена)
- последовательность конечна и не перезапускается
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterator

import requests

from assistant_relay.common.errors import UpstreamError, UpstreamErrorKind

from .cancellation import CancellationToken

log = logging.getLogger(__name__)


def _interrupt_socket(response: requests.Response) -> None:
    """
    Разбудить поток, заблокированный в recv(): close() этого не гарантирует.
    """
    conn = getattr(response.raw, "connection", None)
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # сокет уже закрыт
        log.debug("upstream_socket_shutdown_skipped")


class ChatStream:
    def __init__(self, response: requests.Response, cancel: CancellationToken) -> None:
        self._response = response
        self._cancel = cancel
        # chunk_size=None: куски отдаются по мере прихода (chunked transfer)
        self._chunks = response.iter_content(chunk_size=None)
        self._closed = False
        cancel.add_callback(self._abort)

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self) -> bytes | None:
        if self._closed or self._cancel.is_cancelled:
            return None
        while True:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self.close()
                return None
            except Exception as e:
                if self._cancel.is_cancelled:
                    # чтение прервано нашей же отменой
                    log.debug("upstream_read_aborted", extra={"payload": {"err": str(e)[:200]}})
                    self.close()
                    return None
                self.close()
                raise UpstreamError(
                    UpstreamErrorKind.network,
                    "Обрыв потока от LLM",
                    details={"err": str(e)[:500]},
                ) from e
            if self._cancel.is_cancelled:
                return None
            if chunk:
                return chunk

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read()
            if chunk is None:
                return
            yield chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()

    def _abort(self) -> None:
        if self._closed:
            return
        _interrupt_socket(self._response)
        self.close()
