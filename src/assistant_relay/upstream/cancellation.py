"""
Токен отмены upstream-вызова.

Одна relay-сессия владеет одним токеном. cancel() вызывается из потока
event loop (отключение клиента), чтение upstream идёт в worker-потоке,
поэтому состояние под lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

log = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Сработать один раз. Возвращает False, если токен уже был отменён.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for cb in callbacks:
            self._run(cb)
        return True

    def add_callback(self, cb: Callable[[], None]) -> None:
        """
        Зарегистрировать действие на отмену; если токен уже отменён, выполнить сразу.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        self._run(cb)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def _run(self, cb: Callable[[], None]) -> None:
        try:
            cb()
        except Exception:
            log.warning("cancel_callback_failed", exc_info=True)
