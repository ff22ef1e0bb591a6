"""
Инкрементальный декодер SSE-фреймов chat completions.

Формат потока (OpenAI-compatible):
    data: {"choices":[{"delta":{"content":"Hi"}}]}\\n
    \\n
    : OPENROUTER PROCESSING\\n
    data: [DONE]\\n

Правила:
- запись заканчивается на \\n; хвост без \\n переносится в следующий вызов
- хвост хранится байтами: многобайтовый UTF-8 символ может быть разрезан транспортом
- data: [DONE] это маркер конца, текста не даёт
- битая запись пропускается и не останавливает разбор следующих
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from assistant_relay.common.errors import DecodeError

log = logging.getLogger(__name__)

RECORD_DELIMITER = b"\n"
DATA_PREFIX = "data:"
TERMINAL_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class DecoderState:
    remainder: bytes = b""
    done: bool = False


def _extract_delta(parsed: Any) -> str:
    if not isinstance(parsed, dict):
        raise DecodeError("Фрейм не является JSON-объектом")
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    for key in ("delta", "message"):
        part = choice.get(key)
        if isinstance(part, dict):
            content = part.get("content")
            if isinstance(content, str) and content:
                return content
    return ""


def decode_record(record: bytes) -> str | None:
    """
    Одна полная запись -> текстовый фрагмент.
    None: запись не несёт текста (комментарий, пустая строка, маркер конца).
    """
    try:
        line = record.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise DecodeError("Фрейм не в UTF-8") from e
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX) :].strip()
    if payload == TERMINAL_SENTINEL:
        return None
    try:
        parsed = json.loads(payload)
    except ValueError as e:
        raise DecodeError("Фрейм не парсится как JSON", {"head": payload[:200]}) from e
    return _extract_delta(parsed) or None


def _is_terminal(record: bytes) -> bool:
    line = record.strip()
    if not line.startswith(DATA_PREFIX.encode("ascii")):
        return False
    return line[len(DATA_PREFIX) :].strip() == TERMINAL_SENTINEL.encode("ascii")


def _decode_records(records: list[bytes], done: bool) -> tuple[tuple[str, ...], bool]:
    deltas: list[str] = []
    for record in records:
        if _is_terminal(record):
            done = True
            continue
        try:
            delta = decode_record(record)
        except DecodeError as e:
            log.debug("frame_dropped", extra={"payload": {"reason": e.message}})
            continue
        if delta:
            deltas.append(delta)
    return tuple(deltas), done


def decode(buffer: bytes, state: DecoderState) -> tuple[tuple[str, ...], DecoderState]:
    """
    Разобрать очередной кусок потока.

    Возвращает фрагменты текста в порядке прихода и новое состояние
    (недочитанный хвост + признак увиденного маркера конца).
    """
    data = state.remainder + buffer
    *complete, tail = data.split(RECORD_DELIMITER)
    deltas, done = _decode_records(complete, state.done)
    return deltas, DecoderState(remainder=tail, done=done)


def flush(state: DecoderState) -> tuple[tuple[str, ...], DecoderState]:
    """
    Конец потока: хвост без завершающего \\n считаем последней записью.
    """
    if not state.remainder:
        return (), state
    deltas, done = _decode_records([state.remainder], state.done)
    return deltas, DecoderState(remainder=b"", done=done)


class FrameDecoder:
    """
    Обёртка со своим состоянием для потребителя стрима.
    """

    def __init__(self) -> None:
        self.state = DecoderState()
        self._parts: list[str] = []

    def feed(self, chunk: bytes) -> tuple[str, ...]:
        deltas, self.state = decode(chunk, self.state)
        self._parts.extend(deltas)
        return deltas

    def flush(self) -> tuple[str, ...]:
        deltas, self.state = flush(self.state)
        self._parts.extend(deltas)
        return deltas

    @property
    def done(self) -> bool:
        return self.state.done

    @property
    def text(self) -> str:
        return "".join(self._parts)
