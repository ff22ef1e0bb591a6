from __future__ import annotations

import json

import pytest

from assistant_relay.common.errors import DecodeError
from assistant_relay.relay.frames import (
    DecoderState,
    FrameDecoder,
    decode,
    decode_record,
    flush,
)


def _frame(content: str) -> bytes:
    payload = json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False)
    return f"data: {payload}\n".encode()


def _decode_all(chunks: list[bytes]) -> tuple[list[str], DecoderState]:
    state = DecoderState()
    deltas: list[str] = []
    for chunk in chunks:
        out, state = decode(chunk, state)
        deltas.extend(out)
    out, state = flush(state)
    deltas.extend(out)
    return deltas, state


def test_complete_records_with_done_marker() -> None:
    buf = _frame("Hi") + b"\n" + _frame(" there") + b"\ndata: [DONE]\n"

    deltas, state = decode(buf, DecoderState())

    assert deltas == ("Hi", " there")
    assert state.done is True
    assert state.remainder == b""


def test_partial_record_carried_to_next_call() -> None:
    frame = _frame("Hi")
    head, tail = frame[:10], frame[10:]

    deltas, state = decode(head, DecoderState())
    assert deltas == ()
    assert state.remainder == head

    deltas, state = decode(tail, state)
    assert deltas == ("Hi",)
    assert state.remainder == b""


def test_any_split_point_gives_same_deltas() -> None:
    stream = _frame("При") + b"\n: OPENROUTER PROCESSING\n" + _frame("вет, ") + _frame("мир") + b"data: [DONE]\n"
    expected, _ = _decode_all([stream])
    assert expected == ["При", "вет, ", "мир"]

    for cut in range(1, len(stream)):
        deltas, state = _decode_all([stream[:cut], stream[cut:]])
        assert deltas == expected, cut
        assert state.done is True


def test_byte_by_byte_feed() -> None:
    stream = _frame("ä€😀") + b"data: [DONE]\n"

    deltas, state = _decode_all([stream[i : i + 1] for i in range(len(stream))])

    assert deltas == ["ä€😀"]
    assert state.done is True


def test_malformed_record_between_valid_ones_is_skipped() -> None:
    buf = _frame("a") + b"data: {not json\n" + _frame("b")

    deltas, state = decode(buf, DecoderState())

    assert deltas == ("a", "b")
    assert state.done is False


def test_non_object_payload_is_skipped() -> None:
    buf = b"data: [1, 2]\n" + b'data: "str"\n' + _frame("ok")

    deltas, _ = decode(buf, DecoderState())

    assert deltas == ("ok",)


def test_comments_blank_lines_and_other_fields_yield_nothing() -> None:
    buf = b": keepalive\n\nevent: message\nid: 1\n\r\n"

    deltas, state = decode(buf, DecoderState())

    assert deltas == ()
    assert state.remainder == b""


def test_crlf_records() -> None:
    buf = _frame("x").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n"

    deltas, state = decode(buf, DecoderState())

    assert deltas == ("x",)
    assert state.done is True


def test_message_content_is_used_when_delta_is_absent() -> None:
    record = json.dumps({"choices": [{"message": {"role": "assistant", "content": "full"}}]})

    assert decode_record(f"data: {record}".encode()) == "full"


@pytest.mark.parametrize(
    "payload",
    [
        {"choices": []},
        {"choices": [{"delta": {}}]},
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": ""}}]},
        {"id": "gen-1"},
    ],
)
def test_records_without_text_yield_none(payload) -> None:
    assert decode_record(f"data: {json.dumps(payload)}".encode()) is None


def test_decode_record_raises_on_bad_json() -> None:
    with pytest.raises(DecodeError):
        decode_record(b"data: {oops")


def test_decode_record_raises_on_invalid_utf8() -> None:
    with pytest.raises(DecodeError):
        decode_record(b"data: \xff\xfe")


def test_flush_decodes_unterminated_tail() -> None:
    frame = _frame("tail").rstrip(b"\n")

    deltas, state = decode(frame, DecoderState())
    assert deltas == ()

    deltas, state = flush(state)
    assert deltas == ("tail",)
    assert state == DecoderState(remainder=b"", done=False)


def test_flush_of_empty_state_is_noop() -> None:
    state = DecoderState(done=True)

    assert flush(state) == ((), state)


def test_done_is_sticky() -> None:
    _, state = decode(b"data: [DONE]\n", DecoderState())
    deltas, state = decode(_frame("late"), state)

    assert state.done is True
    assert deltas == ("late",)


def test_frame_decoder_accumulates_text() -> None:
    decoder = FrameDecoder()
    stream = _frame("Hel") + _frame("lo") + b"data: [DONE]"

    for i in range(0, len(stream), 7):
        decoder.feed(stream[i : i + 7])
    assert decoder.done is False
    decoder.flush()

    assert decoder.text == "Hello"
    assert decoder.done is True
