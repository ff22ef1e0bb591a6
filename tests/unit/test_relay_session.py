from __future__ import annotations

import threading

import pytest
import requests
from prometheus_client import REGISTRY

from assistant_relay.common.errors import AuthError, AuthErrorKind, UpstreamError, UpstreamErrorKind
from assistant_relay.domain.enums import SessionKind, SessionState
from assistant_relay.domain.state_machine import IllegalTransition
from assistant_relay.relay.session import ClientDisconnected, RelaySession

MESSAGES = [{"role": "user", "content": "hello"}]


@pytest.fixture()
def open_session(verifier, token, make_upstream):
    """
    Авторизованная chat-сессия с upstream, который отдаст заданные куски.
    """

    def _open(*responses):
        upstream, http = make_upstream(*responses)
        session = RelaySession(verifier=verifier, upstream=upstream)
        session.authenticate(f"Bearer {token}")
        return session, http

    return _open


def test_frames_relayed_in_order_without_repacking(open_session, make_response, sse) -> None:
    chunks = [sse("Hi"), sse(" there"), b": OPENROUTER PROCESSING\n\n", sse("!"), b"data: [DONE]\n\n"]
    resp = make_response(chunks=chunks)
    session, http = open_session(resp)

    session.open_chat(MESSAGES)
    written: list[bytes] = []
    final = session.relay(written.append)

    assert b"".join(written) == b"".join(chunks)
    assert final == SessionState.completed
    assert session.bytes_sent == sum(len(c) for c in chunks)
    assert session.chunks_sent == len(chunks)
    assert len(http.calls) == 1


def test_client_disconnect_cancels_upstream(open_session, make_response, sse) -> None:
    resp = make_response(chunks=[sse(str(i)) for i in range(10)])
    session, _ = open_session(resp)
    session.open_chat(MESSAGES)
    written: list[bytes] = []

    def _write(chunk: bytes) -> None:
        if len(written) == 3:
            raise ClientDisconnected()
        written.append(chunk)

    final = session.relay(_write)

    assert final == SessionState.cancelled
    assert len(written) == 3
    # четвёртый кусок прочитан, но не записан; дальше upstream не читается
    assert resp.raw.reads == 4
    assert resp.raw.closed is True
    assert session.cancel_token.reason == "client_disconnected"


def test_cancel_from_other_thread_unblocks_reader(open_session, make_response, sse) -> None:
    resp = make_response(chunks=[sse("first"), "block", sse("never")])
    session, _ = open_session(resp)
    session.open_chat(MESSAGES)
    written: list[bytes] = []
    outcome: list[SessionState] = []

    reader = threading.Thread(target=lambda: outcome.append(session.relay(written.append)))
    reader.start()
    assert resp.raw.blocked.wait(timeout=2)

    session.cancel()
    reader.join(timeout=2)

    assert not reader.is_alive()
    assert outcome == [SessionState.cancelled]
    assert written == [sse("first")]


def test_mid_stream_failure_truncates_silently(open_session, make_response, sse) -> None:
    resp = make_response(chunks=[sse("partial"), requests.ConnectionError("reset by peer")])
    session, _ = open_session(resp)
    session.open_chat(MESSAGES)
    written: list[bytes] = []

    final = session.relay(written.append)

    assert final == SessionState.failed
    assert written == [sse("partial")]
    assert isinstance(session.error, UpstreamError)
    assert session.error.kind == UpstreamErrorKind.network


def test_failure_before_first_byte_is_raised(open_session, make_response) -> None:
    resp = make_response(chunks=[requests.ConnectionError("reset by peer")])
    session, _ = open_session(resp)
    session.open_chat(MESSAGES)

    with pytest.raises(UpstreamError):
        session.next_chunk()

    assert session.state == SessionState.failed
    assert session.bytes_sent == 0
    session.close()


def test_upstream_rejection_fails_session(open_session, make_response) -> None:
    session, _ = open_session(make_response(429, body="slow down"))

    with pytest.raises(UpstreamError) as e:
        session.open_chat(MESSAGES)

    assert e.value.kind == UpstreamErrorKind.non_success_status
    assert session.state == SessionState.failed
    session.close()


def test_auth_failure_never_calls_upstream(verifier, make_upstream) -> None:
    upstream, http = make_upstream()
    session = RelaySession(verifier=verifier, upstream=upstream)

    with pytest.raises(AuthError) as e:
        session.authenticate(None)

    assert e.value.kind == AuthErrorKind.missing
    assert session.state == SessionState.failed
    with pytest.raises(IllegalTransition):
        session.open_chat(MESSAGES)
    assert http.calls == []


def test_malformed_token_fails_session(verifier, make_upstream) -> None:
    upstream, _ = make_upstream()
    session = RelaySession(verifier=verifier, upstream=upstream)

    with pytest.raises(AuthError) as e:
        session.authenticate("Bearer aaa.bbb.ccc")

    assert e.value.kind == AuthErrorKind.missing
    assert session.identity is None


def test_second_open_is_rejected(open_session, make_response, sse) -> None:
    session, http = open_session(make_response(chunks=[sse("a")]))
    session.open_chat(MESSAGES)

    with pytest.raises(IllegalTransition):
        session.open_chat(MESSAGES)
    assert len(http.calls) == 1
    session.close()


def test_close_is_idempotent_and_cancels_open_stream(open_session, make_response, sse) -> None:
    resp = make_response(chunks=[sse("a"), sse("b")])
    session, _ = open_session(resp)
    session.open_chat(MESSAGES)
    assert session.next_chunk() == sse("a")

    session.close()
    session.close()

    assert session.state == SessionState.cancelled
    assert session.cancel_token.reason == "session_closed"
    assert resp.raw.closed is True
    assert session.next_chunk() is None


def _active_sessions() -> float:
    return REGISTRY.get_sample_value("relay_active_sessions", {"kind": "chat"}) or 0.0


@pytest.mark.parametrize("stop", ["close", "cancel"])
def test_stop_while_opening_drops_stream_and_keeps_gauge(
    verifier, token, make_upstream, make_response, sse, stop
) -> None:
    resp = make_response(chunks=[sse("late")])
    holder: list[RelaySession] = []

    def _respond():
        getattr(holder[0], stop)()
        return resp

    upstream, _ = make_upstream(_respond)
    session = RelaySession(verifier=verifier, upstream=upstream)
    holder.append(session)
    session.authenticate(f"Bearer {token}")
    before = _active_sessions()

    session.open_chat(MESSAGES)
    assert session.next_chunk() is None
    session.close()

    assert session.state == SessionState.cancelled
    assert resp.raw.closed is True
    assert resp.raw.reads == 0
    assert _active_sessions() == before


def test_open_stream_counts_as_active_until_closed(open_session, make_response, sse) -> None:
    before = _active_sessions()
    session, _ = open_session(make_response(chunks=[sse("a")]))

    session.open_chat(MESSAGES)
    assert _active_sessions() == before + 1

    session.close()
    assert _active_sessions() == before


def test_cancel_after_completion_keeps_completed(open_session, make_response, sse) -> None:
    session, _ = open_session(make_response(chunks=[sse("a")]))
    session.open_chat(MESSAGES)
    session.relay(lambda _chunk: None)

    session.cancel()

    assert session.state == SessionState.completed


def test_next_chunk_requires_open_stream(open_session) -> None:
    session, _ = open_session()

    with pytest.raises(RuntimeError):
        session.next_chunk()


# =============================================================================
# TRANSCRIPTION
# =============================================================================
def test_transcription_session_completes(verifier, token, make_upstream, make_response) -> None:
    upstream, http = make_upstream(make_response(body={"text": "hello world"}))
    session = RelaySession(verifier=verifier, upstream=upstream, kind=SessionKind.transcription)
    session.authenticate(f"Bearer {token}")

    assert session.transcribe(b"audio", "audio/webm") == "hello world"
    assert session.state == SessionState.completed
    assert len(http.calls) == 1


def test_transcription_error_fails_session(verifier, token, make_upstream, make_response) -> None:
    upstream, _ = make_upstream(make_response(500, body="rate limited"))
    session = RelaySession(verifier=verifier, upstream=upstream, kind=SessionKind.transcription)
    session.authenticate(f"Bearer {token}")

    with pytest.raises(UpstreamError) as e:
        session.transcribe(b"audio")

    assert e.value.message == "rate limited"
    assert session.state == SessionState.failed
