from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest
from starlette.requests import Request

from apps.api_gateway.deps import auth_dep, chat_session_dep
from assistant_relay.common.errors import AuthError
from assistant_relay.domain.enums import SessionState


def _make_request(*, path: str, method: str = "GET", state: SimpleNamespace) -> Request:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
        "app": SimpleNamespace(state=state),
    }
    return Request(scope)


@pytest.fixture()
def app_state(verifier, make_upstream) -> SimpleNamespace:
    upstream, _ = make_upstream()
    return SimpleNamespace(verifier=verifier, upstream=upstream)


def test_auth_dep_logs_allow(caplog, app_state, token) -> None:
    caplog.set_level(logging.INFO, logger="assistant-relay")
    req = _make_request(path="/api/me", state=app_state)

    identity = auth_dep(request=req, authorization=f"Bearer {token}")

    assert identity.id == 1
    rec = next(r for r in caplog.records if r.msg == "security_audit_allow")
    assert rec.payload["endpoint"] == "/api/me"
    assert rec.payload["caller_id"] == 1
    assert rec.payload["client_ip"] == "127.0.0.1"


def test_auth_dep_logs_deny(caplog, app_state) -> None:
    caplog.set_level(logging.INFO, logger="assistant-relay")
    req = _make_request(path="/api/me", state=app_state)

    with pytest.raises(AuthError):
        auth_dep(request=req, authorization=None)

    rec = next(r for r in caplog.records if r.msg == "security_audit_deny")
    assert rec.payload["reason"] == "missing"
    assert rec.payload["error_code"] == "unauthorized"


def test_chat_session_dep_authenticates_session(caplog, app_state, token) -> None:
    caplog.set_level(logging.INFO, logger="assistant-relay")
    req = _make_request(path="/api/chat", method="POST", state=app_state)

    session = chat_session_dep(request=req, authorization=f"Bearer {token}")

    assert session.state == SessionState.authenticating
    assert session.identity is not None
    assert any(r.msg == "security_audit_allow" for r in caplog.records)


def test_chat_session_dep_logs_invalid_token(caplog, app_state) -> None:
    caplog.set_level(logging.INFO, logger="assistant-relay")
    req = _make_request(path="/api/chat", method="POST", state=app_state)

    with pytest.raises(AuthError):
        chat_session_dep(request=req, authorization="Bearer x.y.z")

    rec = next(r for r in caplog.records if r.msg == "security_audit_deny")
    assert rec.payload["endpoint"] == "/api/chat"
    assert rec.payload["method"] == "POST"
