"""
FastAPI Depends.

Сюда выносим:
- проверку Bearer-токена (+ аудит allow/deny в лог)
- сборку relay-сессии из общих (read-only) зависимостей app.state
"""

from __future__ import annotations

from fastapi import Header, Request

from assistant_relay.common.config import Settings
from assistant_relay.common.errors import AuthError
from assistant_relay.common.logging import get_project_logger
from assistant_relay.common.security import CallerIdentity, CredentialVerifier, extract_bearer
from assistant_relay.domain.enums import SessionKind
from assistant_relay.relay.session import RelaySession
from assistant_relay.services.identity_service import IdentityService
from assistant_relay.upstream.client import UpstreamClient

log = get_project_logger()


def _request_meta(request: Request | None) -> tuple[str, str, str | None]:
    if request is None:
        return "unknown", "UNKNOWN", None
    endpoint = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else None
    return endpoint, method, client_ip


def _audit_allow(*, request: Request | None, identity: CallerIdentity) -> None:
    endpoint, method, client_ip = _request_meta(request)
    log.info(
        "security_audit_allow",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "caller_id": identity.id,
                "client_ip": client_ip,
            }
        },
    )


def _audit_deny(*, request: Request | None, error: AuthError) -> None:
    endpoint, method, client_ip = _request_meta(request)
    log.warning(
        "security_audit_deny",
        extra={
            "payload": {
                "endpoint": endpoint,
                "method": method,
                "reason": error.kind.value,
                "error_code": error.code,
                "client_ip": client_ip,
            }
        },
    )


# =============================================================================
# ОБЩИЕ ЗАВИСИМОСТИ (создаются один раз в create_app)
# =============================================================================
def settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def verifier_dep(request: Request) -> CredentialVerifier:
    return request.app.state.verifier


def upstream_dep(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def identity_service_dep(request: Request) -> IdentityService:
    return request.app.state.identity


# =============================================================================
# АВТОРИЗАЦИЯ
# =============================================================================
def auth_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> CallerIdentity:
    """
    Проверка Bearer-токена для обычных (не relay) ручек.
    """
    try:
        identity = verifier_dep(request).verify(extract_bearer(authorization))
    except AuthError as e:
        _audit_deny(request=request, error=e)
        raise
    _audit_allow(request=request, identity=identity)
    return identity


def _relay_session(request: Request, authorization: str | None, kind: SessionKind) -> RelaySession:
    session = RelaySession(
        verifier=verifier_dep(request),
        upstream=upstream_dep(request),
        kind=kind,
    )
    try:
        identity = session.authenticate(authorization)
    except AuthError as e:
        _audit_deny(request=request, error=e)
        raise
    _audit_allow(request=request, identity=identity)
    return session


def chat_session_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> RelaySession:
    return _relay_session(request, authorization, SessionKind.chat)


def transcription_session_dep(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> RelaySession:
    return _relay_session(request, authorization, SessionKind.transcription)
