"""
API Gateway relay (FastAPI).

Функции:
- /health, /metrics
- /api/auth/* и /api/me: выдача и проверка токенов
- /api/chat: стриминговый relay к LLM
- /api/whisper: relay транскрипции к STT

Все общие зависимости (Settings, verifier, upstream client, identity store)
создаются один раз в create_app и лежат в app.state только для чтения.
"""

from __future__ import annotations

from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api_gateway.routers.auth import router as auth_router
from apps.api_gateway.routers.chat import router as chat_router
from apps.api_gateway.routers.transcription import router as transcription_router
from assistant_relay.common.config import DEV_JWT_SECRET, Settings, get_settings
from assistant_relay.common.errors import (
    AppError,
    AuthError,
    ConflictError,
    ErrCode,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from assistant_relay.common.logging import get_project_logger, setup_logging
from assistant_relay.common.metrics import setup_metrics_endpoint
from assistant_relay.common.security import CredentialVerifier
from assistant_relay.services.identity_service import IdentityService
from assistant_relay.storage.db import create_db_engine, init_db, make_session_factory
from assistant_relay.upstream.client import UpstreamClient

log = get_project_logger()


def _parse_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in (raw or "").split(",") if o.strip()]
    return origins or ["*"]


def _cors_params(settings: Settings) -> tuple[list[str], bool]:
    allow_origins = _parse_origins(settings.cors_allowed_origins)
    allow_credentials = bool(settings.cors_allow_credentials)

    if settings.is_prod and "*" in allow_origins:
        raise RuntimeError("CORS wildcard '*' запрещён в APP_ENV=prod")

    # '*' нельзя использовать вместе с credentials=true
    if "*" in allow_origins:
        allow_credentials = False

    return allow_origins, allow_credentials


def _status_for(err: AppError) -> int:
    if isinstance(err, AuthError):
        return 401
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, ConflictError):
        return 409
    if isinstance(err, UpstreamError):
        return 502
    return 500


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            log.error(
                "request_failed",
                extra={
                    "payload": {
                        "endpoint": request.url.path,
                        "code": exc.code,
                        "details": exc.details,
                    }
                },
            )
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "code": exc.code},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "invalid request"))
        return JSONResponse(
            status_code=400,
            content={"error": message, "code": ErrCode.VALIDATION},
        )


def create_app(
    settings: Settings | None = None,
    *,
    upstream: UpstreamClient | None = None,
    verifier: CredentialVerifier | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Assistant Relay", version="0.1.0")
    allow_origins, allow_credentials = _cors_params(settings)

    if settings.is_prod and settings.jwt_secret == DEV_JWT_SECRET:
        log.warning("jwt_secret_is_dev_default")

    engine = create_db_engine(settings.database_dsn)
    init_db(engine)
    session_factory = make_session_factory(engine)
    log.info("db_ready")

    app.state.settings = settings
    app.state.verifier = verifier or CredentialVerifier(
        settings.jwt_secret, leeway_sec=settings.jwt_clock_skew_sec
    )
    app.state.upstream = upstream or UpstreamClient(settings)
    app.state.identity = IdentityService(settings, session_factory)

    # CORS (настраивается через ENV; в prod wildcard запрещён)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=allow_credentials,
    )

    setup_metrics_endpoint(app, service=settings.service_name)
    _install_error_handlers(app)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True}

    app.include_router(auth_router, prefix="/api")
    app.include_router(chat_router, prefix="/api")
    app.include_router(transcription_router, prefix="/api")

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
