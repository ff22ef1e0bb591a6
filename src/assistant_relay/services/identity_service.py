"""
Identity store: регистрация, логин, профиль.

Внешний коллаборатор relay: создаёт пользователей и выдаёт им токены,
которые потом проверяет CredentialVerifier.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from assistant_relay.common.config import Settings
from assistant_relay.common.errors import (
    AuthError,
    AuthErrorKind,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from assistant_relay.common.security import (
    CallerIdentity,
    hash_password,
    issue_token,
    verify_password,
)
from assistant_relay.storage.db import db_session
from assistant_relay.storage.repositories import UserRepository

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    user: CallerIdentity


def _normalize_credentials(email: str | None, password: str | None) -> tuple[str, str]:
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password required")
    return email, password


class IdentityService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]) -> None:
        self._settings = settings
        self._factory = session_factory

    def _issue(self, identity: CallerIdentity) -> IssuedToken:
        token = issue_token(
            identity,
            secret=self._settings.jwt_secret,
            ttl=timedelta(days=self._settings.jwt_ttl_days),
        )
        return IssuedToken(token=token, user=identity)

    def register(self, email: str | None, password: str | None) -> IssuedToken:
        email, password = _normalize_credentials(email, password)
        try:
            with db_session(self._factory) as s:
                repo = UserRepository(s)
                if repo.get_by_email(email) is not None:
                    raise ConflictError("User already exists")
                user = repo.create(email=email, password_hash=hash_password(password))
                identity = CallerIdentity(id=user.id, email=user.email)
        except IntegrityError as e:
            # параллельная регистрация того же email
            raise ConflictError("User already exists") from e

        log.info("user_registered", extra={"payload": {"user_id": identity.id}})
        return self._issue(identity)

    def login(self, email: str | None, password: str | None) -> IssuedToken:
        email, password = _normalize_credentials(email, password)
        with db_session(self._factory) as s:
            user = UserRepository(s).get_by_email(email)
            if user is None or not verify_password(password, user.password_hash):
                raise AuthError(AuthErrorKind.invalid, "Invalid credentials")
            identity = CallerIdentity(id=user.id, email=user.email)
        return self._issue(identity)

    def get_user(self, user_id: int) -> CallerIdentity:
        with db_session(self._factory) as s:
            user = UserRepository(s).get(user_id)
            if user is None:
                raise NotFoundError("User not found")
            return CallerIdentity(id=user.id, email=user.email)
