"""
Утилиты безопасности и авторизации.

- Bearer-токен: HS256 JWT с claims {id, email, iat, exp}
- проверка токена чистая: зависит только от (token, secret, now), без I/O
- хэши паролей для identity store (PBKDF2-SHA256 с солью)
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import jwt

from .errors import AuthError, AuthErrorKind
from .time import utc_now

JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=7)

_PBKDF2_ALGO = "pbkdf2_sha256"
_PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class CallerIdentity:
    id: int
    email: str


def extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    prefix = "bearer "
    if authorization.lower().startswith(prefix):
        return authorization[len(prefix) :].strip() or None
    return None


def issue_token(
    identity: CallerIdentity,
    *,
    secret: str,
    ttl: timedelta = DEFAULT_TOKEN_TTL,
    now: datetime | None = None,
) -> str:
    """
    Выпустить токен для пользователя (register/login).
    """
    issued_at = now or utc_now()
    payload = {
        "id": identity.id,
        "email": identity.email,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + ttl).timestamp()),
    }
    return str(jwt.encode(payload, secret, algorithm=JWT_ALGORITHM))


class CredentialVerifier:
    """
    Проверка bearer-токена.

    Секрет и часы передаются явно; общий изменяемый стейт отсутствует.
    """

    def __init__(
        self,
        secret: str,
        *,
        leeway_sec: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._secret = secret
        self._leeway = max(0, int(leeway_sec))
        self._clock = clock

    def verify(self, token: str | None) -> CallerIdentity:
        token = (token or "").strip()
        if not token or token.count(".") != 2:
            raise AuthError(AuthErrorKind.missing)

        claims = self._decode(token)

        exp = claims.get("exp")
        now_ts = self._clock().timestamp()
        if not isinstance(exp, int | float) or exp <= now_ts - self._leeway:
            raise AuthError(AuthErrorKind.invalid, details={"reason": "expired"})

        try:
            caller_id = int(claims["id"])
            email = str(claims["email"])
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(AuthErrorKind.invalid, details={"reason": "claims"}) from e
        if not email:
            raise AuthError(AuthErrorKind.invalid, details={"reason": "claims"})
        return CallerIdentity(id=caller_id, email=email)

    def _decode(self, token: str) -> dict[str, Any]:
        # exp/iat/nbf проверяем сами по инжектируемым часам
        options = {
            "verify_exp": False,
            "verify_iat": False,
            "verify_nbf": False,
            "require": ["exp"],
        }
        try:
            return jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM], options=options)
        except jwt.InvalidSignatureError as e:
            raise AuthError(AuthErrorKind.invalid, details={"reason": "signature"}) from e
        except jwt.DecodeError as e:
            # InvalidSignatureError наследует DecodeError, ловим его выше
            raise AuthError(AuthErrorKind.missing, details={"reason": "malformed"}) from e
        except jwt.PyJWTError as e:
            raise AuthError(AuthErrorKind.invalid, details={"err": str(e)[:200]}) from e


def hash_password(password: str, *, iterations: int = _PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{_PBKDF2_ALGO}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, iterations, salt, expected = password_hash.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algo != _PBKDF2_ALGO:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), rounds)
    return hmac.compare_digest(digest.hex(), expected)
