"""
Регистрация / логин / профиль.

Identity store является внешним для relay коллаборатором; здесь только выдача токенов,
которые потом проверяются на /chat и /whisper.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from apps.api_gateway.deps import auth_dep, identity_service_dep
from assistant_relay.common.security import CallerIdentity
from assistant_relay.services.identity_service import IdentityService, IssuedToken

router = APIRouter()


class Credentials(BaseModel):
    email: str | None = None
    password: str | None = None


class UserOut(BaseModel):
    id: int
    email: str


class TokenResponse(BaseModel):
    token: str
    user: UserOut


class MeResponse(BaseModel):
    user: UserOut


def _token_response(issued: IssuedToken) -> TokenResponse:
    return TokenResponse(token=issued.token, user=UserOut(id=issued.user.id, email=issued.user.email))


@router.post("/auth/register", response_model=TokenResponse)
async def register(
    body: Credentials,
    identity: IdentityService = Depends(identity_service_dep),
) -> TokenResponse:
    issued = await asyncio.to_thread(identity.register, body.email, body.password)
    return _token_response(issued)


@router.post("/auth/login", response_model=TokenResponse)
async def login(
    body: Credentials,
    identity: IdentityService = Depends(identity_service_dep),
) -> TokenResponse:
    issued = await asyncio.to_thread(identity.login, body.email, body.password)
    return _token_response(issued)


@router.get("/me", response_model=MeResponse)
def me(
    caller: CallerIdentity = Depends(auth_dep),
    identity: IdentityService = Depends(identity_service_dep),
) -> MeResponse:
    user = identity.get_user(caller.id)
    return MeResponse(user=UserOut(id=user.id, email=user.email))
