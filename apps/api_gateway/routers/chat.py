"""
Стриминговый чат через upstream LLM.

Задача:
- открыть upstream-стрим в рамках relay-сессии
- отдавать байты клиенту как пришли (text/event-stream, без переупаковки)
- при отключении клиента отменить upstream

Первый кусок читаем до отправки заголовков: если upstream упал до первого
байта, клиент получает обычный JSON {"error": ...}, а не пустой стрим.
Пока ждём открытие и первый кусок, отдельно слушаем http.disconnect.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from apps.api_gateway.deps import chat_session_dep
from assistant_relay.domain.enums import ChatRole
from assistant_relay.relay.session import ClientDisconnected, RelaySession

router = APIRouter()

T = TypeVar("T")

# nginx-style "client closed request": ответ уже никто не прочитает
CLIENT_CLOSED_STATUS = 499

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class ChatMessageIn(BaseModel):
    role: ChatRole
    content: str | list[dict[str, Any]]


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    model: str | None = None


async def _wait_disconnect(request: Request) -> None:
    # тело запроса уже прочитано, дальше из receive() может прийти только disconnect
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


async def _run_unless_disconnected(
    request: Request,
    session: RelaySession,
    func: Callable[..., T],
    *args: Any,
) -> T:
    """
    Блокирующий шаг сессии в worker-потоке. Если клиент ушёл раньше,
    сессия отменяется, токен рвёт upstream, а поток доживает сам.
    """
    work = asyncio.ensure_future(asyncio.to_thread(func, *args))
    watcher = asyncio.ensure_future(_wait_disconnect(request))
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
    if work.done():
        return work.result()

    session.cancel("client_disconnected")
    work.add_done_callback(_consume_result)
    raise ClientDisconnected()


async def _relay_body(session: RelaySession, first: bytes | None) -> AsyncIterator[bytes]:
    # Отключение клиента отменяет эту корутину прямо на await:
    # поток с заблокированным read() бросаем, close() рвёт upstream-сокет.
    try:
        chunk = first
        while chunk is not None and not session.cancelled:
            yield chunk
            chunk = await asyncio.to_thread(session.next_chunk)
    finally:
        session.close()


@router.post("/chat")
async def chat(
    req: ChatRequest,
    request: Request,
    session: RelaySession = Depends(chat_session_dep),
) -> Response:
    messages = [m.model_dump(mode="json") for m in req.messages]
    try:
        await _run_unless_disconnected(request, session, session.open_chat, messages, req.model)
        first = await _run_unless_disconnected(request, session, session.next_chunk)
    except ClientDisconnected:
        session.close()
        return Response(status_code=CLIENT_CLOSED_STATUS)
    except BaseException:
        session.close()
        raise

    return StreamingResponse(
        _relay_body(session, first),
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
        background=BackgroundTask(session.close),
    )
