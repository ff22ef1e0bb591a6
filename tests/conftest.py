from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable
from typing import Any

import pytest
import requests
from fastapi.testclient import TestClient

from apps.api_gateway.main import create_app
from assistant_relay.common.config import Settings, load_settings
from assistant_relay.common.security import CallerIdentity, CredentialVerifier, issue_token
from assistant_relay.upstream.client import UpstreamClient

TEST_SECRET = "relay-unit-tests-" + "0123456789abcdef" * 3


class FakeRaw:
    """
    Подмена urllib3-ответа: отдаёт заранее заданные куски через stream().
    Элемент-исключение бросается на своём месте; "block" ждёт close().
    """

    def __init__(self, chunks: Iterable[Any]) -> None:
        self._chunks = list(chunks)
        self.reads = 0
        self.closed = False
        self._closed_event = threading.Event()
        self.blocked = threading.Event()

    def stream(self, amt=None, decode_content=True):
        for item in self._chunks:
            if self.closed:
                return
            if item == "block":
                self.blocked.set()
                self._closed_event.wait(timeout=5)
                return
            if isinstance(item, BaseException):
                raise item
            self.reads += 1
            yield item

    def read(self, amt=None, decode_content=True):
        return b"".join(c for c in self._chunks if isinstance(c, bytes))

    def close(self) -> None:
        self.closed = True
        self._closed_event.set()

    def release_conn(self) -> None:
        return None


def make_response(
    status: int = 200,
    *,
    chunks: Iterable[Any] | None = None,
    body: bytes | str | dict | None = None,
    content_type: str = "text/event-stream",
) -> requests.Response:
    if isinstance(body, dict):
        body = json.dumps(body).encode("utf-8")
        content_type = "application/json"
    elif isinstance(body, str):
        body = body.encode("utf-8")
    resp = requests.Response()
    resp.status_code = status
    resp.headers["Content-Type"] = content_type
    resp.encoding = "utf-8"
    resp.url = "https://upstream.test/"
    resp.raw = FakeRaw(chunks if chunks is not None else [body or b""])
    return resp


class FakeHttp:
    """
    Подмена requests.Session: post/get отдают ответы по очереди, вызовы пишутся в calls.
    """

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self._next(url, kwargs)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self._next(url, kwargs)

    def _next(self, url: str, kwargs: dict[str, Any]) -> requests.Response:
        self.calls.append((url, kwargs))
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item()
        return item


def sse(content: str) -> bytes:
    frame = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(frame)}\n\n".encode()


@pytest.fixture()
def settings() -> Settings:
    return load_settings(
        jwt_secret=TEST_SECRET,
        openrouter_api_key="sk-or-test",
        openai_api_key="sk-openai-test",
        database_dsn="sqlite://",
        cors_allowed_origins="*",
        app_env="dev",
    )


@pytest.fixture()
def verifier() -> CredentialVerifier:
    return CredentialVerifier(TEST_SECRET)


@pytest.fixture()
def token() -> str:
    return issue_token(CallerIdentity(id=1, email="a@x.com"), secret=TEST_SECRET)


@pytest.fixture()
def make_upstream(settings) -> Callable[..., tuple[UpstreamClient, FakeHttp]]:
    def _make(*responses: Any) -> tuple[UpstreamClient, FakeHttp]:
        http = FakeHttp(*responses)
        return UpstreamClient(settings, http=http), http

    return _make


@pytest.fixture(name="make_response")
def make_response_fixture() -> Callable[..., requests.Response]:
    return make_response


@pytest.fixture(name="sse")
def sse_fixture() -> Callable[[str], bytes]:
    return sse


@pytest.fixture()
def make_client(settings) -> Callable[..., tuple[TestClient, FakeHttp]]:
    """
    Приложение с поддельным upstream: ответы провайдера отдаются по очереди.
    """

    def _make(*responses: Any, **overrides: Any) -> tuple[TestClient, FakeHttp]:
        s = settings.model_copy(update=overrides) if overrides else settings
        http = FakeHttp(*responses)
        app = create_app(s, upstream=UpstreamClient(s, http=http))
        return TestClient(app), http

    return _make
