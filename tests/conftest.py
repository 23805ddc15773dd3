"""Pytest fixtures for proxy tests.

Datasources are faked with an httpx.MockTransport that dispatches each
upstream request to a handler registered for its host, so the proxy can be
exercised end to end through FastAPI's TestClient without opening sockets.
"""

from __future__ import annotations

import inspect
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from main import create_app


class ChunkedBody(httpx.AsyncByteStream):
    """Upstream body delivered in pieces, as a real socket would."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def streamed(response: httpx.Response) -> httpx.Response:
    """Re-wrap an already read response so its body can be streamed again."""
    if not response.is_stream_consumed:
        return response
    return httpx.Response(response.status_code, headers=response.headers, stream=ChunkedBody([response.content]))


class FakeDatasources:
    """Records upstream requests and answers them per host."""

    def __init__(self):
        self.handlers: Dict[str, Callable] = {}
        self.calls: List[httpx.Request] = []

    def add(self, host: str, handler: Callable) -> str:
        self.handlers[host] = handler
        return f"http://{host}"

    def text(self, host: str, body: str) -> str:
        return self.add(host, lambda request: httpx.Response(200, text=body))

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        response = self.handlers[request.url.host](request)
        if inspect.isawaitable(response):
            response = await response
        return streamed(response)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def hosts_called(self) -> List[str]:
        return [request.url.host for request in self.calls]


@pytest.fixture
def fake_datasources():
    return FakeDatasources()


@pytest.fixture
def make_proxy(fake_datasources):
    """Factory returning a started TestClient for the given datasources."""
    clients = []

    def _make(datasources, **kwargs) -> TestClient:
        app = create_app(datasources, transport=fake_datasources.transport, **kwargs)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


def rfc3339_ago(**delta) -> str:
    """RFC3339 timestamp for now minus the given timedelta arguments."""
    t = datetime.now(timezone.utc) - timedelta(**delta)
    return t.strftime("%Y-%m-%dT%H:%M:%SZ")
