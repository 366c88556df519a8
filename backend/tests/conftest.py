# tests/conftest.py
import json
import os
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from starlette.websockets import WebSocketState

from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.events import EventEmitter
from wacommerce.websocket.server import RealtimeServer


@pytest.fixture(scope="session", autouse=True)
def mock_env_vars():
    mock_settings = {
        "PROJECT_NAME": "WaCommerce Test",
        "API_V1_STR": "/api/v1",
        "LOG_LEVEL": "DEBUG",
        "EVENTS_API_KEY": "test-events-key",
        "COMMERCE_API_URL": "http://commerce.test",
    }
    with patch.dict(os.environ, mock_settings):
        yield


class FakeSocket:
    """In-memory stand-in for a Starlette WebSocket."""

    def __init__(self):
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent: List[str] = []
        self.close_code: Optional[int] = None

    async def send_text(self, frame: str) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket closed")
        self.sent.append(frame)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(f) for f in self.sent]

    def types(self) -> List[str]:
        return [f["type"] for f in self.frames()]

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames() if f["type"] == type_]


class FakeCommerceAPI:
    """
    Routes commerce API paths to canned JSON replies and records every call.
    A reply body may also be a callable taking the request payload and
    returning the body, for per-call answers.
    """

    def __init__(self):
        self.replies: Dict[str, Any] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def reply(self, path: str, body: Any, status_code: int = 200) -> None:
        self.replies[path] = (status_code, body)

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [payload for p, payload in self.calls if p == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.lstrip("/")
        payload = json.loads(request.content or b"{}")
        self.calls.append((path, payload))
        status_code, body = self.replies.get(path, (404, {"success": False, "error": f"no route {path}"}))
        if callable(body):
            body = body(payload)
        return httpx.Response(status_code, json=body)


@pytest.fixture
def socket_factory():
    return FakeSocket


@pytest_asyncio.fixture
async def server():
    realtime = RealtimeServer(history_size=100, replay_size=10, heartbeat_interval=30.0)
    yield realtime
    await realtime.stop()


@pytest.fixture
def fake_commerce() -> FakeCommerceAPI:
    return FakeCommerceAPI()


@pytest_asyncio.fixture
async def commerce_client(fake_commerce: FakeCommerceAPI):
    client = CommerceAPIClient("http://commerce.test", api_key="test-key", transport=httpx.MockTransport(fake_commerce.handler))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def events():
    """Bridge that never reaches a dashboard: emitted events stay queued for inspection."""
    bridge = EventEmitter("http://dashboard.test", transport=httpx.MockTransport(lambda r: httpx.Response(202)))
    yield bridge
    await bridge.stop()
