"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures：可控时钟、注册表、路由器，以及记录出站消息的假连接。
"""
from __future__ import annotations

import json
import os
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.websockets import WebSocketState

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.services.identity import SignalingConnection  # noqa: E402
from app.services.message_router import MessageRouter  # noqa: E402
from app.services.registry import RoomRegistry  # noqa: E402


class FakeClock:
    """手动推进的时钟，单位为秒。"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection(SignalingConnection):
    """底层 WebSocket 为 mock 的信令连接，记录所有发出的 JSON。"""

    def __init__(self, open_: bool = True) -> None:
        websocket = MagicMock()
        websocket.send_text = AsyncMock()
        super().__init__(websocket)
        self.set_open(open_)

    def set_open(self, open_: bool) -> None:
        state = WebSocketState.CONNECTED if open_ else WebSocketState.DISCONNECTED
        self.websocket.client_state = state
        self.websocket.application_state = state

    @property
    def sent(self) -> list[dict[str, Any]]:
        return [json.loads(call.args[0]) for call in self.websocket.send_text.call_args_list]

    def clear(self) -> None:
        self.websocket.send_text.reset_mock()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(clock: FakeClock) -> RoomRegistry:
    return RoomRegistry(clock=clock)


@pytest.fixture()
def message_router(registry: RoomRegistry, clock: FakeClock) -> MessageRouter:
    return MessageRouter(registry, clock=clock)


@pytest.fixture()
def make_connection() -> Callable[..., FakeConnection]:
    """返回一个构造假连接的工厂。"""
    return FakeConnection


def assert_abandonment_invariant(room: Any) -> None:
    """``abandoned_at`` 非空 当且仅当 没有主播且没有听众。"""
    assert (room.abandoned_at is not None) == (room.broadcaster is None and not room.listeners)


@pytest.fixture()
def check_invariant() -> Callable[[Any], None]:
    return assert_abandonment_invariant
