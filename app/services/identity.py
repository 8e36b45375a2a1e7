"""
app.services.identity
~~~~~~~~~~~~~~~~~~~~~

信令连接与连接标识。

``SignalingConnection`` 包装一条 FastAPI ``WebSocket``，只持有自身的标识，
角色与所属房间由 ``RoomRegistry`` 的会话表记录，连接对象本身不承载任何房间状态。
"""
from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import WebSocket
from fastapi.websockets import WebSocketState


def generate_client_id() -> str:
    """生成随机的不透明连接标识（只保证同时在线的连接之间实际不重复）。"""
    return uuid.uuid4().hex[:12]


class SignalingConnection:
    """一条信令连接（主播或听众）。

    Attributes:
        websocket: 底层 WebSocket 连接。
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._client_id: str | None = None

    @property
    def client_id(self) -> str:
        """连接标识，首次访问时生成，之后在连接生命周期内保持不变。"""
        if self._client_id is None:
            self._client_id = generate_client_id()
        return self._client_id

    @property
    def is_open(self) -> bool:
        """连接两端是否都处于已连接状态。"""
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict[str, Any]) -> None:
        """发送一个 JSON 对象（一帧一个对象）。"""
        await self.websocket.send_text(json.dumps(message, ensure_ascii=False))

    def __repr__(self) -> str:
        return f"<SignalingConnection {self.client_id}>"


def identity_of(connection: SignalingConnection) -> str:
    """返回连接的稳定标识。"""
    return connection.client_id
