"""
app.api.signaling_ws
~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 接口：连接生命周期处理。

提供 ``/`` 与 ``/ws`` 两个等价端点。每条连接上的每一帧都交给 ``MessageRouter``；
连接关闭时执行与 ``leave-room`` 相同的离开流程（主播断线时听众收到
``broadcaster-disconnected``），该流程不受连接任务取消的影响。
连接错误只记录日志，重连由客户端负责。

消息协议:
  - 一帧一个 UTF-8 JSON 对象，必须带 ``type`` 字段
  - 无法解析的帧直接丢弃，不回任何消息，连接保持
"""
from __future__ import annotations

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.logging import connection_id_ctx_var, get_logger
from app.services.identity import SignalingConnection
from app.services.message_router import MessageRouter

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/")
@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """WebSocket 信令端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    message_router: MessageRouter = websocket.app.state.message_router

    await websocket.accept()
    connection = SignalingConnection(websocket)
    token = connection_id_ctx_var.set(connection.client_id)
    client = websocket.client
    logger.info(
        "新的信令连接 | from=%s | ua=%s",
        client.host if client else "-",
        websocket.headers.get("user-agent", "-"),
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await message_router.dispatch(connection, raw)
    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("信令连接异常: %s", e, exc_info=True)
    finally:
        # 连接任务可能已被服务器取消，离开通知必须发完
        with anyio.CancelScope(shield=True):
            await message_router.handle_disconnect(connection)
        logger.info("信令连接关闭")
        connection_id_ctx_var.reset(token)
