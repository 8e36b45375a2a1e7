"""
app.services.message_router
~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令消息路由：按 ``type`` 分发入站消息。

- ``create-room`` / ``join-room`` / ``resume-room`` / ``leave-room`` → 修改 ``RoomRegistry``
- ``offer`` / ``answer`` / ``ice-candidate``                          → 在主播与指定听众之间原样转发
- ``chat-message``                                                   → 扇出给房间内所有人（不做自回显抑制）
- 未知类型                                                            → 忽略，不回任何消息

路由器本身不持有状态，所有房间状态都在注入的注册表里。
发送是尽力而为的：目标不在或连接已关闭时只记日志，不重试、不排队。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import ValidationError

from app.core.exceptions import ROOM_EXPIRED, MalformedMessageError
from app.core.logging import get_logger
from app.schemas.signaling import (
    BroadcasterLeft,
    BroadcasterReturned,
    ChatMessageOut,
    ChatMessageRequest,
    ErrorMessage,
    JoinRoomRequest,
    ListenerLeft,
    NewListener,
    OutboundMessage,
    RoomCodeRequest,
    RoomCreated,
    RoomJoined,
    RoomResumed,
    SignalingEnvelope,
    SignalRequest,
)
from app.services.identity import SignalingConnection, identity_of
from app.services.registry import RoomRegistry
from app.services.room import Role, Room, normalize_room_code, to_millis

logger = get_logger(__name__)

SIGNAL_TYPES: frozenset[str] = frozenset({"offer", "answer", "ice-candidate"})

Handler = Callable[[SignalingConnection, SignalingEnvelope], Awaitable[None]]


def parse_message(raw: str | bytes) -> SignalingEnvelope:
    """把一帧文本解析为信封。

    Raises:
        MalformedMessageError: 不是 UTF-8 JSON 对象，或没有可用的 ``type``。
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return SignalingEnvelope.model_validate_json(raw)
    except (UnicodeDecodeError, ValidationError) as e:
        raise MalformedMessageError(str(e)) from e


class MessageRouter:
    """信令消息路由器。

    Attributes:
        registry: 注入的房间注册表。
    """

    def __init__(self, registry: RoomRegistry, clock: Callable[[], float] = time.time) -> None:
        self.registry = registry
        self._clock = clock
        self._handlers: dict[str, Handler] = {
            "create-room": self._handle_create_room,
            "join-room": self._handle_join_room,
            "resume-room": self._handle_resume_room,
            "chat-message": self._handle_chat_message,
            "leave-room": self._handle_leave_room,
        }
        for signal_type in SIGNAL_TYPES:
            self._handlers[signal_type] = self._handle_signal

    # ── 入口 ──────────────────────────────────────────────────────────

    async def dispatch(self, connection: SignalingConnection, raw: str | bytes) -> None:
        """解析并路由一帧入站消息。任何单条消息的错误都不会影响连接本身。"""
        try:
            envelope = parse_message(raw)
        except MalformedMessageError as e:
            logger.warning("丢弃无法解析的消息: %s", e)
            return

        try:
            await self.route(connection, envelope)
        except Exception as e:
            logger.error("处理消息异常 | type=%s | %s", envelope.type, e, exc_info=True)

    async def route(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        """按消息类型分发；字段不合法的消息视为格式错误直接丢弃。"""
        handler = self._handlers.get(envelope.type)
        if handler is None:
            logger.debug("忽略未知消息类型 | type=%s", envelope.type)
            return

        logger.debug(
            "收到消息 | type=%s | role=%s",
            envelope.type, self.registry.session_of(connection).role.value,
        )
        try:
            await handler(connection, envelope)
        except ValidationError as e:
            logger.warning("消息字段不合法，已丢弃 | type=%s | %d 个错误", envelope.type, e.error_count())

    async def handle_disconnect(self, connection: SignalingConnection) -> None:
        """传输层关闭：执行与 ``leave-room`` 相同的离开流程，然后丢弃会话记录。"""
        try:
            await self._leave(connection, disconnected=True)
        finally:
            self.registry.forget(connection)

    async def close_expired_room(self, room: Room) -> None:
        """通知被强制回收房间的成员：听众收到 ``broadcaster-left``，主播收到错误。"""
        await asyncio.gather(
            self._fan_out(room.listener_connections(), BroadcasterLeft()),
            self._send(room.broadcaster, ErrorMessage(message=ROOM_EXPIRED)),
        )

    # ── 房间管理 ──────────────────────────────────────────────────────

    async def _handle_create_room(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        await self._leave_previous(connection)
        room_code = self.registry.create_room(connection)
        await self._send(connection, RoomCreated(room_code=room_code))

    async def _handle_join_room(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        request = JoinRoomRequest.model_validate(envelope.payload())

        # 目标房间存在时才退出旧房间，加入失败不应丢掉原有成员身份
        if self.registry.get_room(request.room_code) is not None:
            await self._leave_previous(connection)

        result = self.registry.join_room(connection, request.room_code, request.user_name)
        if not result.success or result.room is None or result.listener_id is None:
            await self._send(connection, ErrorMessage(message=result.error or "Join failed"))
            return

        room = result.room
        entry = room.listeners[result.listener_id]
        snapshot = room.listener_snapshot()

        await self._send(connection, RoomJoined(room_code=room.room_code, listeners=snapshot))

        others = [c for c in room.listener_connections() if c is not connection]
        notice = NewListener(listener_id=entry.listener_id, user_name=entry.name, listeners=snapshot)
        await self._fan_out([room.broadcaster, *others], notice)

    async def _handle_resume_room(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        request = RoomCodeRequest.model_validate(envelope.payload())

        if self.registry.get_room(request.room_code) is not None:
            await self._leave_previous(connection)

        result = self.registry.resume_room(connection, request.room_code)
        if not result.success or result.room is None:
            await self._send(connection, ErrorMessage(message=result.error or "Resume failed"))
            return

        room = result.room
        await self._send(
            connection, RoomResumed(room_code=room.room_code, listeners=room.listener_snapshot()),
        )
        await self._fan_out(room.listener_connections(), BroadcasterReturned())

    async def _handle_leave_room(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        await self._leave(connection, disconnected=False)

    async def _leave_previous(self, connection: SignalingConnection) -> None:
        """连接已在某个房间时，先按正常流程离开。"""
        if self.registry.session_of(connection).room_code is not None:
            await self._leave(connection, disconnected=False)

    async def _leave(self, connection: SignalingConnection, disconnected: bool) -> None:
        result = self.registry.leave_room(connection)

        if result.role is Role.BROADCASTER:
            notice = BroadcasterLeft(type="broadcaster-disconnected" if disconnected else "broadcaster-left")
            await self._fan_out(result.notified_listeners, notice)
        elif result.role is Role.LISTENER and result.removed_listener is not None and result.room is not None:
            room = result.room
            notice = ListenerLeft(
                listener_id=result.removed_listener.listener_id,
                user_name=result.removed_listener.name,
                listeners=room.listener_snapshot(),
            )
            await self._fan_out([room.broadcaster, *room.listener_connections()], notice)

    # ── 转发 ──────────────────────────────────────────────────────────

    async def _handle_signal(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        session = self.registry.session_of(connection)
        if session.room_code is None or session.role is Role.UNASSIGNED:
            logger.warning("未加入房间的连接发送了 %s，已丢弃", envelope.type)
            return

        room = self.registry.get_room(session.room_code)
        if room is None:
            logger.warning("房间已不存在，丢弃 %s | room=%s", envelope.type, session.room_code)
            return

        payload = envelope.payload()
        if session.role is Role.BROADCASTER:
            target_id = SignalRequest.model_validate(payload).target_id
            if not target_id:
                logger.warning("主播发送的 %s 缺少 targetId，已丢弃 | room=%s", envelope.type, room.room_code)
                return
            target = room.find_listener(target_id)
            if await self._deliver(target, payload):
                logger.debug("已转发 %s → 听众 %s", envelope.type, target_id)
        elif session.role is Role.LISTENER:
            # 服务端写入的 senderId 覆盖客户端自带的同名字段
            message = {**payload, "senderId": identity_of(connection)}
            if await self._deliver(room.broadcaster, message):
                logger.debug("已转发 %s → 主播 | room=%s", envelope.type, room.room_code)

    async def _handle_chat_message(self, connection: SignalingConnection, envelope: SignalingEnvelope) -> None:
        session = self.registry.session_of(connection)
        room = self.registry.get_room(session.room_code) if session.room_code else None
        if room is None:
            logger.warning("发送者不在任何房间，丢弃聊天消息")
            return

        request = ChatMessageRequest.model_validate(envelope.payload())
        if request.room_code and normalize_room_code(request.room_code) != room.room_code:
            logger.debug("聊天消息自带的房间码与所在房间不符，按所在房间投递 | claimed=%s", request.room_code)
        sender_id = identity_of(connection)
        sender_name = request.user_name
        if sender_name is None and sender_id in room.listeners:
            sender_name = room.listeners[sender_id].name

        chat = ChatMessageOut(
            sender_id=sender_id,
            sender_name=sender_name,
            message=request.message,
            timestamp=to_millis(self._clock()),
        )
        delivered = await self._fan_out([room.broadcaster, *room.listener_connections()], chat)
        logger.debug("聊天消息已扇出 | room=%s | 送达: %d", room.room_code, delivered)

    # ── 发送 ──────────────────────────────────────────────────────────

    async def _send(self, connection: SignalingConnection | None, message: OutboundMessage) -> bool:
        return await self._deliver(connection, message.to_wire())

    async def _fan_out(
        self,
        connections: Iterable[SignalingConnection | None],
        message: OutboundMessage,
    ) -> int:
        """向多个连接发送同一条消息，返回成功送达数。"""
        wire = message.to_wire()
        results = await asyncio.gather(*(self._deliver(c, wire) for c in connections))
        return sum(results)

    async def _deliver(self, connection: SignalingConnection | None, message: dict[str, Any]) -> bool:
        """尽力发送：目标不存在、已关闭或发送失败时记日志并返回 ``False``。"""
        if connection is None or not connection.is_open:
            logger.debug("目标不可达，丢弃 %s", message.get("type"))
            return False
        try:
            await connection.send_json(message)
        except Exception as e:
            logger.warning("发送失败，跳过该连接 | target=%s | %s", connection.client_id, e)
            return False
        return True
