"""
app.services.registry
~~~~~~~~~~~~~~~~~~~~~

房间注册表：进程内唯一的房间表，负责房间创建、听众加入、离开记账与超时回收。

注册表由 lifespan 创建后注入给消息路由与回收器，不做模块级单例。
连接的角色和所属房间记录在注册表自己的会话表中（``client_id → ConnectionSession``），
房间只以连接作为路由目标，不控制连接的生命周期。

所有读改写操作都在同一把锁内完成，每个操作对同一房间码是原子的。
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable

from app.core.exceptions import ROOM_OCCUPIED, RoomNotFoundError
from app.core.logging import get_logger
from app.schemas.signaling import RoomInfoData
from app.services.identity import SignalingConnection, identity_of
from app.services.room import (
    ListenerEntry,
    Role,
    Room,
    generate_room_code,
    normalize_room_code,
)

logger = get_logger(__name__)


class ConnectionSession:
    """连接在注册表中的会话记录。

    Attributes:
        role: 当前角色。
        room_code: 所属房间码，未加入任何房间时为 ``None``。
    """

    def __init__(self, role: Role = Role.UNASSIGNED, room_code: str | None = None) -> None:
        self.role = role
        self.room_code = room_code

    def __repr__(self) -> str:
        return f"ConnectionSession(role={self.role.value}, room_code={self.room_code})"


class JoinResult:
    """``join_room`` / ``resume_room`` 的结果。"""

    def __init__(
        self,
        success: bool,
        room: Room | None = None,
        listener_id: str | None = None,
        error: str | None = None,
    ) -> None:
        self.success = success
        self.room = room
        self.listener_id = listener_id
        self.error = error

    @classmethod
    def fail(cls, error: str) -> JoinResult:
        return cls(success=False, error=error)


class LeaveResult:
    """``leave_room`` 的结果。

    Attributes:
        role: 离开者离开前的角色。
        notified_listeners: 主播离开时需要通知的听众连接。
        removed_listener: 听众离开时被移除的成员信息。
        room: 离开的房间（已不存在时为 ``None``）。
    """

    def __init__(
        self,
        role: Role = Role.UNASSIGNED,
        notified_listeners: list[SignalingConnection] | None = None,
        removed_listener: ListenerEntry | None = None,
        room: Room | None = None,
    ) -> None:
        self.role = role
        self.notified_listeners = notified_listeners or []
        self.removed_listener = removed_listener
        self.room = room


class RoomRegistry:
    """进程内房间表。

    Attributes:
        default_listener_name: 听众未提供昵称时使用的名字。
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        default_listener_name: str = "Anonymous",
    ) -> None:
        self.default_listener_name = default_listener_name
        self._clock = clock
        self._rooms: dict[str, Room] = {}
        self._sessions: dict[str, ConnectionSession] = {}
        self._lock = threading.RLock()

    # ── 会话表 ────────────────────────────────────────────────────────

    def session_of(self, connection: SignalingConnection) -> ConnectionSession:
        """返回连接的会话记录（不存在则视为未分配角色）。"""
        with self._lock:
            return self._sessions.get(identity_of(connection)) or ConnectionSession()

    def forget(self, connection: SignalingConnection) -> None:
        """连接关闭后丢弃其会话记录。"""
        with self._lock:
            self._sessions.pop(identity_of(connection), None)

    def _assign(self, connection: SignalingConnection, role: Role, room_code: str | None) -> None:
        self._sessions[identity_of(connection)] = ConnectionSession(role, room_code)

    # ── 房间操作 ──────────────────────────────────────────────────────

    def create_room(self, connection: SignalingConnection) -> str:
        """以该连接为主播创建新房间，返回房间码。总是成功。"""
        with self._lock:
            room_code = generate_room_code()
            while room_code in self._rooms:
                logger.warning("房间码冲突，重新生成 | code=%s", room_code)
                room_code = generate_room_code()

            self._rooms[room_code] = Room(room_code, connection, now=self._clock())
            self._assign(connection, Role.BROADCASTER, room_code)
            logger.info("房间已创建 | room=%s | broadcaster=%s", room_code, identity_of(connection))
            return room_code

    def require_room(self, room_code: str) -> Room:
        """按房间码（大小写不敏感）取房间。

        Raises:
            RoomNotFoundError: 房间不存在。
        """
        code = normalize_room_code(room_code)
        with self._lock:
            room = self._rooms.get(code)
        if room is None:
            raise RoomNotFoundError(code)
        return room

    def join_room(
        self,
        connection: SignalingConnection,
        room_code: str,
        display_name: str | None = None,
    ) -> JoinResult:
        """以听众身份加入房间。

        主播不在场时也允许加入（房间仍处于保留期，主播可能回来）。
        """
        with self._lock:
            try:
                room = self.require_room(room_code)
            except RoomNotFoundError as e:
                logger.info("加入失败，房间不存在 | room=%s", e.room_code)
                return JoinResult.fail(str(e))

            now = self._clock()
            listener_id = identity_of(connection)
            room.listeners[listener_id] = ListenerEntry(
                listener_id=listener_id,
                name=display_name or self.default_listener_name,
                joined_at=now,
                connection=connection,
            )
            self._assign(connection, Role.LISTENER, room.room_code)
            room.touch(now)
            logger.info(
                "听众加入 | room=%s | listener=%s | 主播在场: %s | 听众数: %d",
                room.room_code, listener_id, room.broadcaster is not None, room.listener_count,
            )
            return JoinResult(success=True, room=room, listener_id=listener_id)

    def resume_room(self, connection: SignalingConnection, room_code: str) -> JoinResult:
        """主播重连：接管一个仍在保留期内、主播位空缺的房间。"""
        with self._lock:
            try:
                room = self.require_room(room_code)
            except RoomNotFoundError as e:
                return JoinResult.fail(str(e))
            if room.broadcaster is not None:
                return JoinResult.fail(ROOM_OCCUPIED)

            room.broadcaster = connection
            self._assign(connection, Role.BROADCASTER, room.room_code)
            room.touch(self._clock())
            logger.info("主播回到房间 | room=%s | broadcaster=%s", room.room_code, identity_of(connection))
            return JoinResult(success=True, room=room)

    def leave_room(self, connection: SignalingConnection) -> LeaveResult:
        """按连接记录的角色处理离开。房间本身不会在这里被删除。"""
        with self._lock:
            session = self._sessions.get(identity_of(connection))
            if session is None or session.room_code is None:
                return LeaveResult()

            role = session.role
            room = self._rooms.get(session.room_code)
            self._assign(connection, Role.UNASSIGNED, None)
            if room is None:
                return LeaveResult(role=role)

            now = self._clock()
            if role is Role.BROADCASTER:
                if room.broadcaster is not connection:
                    # 房间已被新的主播接管
                    return LeaveResult(role=role, room=room)
                room.broadcaster = None
                room.touch(now)
                logger.info(
                    "主播离开 | room=%s | 剩余听众: %d | 房间保留",
                    room.room_code, room.listener_count,
                )
                return LeaveResult(
                    role=role,
                    notified_listeners=room.listener_connections(),
                    room=room,
                )

            removed = room.listeners.pop(identity_of(connection), None)
            room.touch(now)
            if room.is_empty:
                logger.info("房间内所有人已离开 | room=%s | 房间保留", room.room_code)
            return LeaveResult(role=role, removed_listener=removed, room=room)

    def get_room(self, room_code: str) -> Room | None:
        """纯查询，不做任何修改。"""
        with self._lock:
            return self._rooms.get(normalize_room_code(room_code))

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有房间的摘要信息。"""
        with self._lock:
            return [room.info() for room in self._rooms.values()]

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    # ── 回收 ──────────────────────────────────────────────────────────

    def cleanup_old_rooms(self, persistence_timeout: float) -> int:
        """回收无人时长超过 ``persistence_timeout`` 秒的房间，返回回收数。"""
        with self._lock:
            now = self._clock()
            expired = [
                code for code, room in self._rooms.items()
                if room.abandoned_at is not None and now - room.abandoned_at > persistence_timeout
            ]
            for code in expired:
                self._evict(code)
                logger.info("回收无人房间 | room=%s", code)
            return len(expired)

    def cleanup_expired_rooms(self, max_age: float) -> list[Room]:
        """兜底扫描：回收创建时长超过 ``max_age`` 秒的房间，不论是否有人。

        返回被回收的房间，其成员连接仍保留在房间对象上，供调用方发送关闭通知。
        """
        with self._lock:
            now = self._clock()
            expired = [
                code for code, room in self._rooms.items()
                if now - room.created_at > max_age
            ]
            evicted: list[Room] = []
            for code in expired:
                evicted.append(self._evict(code))
                logger.warning("房间超过最大存活时长，强制回收 | room=%s", code)
            return evicted

    def _evict(self, room_code: str) -> Room:
        room = self._rooms.pop(room_code)
        members = room.listener_connections()
        if room.broadcaster is not None:
            members.append(room.broadcaster)
        for member in members:
            session = self._sessions.get(identity_of(member))
            if session is not None and session.room_code == room_code:
                self._assign(member, Role.UNASSIGNED, None)
        return room
