"""
app.services.room
~~~~~~~~~~~~~~~~~

信令房间领域模型。

一个 ``Room`` 至多有一名主播和任意名听众。主播离开后房间不会立即删除，
而是在无人状态下保留一段时间，等待主播用同一个房间码回来。
"""
from __future__ import annotations

import random
import string
from enum import Enum

from app.schemas.signaling import ListenerInfo, RoomInfoData
from app.services.identity import SignalingConnection

ROOM_CODE_LENGTH: int = 6
_BASE36_DIGITS: str = string.digits + string.ascii_lowercase

_random = random.SystemRandom()


def generate_room_code() -> str:
    """生成 6 位房间码：随机小数做 base-36 展开，取小数部分的前 6 位并转大写。"""
    fraction = _random.random()
    digits: list[str] = []
    for _ in range(ROOM_CODE_LENGTH):
        fraction *= 36
        digit = int(fraction)
        digits.append(_BASE36_DIGITS[digit])
        fraction -= digit
    return "".join(digits).upper()


def normalize_room_code(room_code: str) -> str:
    """房间码大小写不敏感，统一转为大写。"""
    return room_code.strip().upper()


def to_millis(timestamp: float) -> int:
    """秒级时间戳转为线上使用的毫秒时间戳。"""
    return int(timestamp * 1000)


class Role(str, Enum):
    """连接在房间中的角色。"""

    UNASSIGNED = "unassigned"
    BROADCASTER = "broadcaster"
    LISTENER = "listener"


class ListenerEntry:
    """听众在房间内的成员信息。

    Attributes:
        listener_id: 听众的连接标识。
        name: 显示昵称。
        joined_at: 加入时间（秒级时间戳）。
        connection: 听众连接，仅用于消息路由。
    """

    def __init__(
        self,
        listener_id: str,
        name: str,
        joined_at: float,
        connection: SignalingConnection,
    ) -> None:
        self.listener_id = listener_id
        self.name = name
        self.joined_at = joined_at
        self.connection = connection

    def info(self) -> ListenerInfo:
        return ListenerInfo(id=self.listener_id, name=self.name, joined_at=to_millis(self.joined_at))


class Room:
    """一个信令房间。

    Attributes:
        room_code: 房间码（大写）。
        broadcaster: 当前主播连接，主播离开后为 ``None``。
        listeners: 听众标识 → 成员信息，保持加入顺序。
        created_at: 创建时间。
        last_activity_at: 最近一次成员变动时间。
        abandoned_at: 房间进入无人状态的时间，有人时为 ``None``。
    """

    def __init__(self, room_code: str, broadcaster: SignalingConnection, now: float) -> None:
        self.room_code = room_code
        self.broadcaster: SignalingConnection | None = broadcaster
        self.listeners: dict[str, ListenerEntry] = {}
        self.created_at = now
        self.last_activity_at = now
        self.abandoned_at: float | None = None

    @property
    def is_empty(self) -> bool:
        """既没有主播也没有听众。"""
        return self.broadcaster is None and not self.listeners

    @property
    def listener_count(self) -> int:
        return len(self.listeners)

    def touch(self, now: float) -> None:
        """刷新活跃时间，并按当前成员情况同步 ``abandoned_at``。"""
        self.last_activity_at = now
        if self.is_empty:
            if self.abandoned_at is None:
                self.abandoned_at = now
        else:
            self.abandoned_at = None

    def listener_snapshot(self) -> list[ListenerInfo]:
        """按加入顺序返回听众快照。"""
        return [entry.info() for entry in self.listeners.values()]

    def listener_connections(self) -> list[SignalingConnection]:
        return [entry.connection for entry in self.listeners.values()]

    def find_listener(self, listener_id: str) -> SignalingConnection | None:
        """按听众标识查找其连接。"""
        entry = self.listeners.get(listener_id)
        return entry.connection if entry is not None else None

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_code=self.room_code,
            has_broadcaster=self.broadcaster is not None,
            listener_count=self.listener_count,
            created_at=to_millis(self.created_at),
            abandoned_at=to_millis(self.abandoned_at) if self.abandoned_at is not None else None,
        )
