"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

信令层的业务异常。

这些异常都不会让进程或其他连接受影响：``MalformedMessageError`` 只记录日志，
``RoomNotFoundError`` 的文案会原样回给发起加入的客户端。
"""
from __future__ import annotations

ROOM_NOT_FOUND: str = "Room not found"
ROOM_OCCUPIED: str = "Room already has a broadcaster"
ROOM_EXPIRED: str = "Room expired"


class SignalingError(Exception):
    """信令层异常基类。"""


class MalformedMessageError(SignalingError):
    """入站帧无法解析为 JSON 对象，或缺少可用的 ``type`` 字段。"""


class RoomNotFoundError(SignalingError):
    """目标房间码不存在。"""

    def __init__(self, room_code: str) -> None:
        super().__init__(ROOM_NOT_FOUND)
        self.room_code = room_code
