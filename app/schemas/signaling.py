"""
app.schemas.signaling
~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 的 Pydantic 消息模型。

线上协议为 camelCase 字段的 JSON 对象，一帧一个对象，每个对象都带 ``type``。
出站模型一律通过 ``to_wire()`` 按别名序列化；
offer / answer / ice-candidate 的载荷不建模，作为不透明字典原样转发。
"""
from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

# ── 入站 ──────────────────────────────────────────────────────────────


class SignalingEnvelope(BaseModel):
    """入站帧的最外层信封：只要求有字符串类型的 ``type``，其余字段保留。"""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1, description="消息类型")

    def payload(self) -> dict[str, Any]:
        """返回完整的原始字段（含 ``type``），用于原样转发。"""
        return self.model_dump()


class _InboundView(BaseModel):
    """入站消息的类型专属视图，忽略与本类型无关的字段。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _coerce_display_name(value: Any) -> str | None:
    """昵称宽松处理：数字转成字符串，空值和其他类型视为未提供。"""
    if isinstance(value, bool) or not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


DisplayName = Annotated[str | None, BeforeValidator(_coerce_display_name)]
OptionalText = Annotated[str | None, BeforeValidator(_string_or_none)]


class RoomCodeRequest(_InboundView):
    """``resume-room`` 请求体。"""

    room_code: str = Field(..., alias="roomCode", min_length=1)


class JoinRoomRequest(RoomCodeRequest):
    """``join-room`` 请求体。"""

    user_name: DisplayName = Field(default=None, alias="userName")


class ChatMessageRequest(_InboundView):
    """``chat-message`` 请求体。"""

    message: Any = None
    user_name: DisplayName = Field(default=None, alias="userName")
    room_code: OptionalText = Field(default=None, alias="roomCode", description="仅供参考，路由只看发送者所在房间")


class SignalRequest(_InboundView):
    """offer / answer / ice-candidate 中路由层唯一关心的字段。"""

    target_id: str | None = Field(default=None, alias="targetId")


# ── 出站 ──────────────────────────────────────────────────────────────


class OutboundMessage(BaseModel):
    """出站消息基类。"""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """按线上字段名序列化。"""
        return self.model_dump(by_alias=True)


class ListenerInfo(OutboundMessage):
    """听众快照中的一项。"""

    id: str
    name: str
    joined_at: int = Field(..., alias="joinedAt", description="加入时间（毫秒时间戳）")


class RoomCreated(OutboundMessage):
    type: Literal["room-created"] = "room-created"
    room_code: str = Field(..., alias="roomCode")


class RoomJoined(OutboundMessage):
    type: Literal["room-joined"] = "room-joined"
    room_code: str = Field(..., alias="roomCode")
    listeners: list[ListenerInfo]


class RoomResumed(OutboundMessage):
    type: Literal["room-resumed"] = "room-resumed"
    room_code: str = Field(..., alias="roomCode")
    listeners: list[ListenerInfo]


class NewListener(OutboundMessage):
    type: Literal["new-listener"] = "new-listener"
    listener_id: str = Field(..., alias="listenerId")
    user_name: str = Field(..., alias="userName")
    listeners: list[ListenerInfo]


class ListenerLeft(OutboundMessage):
    type: Literal["listener-left"] = "listener-left"
    listener_id: str = Field(..., alias="listenerId")
    user_name: str = Field(..., alias="userName")
    listeners: list[ListenerInfo]


class BroadcasterLeft(OutboundMessage):
    """主播离开通知；主动离开与断线只有 ``type`` 文案不同。"""

    type: Literal["broadcaster-left", "broadcaster-disconnected"] = "broadcaster-left"


class BroadcasterReturned(OutboundMessage):
    type: Literal["broadcaster-returned"] = "broadcaster-returned"


class ChatMessageOut(OutboundMessage):
    type: Literal["chat-message"] = "chat-message"
    sender_id: str = Field(..., alias="senderId")
    sender_name: str | None = Field(default=None, alias="senderName")
    message: Any = None
    timestamp: int = Field(..., description="服务端时间（毫秒时间戳）")

    def to_wire(self) -> dict[str, Any]:
        """主播未提供昵称时不输出 ``senderName`` 字段。"""
        wire = super().to_wire()
        if self.sender_name is None:
            wire.pop("senderName")
        return wire


class ErrorMessage(OutboundMessage):
    type: Literal["error"] = "error"
    message: str


# ── REST ──────────────────────────────────────────────────────────────


class RoomInfoData(BaseModel):
    """房间摘要信息（REST 查询用）。"""

    model_config = ConfigDict(populate_by_name=True)

    room_code: str = Field(..., alias="roomCode", description="房间码")
    has_broadcaster: bool = Field(..., alias="hasBroadcaster", description="主播是否在线")
    listener_count: int = Field(..., alias="listenerCount", description="当前听众数")
    created_at: int = Field(..., alias="createdAt", description="创建时间（毫秒时间戳）")
    abandoned_at: int | None = Field(
        default=None, alias="abandonedAt", description="进入无人状态的时间（毫秒时间戳）",
    )
