"""
tests.test_message_router
~~~~~~~~~~~~~~~~~~~~~~~~~

MessageRouter 路由规则单元测试。

底层 WebSocket 全部为 mock，断言的是每条连接实际收到的 JSON。
"""
from __future__ import annotations

import json

import pytest

from app.core.exceptions import MalformedMessageError
from app.services.identity import identity_of
from app.services.message_router import MessageRouter, parse_message
from app.services.room import to_millis


async def send(router: MessageRouter, conn, **message) -> None:
    await router.dispatch(conn, json.dumps(message))


async def open_room(router: MessageRouter, make_connection, *names: str):
    """创建房间并按顺序加入若干听众，返回 (房间码, 主播, 听众列表)，并清空已发送记录。"""
    broadcaster = make_connection()
    await send(router, broadcaster, type="create-room")
    code = broadcaster.sent[0]["roomCode"]
    listeners = []
    for name in names:
        listener = make_connection()
        await send(router, listener, type="join-room", roomCode=code, userName=name)
        listeners.append(listener)
    for conn in [broadcaster, *listeners]:
        conn.clear()
    return code, broadcaster, listeners


# ── 解析 ──────────────────────────────────────────────────────────────

class TestParseMessage:
    """测试入站帧解析。"""

    def test_parses_object_with_type(self) -> None:
        envelope = parse_message('{"type": "offer", "targetId": "x", "sdp": {"a": 1}}')

        assert envelope.type == "offer"
        assert envelope.payload() == {"type": "offer", "targetId": "x", "sdp": {"a": 1}}

    def test_accepts_utf8_bytes(self) -> None:
        assert parse_message('{"type": "leave-room"}'.encode("utf-8")).type == "leave-room"

    @pytest.mark.parametrize(
        "raw",
        ["not json", "[1, 2]", '{"no_type": 1}', '{"type": 5}', '{"type": ""}', b"\xff\xfe"],
    )
    def test_rejects_malformed(self, raw) -> None:
        with pytest.raises(MalformedMessageError):
            parse_message(raw)


# ── 房间管理消息 ──────────────────────────────────────────────────────

class TestRoomMessages:
    """测试 create-room / join-room / leave-room / resume-room。"""

    @pytest.mark.asyncio
    async def test_create_room_replies_to_sender_only(self, message_router, make_connection, registry) -> None:
        broadcaster = make_connection()
        bystander = make_connection()

        await send(message_router, broadcaster, type="create-room")

        [reply] = broadcaster.sent
        assert reply["type"] == "room-created"
        assert len(reply["roomCode"]) == 6
        assert registry.get_room(reply["roomCode"]).broadcaster is broadcaster
        assert bystander.sent == []

    @pytest.mark.asyncio
    async def test_join_notifies_sender_broadcaster_and_other_listeners(
        self, message_router, make_connection, clock,
    ) -> None:
        code, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")
        bob = make_connection()

        await send(message_router, bob, type="join-room", roomCode=code.lower(), userName="Bob")

        snapshot = [
            {"id": identity_of(alice), "name": "Alice", "joinedAt": to_millis(clock.now)},
            {"id": identity_of(bob), "name": "Bob", "joinedAt": to_millis(clock.now)},
        ]
        assert bob.sent == [{"type": "room-joined", "roomCode": code, "listeners": snapshot}]
        notice = {
            "type": "new-listener",
            "listenerId": identity_of(bob),
            "userName": "Bob",
            "listeners": snapshot,
        }
        assert broadcaster.sent == [notice]
        assert alice.sent == [notice]

    @pytest.mark.asyncio
    async def test_join_unknown_room_returns_error(self, message_router, make_connection, registry) -> None:
        listener = make_connection()

        await send(message_router, listener, type="join-room", roomCode="NOPE00", userName="Bob")

        assert listener.sent == [{"type": "error", "message": "Room not found"}]
        assert registry.room_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("user_name", "expected"),
        [(42, "42"), (None, "Anonymous"), ("", "Anonymous"), ({"first": "Bob"}, "Anonymous"), (False, "Anonymous")],
    )
    async def test_join_with_unusual_user_name_still_joins(
        self, message_router, make_connection, user_name, expected,
    ) -> None:
        code, broadcaster, _ = await open_room(message_router, make_connection)
        listener = make_connection()

        await send(message_router, listener, type="join-room", roomCode=code, userName=user_name)

        [reply] = listener.sent
        assert reply["type"] == "room-joined"
        assert [item["name"] for item in reply["listeners"]] == [expected]
        assert broadcaster.sent[0]["userName"] == expected

    @pytest.mark.asyncio
    async def test_join_without_room_code_is_dropped(self, message_router, make_connection) -> None:
        listener = make_connection()

        await send(message_router, listener, type="join-room", userName="Bob")

        assert listener.sent == []

    @pytest.mark.asyncio
    async def test_broadcaster_leave_notifies_listeners(self, message_router, make_connection, registry) -> None:
        code, broadcaster, listeners = await open_room(message_router, make_connection, "Alice", "Bob")

        await send(message_router, broadcaster, type="leave-room")

        for listener in listeners:
            assert listener.sent == [{"type": "broadcaster-left"}]
        assert broadcaster.sent == []
        room = registry.get_room(code)
        assert room is not None
        assert room.broadcaster is None

    @pytest.mark.asyncio
    async def test_listener_leave_notifies_broadcaster_and_remaining(
        self, message_router, make_connection,
    ) -> None:
        code, broadcaster, [alice, bob] = await open_room(message_router, make_connection, "Alice", "Bob")

        await send(message_router, alice, type="leave-room")

        [notice] = broadcaster.sent
        assert notice["type"] == "listener-left"
        assert notice["listenerId"] == identity_of(alice)
        assert notice["userName"] == "Alice"
        assert [item["id"] for item in notice["listeners"]] == [identity_of(bob)]
        assert bob.sent == [notice]
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_join_while_in_another_room_leaves_it_first(
        self, message_router, make_connection, registry,
    ) -> None:
        code_a, broadcaster_a, [alice] = await open_room(message_router, make_connection, "Alice")
        code_b, broadcaster_b, _ = await open_room(message_router, make_connection)

        await send(message_router, alice, type="join-room", roomCode=code_b, userName="Alice")

        assert broadcaster_a.sent[0]["type"] == "listener-left"
        assert registry.get_room(code_a).listeners == {}
        assert identity_of(alice) in registry.get_room(code_b).listeners

    @pytest.mark.asyncio
    async def test_resume_room_reattaches_broadcaster(self, message_router, make_connection, registry) -> None:
        code, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")
        await message_router.handle_disconnect(broadcaster)
        alice.clear()

        returning = make_connection()
        await send(message_router, returning, type="resume-room", roomCode=code)

        [reply] = returning.sent
        assert reply["type"] == "room-resumed"
        assert reply["roomCode"] == code
        assert [item["name"] for item in reply["listeners"]] == ["Alice"]
        assert alice.sent == [{"type": "broadcaster-returned"}]
        assert registry.get_room(code).broadcaster is returning

    @pytest.mark.asyncio
    async def test_resume_occupied_room_returns_error(self, message_router, make_connection) -> None:
        code, _, _ = await open_room(message_router, make_connection)
        intruder = make_connection()

        await send(message_router, intruder, type="resume-room", roomCode=code)

        assert intruder.sent == [{"type": "error", "message": "Room already has a broadcaster"}]


# ── offer / answer / ice-candidate ────────────────────────────────────

class TestSignalForwarding:
    """测试主播与听众之间的信令转发。"""

    @pytest.mark.asyncio
    async def test_broadcaster_offer_goes_to_target_only(self, message_router, make_connection) -> None:
        _, broadcaster, [alice, bob] = await open_room(message_router, make_connection, "Alice", "Bob")
        offer = {"type": "offer", "targetId": identity_of(bob), "offer": {"sdp": "v=0", "type": "offer"}}

        await message_router.dispatch(broadcaster, json.dumps(offer))

        assert bob.sent == [offer]
        assert alice.sent == []
        assert broadcaster.sent == []

    @pytest.mark.asyncio
    async def test_offer_to_unknown_target_is_dropped(self, message_router, make_connection) -> None:
        """targetId 不匹配任何听众时静默丢弃，不抛异常，不发送任何消息。"""
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await send(message_router, broadcaster, type="offer", targetId="ghost", offer={"sdp": "v=0"})

        assert alice.sent == []
        assert broadcaster.sent == []

    @pytest.mark.asyncio
    async def test_offer_without_target_is_dropped(self, message_router, make_connection) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await send(message_router, broadcaster, type="ice-candidate", candidate={"candidate": "c"})

        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_offer_to_closed_listener_is_dropped(self, message_router, make_connection) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")
        alice.set_open(False)

        await send(message_router, broadcaster, type="offer", targetId=identity_of(alice), offer={})

        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_listener_answer_goes_to_broadcaster_with_sender_id(
        self, message_router, make_connection,
    ) -> None:
        """听众发出的消息附带服务端写入的 senderId，覆盖客户端自带的同名字段。"""
        _, broadcaster, [alice, bob] = await open_room(message_router, make_connection, "Alice", "Bob")

        await send(message_router, alice, type="answer", answer={"sdp": "v=0"}, senderId="forged")

        assert broadcaster.sent == [
            {"type": "answer", "answer": {"sdp": "v=0"}, "senderId": identity_of(alice)},
        ]
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_listener_candidate_without_broadcaster_is_dropped(
        self, message_router, make_connection,
    ) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")
        await send(message_router, broadcaster, type="leave-room")
        alice.clear()

        await send(message_router, alice, type="ice-candidate", candidate={"candidate": "c"})

        assert broadcaster.sent == []
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_signal_from_unassigned_connection_is_dropped(self, message_router, make_connection) -> None:
        _, broadcaster, _ = await open_room(message_router, make_connection)
        stranger = make_connection()

        await send(message_router, stranger, type="answer", answer={})

        assert broadcaster.sent == []
        assert stranger.sent == []


# ── chat-message ──────────────────────────────────────────────────────

class TestChatMessage:
    """测试聊天扇出。"""

    @pytest.mark.asyncio
    async def test_chat_fans_out_to_everyone(self, message_router, make_connection, clock) -> None:
        _, broadcaster, [alice, bob] = await open_room(message_router, make_connection, "Alice", "Bob")
        clock.advance(2.5)

        await send(
            message_router, alice,
            type="chat-message", message="hello", userName="Alice",
            senderId="forged", timestamp=1,
        )

        expected = {
            "type": "chat-message",
            "senderId": identity_of(alice),
            "senderName": "Alice",
            "message": "hello",
            "timestamp": to_millis(clock.now),
        }
        assert broadcaster.sent == [expected]
        assert bob.sent == [expected]
        assert alice.sent == [expected]  # 服务端不抑制自回显

    @pytest.mark.asyncio
    async def test_chat_skips_closed_and_failing_peers(self, message_router, make_connection) -> None:
        _, broadcaster, [alice, bob, carol] = await open_room(
            message_router, make_connection, "Alice", "Bob", "Carol",
        )
        bob.set_open(False)
        carol.websocket.send_text.side_effect = RuntimeError("socket gone")

        await send(message_router, broadcaster, type="chat-message", message="hi", userName="DJ")

        assert alice.sent[0]["senderName"] == "DJ"
        assert broadcaster.sent[0]["message"] == "hi"
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_chat_name_falls_back_to_listener_name(self, message_router, make_connection) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await send(message_router, alice, type="chat-message", message="hi")

        assert broadcaster.sent[0]["senderName"] == "Alice"

    @pytest.mark.asyncio
    async def test_broadcaster_chat_without_name_omits_sender_name(
        self, message_router, make_connection,
    ) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await send(message_router, broadcaster, type="chat-message", message="welcome")

        [chat] = alice.sent
        assert "senderName" not in chat
        assert chat["senderId"] == identity_of(broadcaster)
        assert chat["message"] == "welcome"

    @pytest.mark.asyncio
    async def test_chat_room_code_in_payload_does_not_redirect(
        self, message_router, make_connection,
    ) -> None:
        _, home_broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")
        other_code, other_broadcaster, _ = await open_room(message_router, make_connection)

        await send(message_router, alice, type="chat-message", roomCode=other_code, message="hi")

        assert home_broadcaster.sent[0]["message"] == "hi"
        assert other_broadcaster.sent == []

    @pytest.mark.asyncio
    async def test_chat_from_outside_room_is_dropped(self, message_router, make_connection) -> None:
        code, broadcaster, _ = await open_room(message_router, make_connection)
        stranger = make_connection()

        await send(message_router, stranger, type="chat-message", roomCode=code, message="spam")

        assert broadcaster.sent == []


# ── 异常输入 / 断线 ───────────────────────────────────────────────────

class TestRobustness:
    """测试格式错误、未知类型和断线处理。"""

    @pytest.mark.asyncio
    async def test_malformed_frame_is_dropped(self, message_router, make_connection) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await message_router.dispatch(alice, "{not json")
        await message_router.dispatch(alice, b"\x80\x81")

        assert alice.sent == []
        assert broadcaster.sent == []

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, message_router, make_connection) -> None:
        _, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await send(message_router, alice, type="dance", moves=3)

        assert alice.sent == []
        assert broadcaster.sent == []

    @pytest.mark.asyncio
    async def test_broadcaster_disconnect_uses_disconnected_wording(
        self, message_router, make_connection, registry,
    ) -> None:
        code, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await message_router.handle_disconnect(broadcaster)

        assert alice.sent == [{"type": "broadcaster-disconnected"}]
        assert registry.get_room(code) is not None

    @pytest.mark.asyncio
    async def test_listener_disconnect_matches_leave(self, message_router, make_connection, registry) -> None:
        code, broadcaster, [alice] = await open_room(message_router, make_connection, "Alice")

        await message_router.handle_disconnect(alice)

        [notice] = broadcaster.sent
        assert notice["type"] == "listener-left"
        assert notice["listeners"] == []
        assert registry.get_room(code).listeners == {}

    @pytest.mark.asyncio
    async def test_disconnect_of_unassigned_connection_is_silent(self, message_router, make_connection) -> None:
        conn = make_connection()

        await message_router.handle_disconnect(conn)

        assert conn.sent == []
