"""Tests for the collaborative room bridge."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from llamachat import LlamaChat
from llamachat.auth import SingleUser
from llamachat.models import ASSISTANT_ROLE, USER_ROLE, Participant
from llamachat.registry import resolve_engine
from llamachat.relay import RoomBridge
from socketio.exceptions import SocketIOError


@pytest.fixture
def client():
    mock = MagicMock()
    mock.connected = False
    mock.connect = AsyncMock()
    mock.disconnect = AsyncMock()
    mock.emit = AsyncMock()
    return mock


@pytest.fixture
def bridge(client):
    return RoomBridge(url="http://relay.test", client=client)


@pytest.fixture
def app(bridge, scripted_llm):
    return LlamaChat(
        llm=scripted_llm, relay=bridge, auth=SingleUser(user_id="u-me", name="Me")
    )


class TestConnection:
    def test_registers_event_handlers(self, bridge, client):
        client.on.assert_any_call("presence", bridge.handle_presence)
        client.on.assert_any_call("message", bridge.handle_message)

    def test_app_binding(self, app, bridge):
        assert bridge.app is app
        assert bridge.user == Participant(id="u-me", name="Me")

    @pytest.mark.asyncio
    async def test_connect_announces_identity(self, app, bridge, client):
        await bridge.connect()

        client.connect.assert_awaited_once_with(
            "http://relay.test?userId=u-me&name=Me", transports=["websocket"]
        )

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, app, bridge, client):
        client.connected = True

        await bridge.connect()

        client.connect.assert_not_awaited()


class TestRooms:
    @pytest.mark.asyncio
    async def test_join_binds_active_chat(self, app, bridge, client):
        chat = app.conversations.create_chat("General Chat")

        await bridge.join_room("room-1")

        assert bridge.room_id == "room-1"
        assert app.conversations.get_chat(chat.id).room_id == "room-1"
        client.emit.assert_awaited_with("join_room", {"roomId": "room-1"})

    @pytest.mark.asyncio
    async def test_create_room(self, app, bridge):
        chat = app.conversations.create_chat()

        room_id = await bridge.create_room(chat.id)

        assert room_id.startswith("room-")
        assert app.conversations.chat_for_room(room_id).id == chat.id

    @pytest.mark.asyncio
    async def test_switching_rooms_leaves_previous(self, app, bridge, client):
        first = app.conversations.create_chat()
        await bridge.join_room("room-1", first.id)
        second = app.conversations.create_chat()

        await bridge.join_room("room-2", second.id)

        client.emit.assert_any_await("leave_room", {"roomId": "room-1"})
        assert app.conversations.get_chat(first.id).room_id is None
        assert app.conversations.get_chat(second.id).room_id == "room-2"

    @pytest.mark.asyncio
    async def test_leave_clears_binding_and_participants(self, app, bridge, client):
        chat = app.conversations.create_chat()
        await bridge.join_room("room-1", chat.id)
        bridge.handle_presence({"type": "join", "user": {"id": "u-ana", "name": "Ana"}})

        await bridge.leave_room()

        assert bridge.room_id is None
        assert bridge.participants == []
        assert app.conversations.get_chat(chat.id).room_id is None
        client.emit.assert_awaited_with("leave_room", {"roomId": "room-1"})

    @pytest.mark.asyncio
    async def test_emit_failure_is_logged(self, app, bridge, client, caplog):
        client.emit.side_effect = SocketIOError("not connected")
        app.conversations.create_chat()

        with caplog.at_level(logging.WARNING, logger="llamachat.relay"):
            await bridge.join_room("room-1")

        assert "not connected" in caplog.text


class TestPresence:
    def test_join_and_leave(self, bridge):
        bridge.handle_presence({"type": "join", "user": {"id": "u-ana", "name": "Ana"}})
        bridge.handle_presence({"type": "join", "user": {"id": "u-bo", "name": "Bo"}})
        bridge.handle_presence({"type": "join", "user": {"id": "u-ana", "name": "Ana"}})

        assert [p.id for p in bridge.participants] == ["u-ana", "u-bo"]

        bridge.handle_presence({"type": "leave", "user": {"id": "u-ana"}})

        assert [p.id for p in bridge.participants] == ["u-bo"]

    def test_malformed_presence_ignored(self, bridge):
        bridge.handle_presence({"type": "join", "user": {"name": "no id"}})
        bridge.handle_presence(None)

        assert bridge.participants == []


class TestMessages:
    def messages(self, app, chat):
        return app.conversations.get_chat(chat.id).messages

    @pytest.mark.asyncio
    async def test_assistant_reply_appended(self, app, bridge):
        chat = app.conversations.create_chat()
        await bridge.join_room("room-1", chat.id)

        bridge.handle_message({"role": "assistant", "content": "Hello all"})

        (message,) = self.messages(app, chat)
        assert (message.role, message.content) == (ASSISTANT_ROLE, "Hello all")

    @pytest.mark.asyncio
    async def test_own_echo_skipped_others_kept(self, app, bridge):
        chat = app.conversations.create_chat()
        await bridge.join_room("room-1", chat.id)

        bridge.handle_message({"role": "user", "content": "mine", "userId": "u-me"})
        bridge.handle_message({"role": "user", "content": "theirs", "userId": "u-ana"})

        (message,) = self.messages(app, chat)
        assert (message.content, message.user_id) == ("theirs", "u-ana")

    @pytest.mark.asyncio
    async def test_invalid_role_ignored(self, app, bridge):
        chat = app.conversations.create_chat()
        await bridge.join_room("room-1", chat.id)

        bridge.handle_message({"role": "tool", "content": "x"})

        assert self.messages(app, chat) == []

    def test_message_outside_room_ignored(self, app, bridge):
        chat = app.conversations.create_chat()

        bridge.handle_message({"role": "assistant", "content": "stray"})

        assert self.messages(app, chat) == []


class TestSend:
    @pytest.mark.asyncio
    async def test_engine_relays_room_turn(self, app, bridge, client, scripted_llm):
        chat = app.conversations.create_chat(model_id="mistral")
        await bridge.join_room("room-1", chat.id)

        await app.send(chat.id, "Hi room")

        client.emit.assert_awaited_with(
            "user_message",
            {
                "roomId": "room-1",
                "content": "Hi room",
                "history": [{"role": "system", "content": "You are a helpful assistant."}],
                "model": resolve_engine("mistral"),
            },
        )
        messages = app.conversations.get_chat(chat.id).messages
        assert [(m.role, m.content) for m in messages] == [(USER_ROLE, "Hi room")]
        assert scripted_llm.calls == []

    @pytest.mark.asyncio
    async def test_failed_send_surfaces_error(self, app, bridge, client):
        chat = app.conversations.create_chat()
        await bridge.join_room("room-1", chat.id)
        client.emit.side_effect = SocketIOError("connection lost")

        assert await bridge.send(chat.id, "Hi", [], "x") is False

        message = app.conversations.get_chat(chat.id).messages[-1]
        assert (message.role, message.content) == (ASSISTANT_ROLE, "Error: connection lost")
