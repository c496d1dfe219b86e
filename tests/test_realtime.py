"""
Tests for the WebSocket layer: the subscription registry and live delivery.
"""

import asyncio

import pytest
from fastapi import WebSocketDisconnect

from realtime import ConnectionManager
from tests.conftest import PASSWORD


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.accepted = False
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(message)


class TestConnectionManager:
    def test_connect_and_disconnect_bookkeeping(self):
        manager = ConnectionManager()
        ws = FakeSocket()

        asyncio.run(manager.connect("u1", ws))
        manager.register_chat("c1", ws)
        assert ws.accepted
        assert manager.is_connected("u1")
        assert ws in manager.chat_rooms["c1"]

        manager.disconnect("u1", ws)
        assert not manager.is_connected("u1")
        assert "c1" not in manager.chat_rooms

    def test_fan_out_addresses_room_and_each_user_channel(self):
        manager = ConnectionManager()
        alice_ws, bob_ws, stranger_ws = FakeSocket(), FakeSocket(), FakeSocket()

        async def scenario():
            await manager.connect("alice", alice_ws)
            await manager.connect("bob", bob_ws)
            await manager.connect("stranger", stranger_ws)
            manager.register_chat("c1", bob_ws)
            await manager.fan_out("c1", ["alice", "bob"], {"id": "m1"}, {"chatId": "c1"})

        asyncio.run(scenario())

        assert bob_ws.sent == [
            {"type": "receive-message", "data": {"id": "m1"}},
            {"type": "chat-update-bob", "data": {"chatId": "c1"}},
        ]
        assert alice_ws.sent == [{"type": "chat-update-alice", "data": {"chatId": "c1"}}]
        assert stranger_ws.sent == []

    def test_broken_socket_is_dropped(self):
        manager = ConnectionManager()
        broken, healthy = FakeSocket(fail=True), FakeSocket()

        async def scenario():
            await manager.connect("u1", broken)
            await manager.connect("u1", healthy)
            await manager.send_personal("u1", {"type": "ping"})

        asyncio.run(scenario())

        assert healthy.sent == [{"type": "ping"}]
        assert manager.active_connections["u1"] == {healthy}

    def test_publish_without_connections_is_a_no_op(self):
        manager = ConnectionManager()

        manager.publish_message("c1", ["u1"], {"id": "m1"}, {"chatId": "c1"})

        assert manager.chat_rooms == {}


@pytest.fixture
def live_users(live_client, auth):
    alice = auth.register("Alice", "alice@example.com", PASSWORD, 25)
    bob = auth.register("Bob", "bob@example.com", PASSWORD, 27)
    carol = auth.register("Carol", "carol@example.com", PASSWORD, 31)
    return alice, bob, carol


@pytest.fixture
def live_chat_id(chats, live_users):
    alice, bob, _ = live_users
    chat, _ = chats.create_or_get_chat(alice["id"], bob["id"])
    return chat["id"]


class TestWebSocketEndpoint:
    def test_rejects_missing_token(self, live_client):
        with pytest.raises(WebSocketDisconnect):
            with live_client.websocket_connect("/ws"):
                pass

    def test_rejects_bad_token(self, live_client):
        with pytest.raises(WebSocketDisconnect):
            with live_client.websocket_connect("/ws?token=garbage"):
                pass

    def test_live_message_delivery(self, live_client, live_users, live_chat_id, token_for, headers_for):
        alice, bob, _ = live_users

        with live_client.websocket_connect(f"/ws?token={token_for('bob@example.com')}") as ws:
            ws.send_json({"type": "join-chat", "chatId": live_chat_id})
            assert ws.receive_json() == {"type": "joined-chat", "data": {"chatId": live_chat_id}}

            response = live_client.post(
                f"/api/chats/{live_chat_id}/messages",
                json={"senderId": alice["id"], "text": "hi bob", "type": "text"},
                headers=headers_for("alice@example.com"),
            )
            assert response.status_code == 201

            delivered = ws.receive_json()
            assert delivered["type"] == "receive-message"
            assert delivered["data"] == response.json()["data"]

            update = ws.receive_json()
            assert update["type"] == f"chat-update-{bob['id']}"
            assert update["data"]["chatId"] == live_chat_id
            assert update["data"]["lastMessage"]["text"] == "hi bob"

    def test_outsider_cannot_join(self, live_client, live_chat_id, token_for):
        with live_client.websocket_connect(f"/ws?token={token_for('carol@example.com')}") as ws:
            ws.send_json({"type": "join-chat", "chatId": live_chat_id})

            reply = ws.receive_json()

        assert reply["type"] == "error"
        assert reply["data"]["message"] == "Not authorized to access this chat"

    def test_typing_is_relayed_to_the_other_side(self, live_client, live_users, live_chat_id, token_for):
        alice, _, _ = live_users

        with live_client.websocket_connect(f"/ws?token={token_for('alice@example.com')}") as alice_ws, \
                live_client.websocket_connect(f"/ws?token={token_for('bob@example.com')}") as bob_ws:
            for ws in (alice_ws, bob_ws):
                ws.send_json({"type": "join-chat", "chatId": live_chat_id})
                assert ws.receive_json()["type"] == "joined-chat"

            alice_ws.send_json({"type": "typing", "chatId": live_chat_id})
            assert bob_ws.receive_json() == {
                "type": "user-typing",
                "data": {"chatId": live_chat_id, "userId": alice["id"], "isTyping": True},
            }

            # The typist gets no echo: the next thing it sees is the reply to this ping
            alice_ws.send_json({"type": "ping"})
            assert alice_ws.receive_json() == {"type": "error", "data": {"message": "Unknown event"}}

    def test_leave_chat(self, live_client, live_app, live_chat_id, token_for):
        with live_client.websocket_connect(f"/ws?token={token_for('bob@example.com')}") as ws:
            ws.send_json({"type": "join-chat", "chatId": live_chat_id})
            ws.receive_json()
            ws.send_json({"type": "leave-chat", "chatId": live_chat_id})

            assert ws.receive_json() == {"type": "left-chat", "data": {"chatId": live_chat_id}}
            assert live_chat_id not in live_app.state.manager.chat_rooms

    def test_malformed_event(self, live_client, live_users, token_for):
        with live_client.websocket_connect(f"/ws?token={token_for('alice@example.com')}") as ws:
            ws.send_text("not json")

            assert ws.receive_json() == {"type": "error", "data": {"message": "Malformed event"}}

    def test_socket_is_unregistered_when_the_loop_crashes(self, live_client, live_app, live_users, live_chat_id, token_for):
        _, bob, _ = live_users
        manager = live_app.state.manager

        seen = {}
        with pytest.raises(Exception):
            with live_client.websocket_connect(f"/ws?token={token_for('bob@example.com')}") as ws:
                ws.send_json({"type": "join-chat", "chatId": live_chat_id})
                seen["ack"] = ws.receive_json()["type"]
                seen["connected"] = manager.is_connected(bob["id"])

                # A binary frame has no text to read
                ws.send_bytes(b"\x00\x01")
                ws.receive_json()

        assert seen == {"ack": "joined-chat", "connected": True}
        assert not manager.is_connected(bob["id"])
        assert live_chat_id not in manager.chat_rooms
