"""Tests for the /ws endpoint."""
import pytest
from starlette.websockets import WebSocketDisconnect


@pytest.fixture
def ws(api_client, token):
    """Open an authenticated socket and consume its ``connected`` event."""

    def _open(user_id: str):
        return api_client.websocket_connect(f"/ws?token={token(user_id)}")

    return _open


@pytest.fixture
def group(api_client, auth_headers):
    response = api_client.post(
        "/conversations",
        json={"participantIds": ["bob"], "kind": "group", "title": "Team"},
        headers=auth_headers("alice"),
    )
    return response.json()


def _join(socket, conversation_id):
    socket.send_json({"type": "joinConversation", "conversationId": conversation_id})
    assert socket.receive_json() == {"type": "joined", "conversationId": conversation_id}


class TestHandshake:

    def test_connected_event(self, ws):
        with ws("alice") as socket:
            event = socket.receive_json()
        assert event["type"] == "connected"
        assert event["userId"] == "alice"
        assert event["username"] == "Alice"
        assert event["connectionId"]

    def test_authorization_header(self, api_client, auth_headers):
        with api_client.websocket_connect("/ws", headers=auth_headers("bob")) as socket:
            assert socket.receive_json()["userId"] == "bob"

    @pytest.mark.parametrize("url", ["/ws", "/ws?token=garbage"])
    def test_refused_without_valid_token(self, api_client, url):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(url) as socket:
                socket.receive_json()
        assert exc_info.value.code == 1008

    def test_refused_for_unknown_user(self, api_client, token, presence):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={token('ghost')}") as socket:
                socket.receive_json()
        assert exc_info.value.code == 1008
        assert presence.connection_count == 0


class TestConversationTraffic:

    def test_send_reaches_both_sides(self, ws, group):
        with ws("alice") as alice, ws("bob") as bob:
            alice.receive_json()
            bob.receive_json()
            _join(alice, group["id"])
            _join(bob, group["id"])

            bob.send_json({
                "type": "send", "conversationId": group["id"], "body": "hi", "clientId": "c1",
            })

            for socket in (alice, bob):
                received = socket.receive_json()
                assert received["type"] == "messageReceived"
                assert received["message"]["body"] == "hi"
                assert received["message"]["senderId"] == "bob"

                updated = socket.receive_json()
                assert updated["type"] == "conversationUpdated"
                assert updated["conversation"]["lastMessage"]["body"] == "hi"

            assert updated["conversation"]["unreadCount"] == 0

    def test_http_send_is_broadcast(self, ws, group, api_client, auth_headers):
        with ws("alice") as alice:
            alice.receive_json()
            _join(alice, group["id"])

            api_client.post(
                f"/conversations/{group['id']}/messages",
                json={"body": "over http"},
                headers=auth_headers("bob"),
            )

            assert alice.receive_json()["message"]["body"] == "over http"
            updated = alice.receive_json()
            assert updated["type"] == "conversationUpdated"
            assert updated["conversation"]["unreadCount"] == 1

    def test_new_group_is_announced(self, ws, api_client, auth_headers):
        with ws("bob") as bob:
            bob.receive_json()
            api_client.post(
                "/conversations",
                json={"participantIds": ["bob"], "kind": "group", "title": "Launch"},
                headers=auth_headers("alice"),
            )
            event = bob.receive_json()

        assert event["type"] == "conversationCreated"
        assert event["conversation"]["title"] == "Launch"

    def test_send_failure_goes_to_sender_only(self, ws, group):
        with ws("alice") as alice:
            alice.receive_json()

            alice.send_json({"type": "send", "conversationId": "nope", "body": "x", "clientId": "c9"})
            failed = alice.receive_json()
            assert failed["type"] == "sendFailed"
            assert failed["error"] == "not_found"
            assert failed["clientId"] == "c9"

            alice.send_json({"type": "send", "conversationId": group["id"], "body": "   "})
            assert alice.receive_json()["error"] == "invalid_payload"

            alice.send_json({
                "type": "send",
                "conversationId": group["id"],
                "media": {"url": "/media/a.pdf", "kind": "pdf"},
            })
            assert alice.receive_json()["error"] == "invalid_payload"

    def test_join_requires_participation(self, ws, group):
        with ws("carol") as carol:
            carol.receive_json()
            carol.send_json({"type": "joinConversation", "conversationId": group["id"]})
            event = carol.receive_json()

        assert event["type"] == "error"
        assert event["error"] == "forbidden"
        assert event["requestType"] == "joinConversation"

    def test_leave_conversation_stops_messages(self, ws, group, presence):
        with ws("alice") as alice:
            alice.receive_json()
            _join(alice, group["id"])
            alice.send_json({"type": "leaveConversation", "conversationId": group["id"]})
            assert alice.receive_json() == {"type": "left", "conversationId": group["id"]}
            assert presence.group_size(f"conversation:{group['id']}") == 0


class TestTypingAndReadState:

    def test_typing_excludes_sender(self, ws, group):
        with ws("alice") as alice, ws("bob") as bob:
            alice.receive_json()
            bob.receive_json()
            _join(alice, group["id"])
            _join(bob, group["id"])

            alice.send_json({"type": "typing", "conversationId": group["id"], "isTyping": True})
            event = bob.receive_json()
            assert event == {
                "type": "typing",
                "conversationId": group["id"],
                "userId": "alice",
                "username": "Alice",
                "isTyping": True,
            }

            # The next thing alice sees is the reply to her own bad request.
            alice.send_json({"type": "wave"})
            assert alice.receive_json()["error"] == "invalid_payload"

    def test_mark_read(self, ws, group, api_client, auth_headers):
        api_client.post(
            f"/conversations/{group['id']}/messages",
            json={"body": "ping"},
            headers=auth_headers("bob"),
        )
        with ws("alice") as alice:
            alice.receive_json()
            alice.send_json({"type": "markRead", "conversationId": group["id"]})
            event = alice.receive_json()

        assert event == {
            "type": "readStateChanged",
            "conversationId": group["id"],
            "userId": "alice",
            "updatedCount": 1,
            "unreadCount": 0,
        }

    def test_non_object_frame(self, ws):
        with ws("alice") as alice:
            alice.receive_json()
            alice.send_json(["not", "an", "object"])
            event = alice.receive_json()
        assert event["type"] == "error"
        assert event["error"] == "invalid_payload"

    def test_unparseable_frames_keep_the_socket_open(self, ws, group):
        with ws("alice") as alice:
            alice.receive_json()

            alice.send_text("{not json")
            event = alice.receive_json()
            assert event["type"] == "error"
            assert event["detail"] == "Frame is not valid JSON"

            alice.send_bytes(b"\xff\xfe")
            assert alice.receive_json()["error"] == "invalid_payload"

            # Still serving requests on the same socket.
            _join(alice, group["id"])
