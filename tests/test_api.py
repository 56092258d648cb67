import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect

from chatsync.auth.dependencies import get_current_user
from chatsync.exceptions import TransportFailure
from chatsync.models.user import User
from chatsync.services.attachment_service import get_attachment_uploader
from chatsync.services.conversation_service import ConversationAggregator, get_conversation_aggregator
from chatsync.services.message_repository import InMemoryMessageRepository
from chatsync.services.message_store import MessageStore, get_message_store
from chatsync.services.rate_limiter import InMemoryRateLimiter
from main import app

from conftest import USER_A, USER_B

JWT_SECRET = "test-jwt-secret"


def make_token(user_id: str, expires_in: int = 3600) -> str:
    return jwt.encode(
        {
            "sub": user_id,
            "aud": "authenticated",
            "role": "authenticated",
            "email": f"{user_id}@example.com",
            "exp": int(time.time()) + expires_in,
        },
        JWT_SECRET,
        algorithm="HS256",
    )


class OfflineRepository(InMemoryMessageRepository):
    async def list_between(self, user_a, user_b):
        raise TransportFailure("connection refused by 10.0.0.5")


@pytest.fixture
def acting():
    return {"user": User(user_id=USER_A)}


@pytest.fixture
def client(store, aggregator, uploader, acting):
    app.dependency_overrides[get_current_user] = lambda: acting["user"]
    app.dependency_overrides[get_message_store] = lambda: store
    app.dependency_overrides[get_conversation_aggregator] = lambda: aggregator
    app.dependency_overrides[get_attachment_uploader] = lambda: uploader
    yield TestClient(app)
    app.dependency_overrides.clear()


def act_as(acting, user_id):
    acting["user"] = User(user_id=user_id)


def test_health():
    response = TestClient(app).get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_send_and_list(client):
    response = client.post("/messages", json={"recipient_id": USER_B, "content": "hello"})

    assert response.status_code == 201
    body = response.json()
    assert body["sender_id"] == USER_A
    assert body["content"] == "hello"
    assert body["read"] is False

    listing = client.get(f"/messages/with/{USER_B}").json()
    assert listing["total"] == 1
    assert listing["messages"][0]["id"] == body["id"]


def test_empty_message_is_bad_request(client):
    response = client.post("/messages", json={"recipient_id": USER_B, "content": "  "})

    assert response.status_code == 400


def test_conversation_list_and_read_receipts(client, acting):
    client.post("/messages", json={"recipient_id": USER_B, "content": "hello"})
    act_as(acting, USER_B)

    conversations = client.get("/messages/conversations").json()
    assert conversations["total"] == 1
    assert conversations["conversations"][0]["counterpart_id"] == USER_A
    assert conversations["conversations"][0]["counterpart_name"] == "Acme Robotics"
    assert conversations["conversations"][0]["unread_count"] == 1
    assert client.get("/messages/unread-count").json() == {"unread_count": 1}

    response = client.post(f"/messages/with/{USER_A}/read")

    assert response.json() == {"updated": 1}
    assert client.get("/messages/unread-count").json() == {"unread_count": 0}


def test_batch_mark_read(client, acting):
    sent = client.post("/messages", json={"recipient_id": USER_B, "content": "hello"}).json()

    # The sender may not mark their own message read
    assert client.post("/messages/read", json={"message_ids": [sent["id"]]}).status_code == 403

    act_as(acting, USER_B)
    assert client.post("/messages/read", json={"message_ids": [sent["id"]]}).json() == {"updated": 1}
    assert client.post("/messages/read", json={"message_ids": []}).status_code == 422


def test_edit_and_delete_ownership(client, acting):
    sent = client.post("/messages", json={"recipient_id": USER_B, "content": "helo"}).json()

    act_as(acting, USER_B)
    forbidden = client.patch(f"/messages/{sent['id']}", json={"content": "changed"})
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "Permission denied"
    assert client.delete(f"/messages/{sent['id']}").status_code == 403

    act_as(acting, USER_A)
    edited = client.patch(f"/messages/{sent['id']}", json={"content": "hello"})
    assert edited.status_code == 200
    assert edited.json()["content"] == "hello"

    assert client.delete(f"/messages/{sent['id']}").status_code == 204
    assert client.patch(f"/messages/{sent['id']}", json={"content": "again"}).status_code == 404
    assert client.get(f"/messages/with/{USER_B}").json()["total"] == 0


def test_upload_then_send_attachment(client, storage, acting):
    upload = client.post(
        "/messages/attachments",
        files={"file": ("my photo.jpg", b"\xff\xd8\xff", "image/jpeg")},
        data={"attachment_type": "image"},
    )

    assert upload.status_code == 201
    attachment = upload.json()
    assert attachment["attachment_url"].startswith("memory://chat-media/user-a/")
    assert attachment["attachment_url"].endswith("-my-photo.jpg")
    assert attachment["attachment_metadata"]["mime_type"] == "image/jpeg"
    assert len(storage.objects) == 1

    sent = client.post("/messages", json={"recipient_id": USER_B, "content": "", "attachment": attachment})
    assert sent.status_code == 201
    assert sent.json()["attachment_type"] == "image"

    act_as(acting, USER_B)
    conversation = client.get("/messages/conversations").json()["conversations"][0]
    assert conversation["last_message"] == "📷 Photo"


def test_rate_limit_is_429(client, repository):
    limited = MessageStore(repository, rate_limiter=InMemoryRateLimiter(), limits={"create": 1})
    app.dependency_overrides[get_message_store] = lambda: limited

    assert client.post("/messages", json={"recipient_id": USER_B, "content": "one"}).status_code == 201
    response = client.post("/messages", json={"recipient_id": USER_B, "content": "two"})

    assert response.status_code == 429
    assert "Retry-After" in response.headers


def test_transport_failure_is_503_without_details(client, profiles):
    offline = MessageStore(OfflineRepository())
    app.dependency_overrides[get_message_store] = lambda: offline
    app.dependency_overrides[get_conversation_aggregator] = lambda: ConversationAggregator(offline, profiles)

    response = client.get(f"/messages/with/{USER_B}")

    assert response.status_code == 503
    assert "10.0.0.5" not in response.json()["detail"]


class TestAuthentication:
    def test_missing_token_is_401(self):
        response = TestClient(app).get("/messages/conversations")

        assert response.status_code == 401

    def test_invalid_token_is_401(self):
        response = TestClient(app).get(
            "/messages/conversations",
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    def test_valid_token(self, store, aggregator):
        app.dependency_overrides[get_conversation_aggregator] = lambda: aggregator
        try:
            response = TestClient(app).get(
                "/messages/conversations",
                headers={"Authorization": f"Bearer {make_token(USER_A)}"},
            )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        assert response.json() == {"conversations": [], "total": 0}


class TestWebSocket:
    def test_rejects_missing_token(self):
        with pytest.raises(WebSocketDisconnect):
            with TestClient(app).websocket_connect("/ws/messages"):
                pass

    def test_ping_pong(self):
        with TestClient(app).websocket_connect(f"/ws/messages?token={make_token(USER_A)}") as ws:
            welcome = ws.receive_json()
            assert welcome["type"] == "connection_established"
            assert welcome["user_id"] == USER_A

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_message_changes_fan_out_to_recipient(self):
        sender, recipient = "fanout-sender", "fanout-recipient"

        with TestClient(app) as client:
            with client.websocket_connect(f"/ws/messages?token={make_token(recipient)}") as ws:
                assert ws.receive_json()["type"] == "connection_established"

                response = client.post(
                    "/messages",
                    json={"recipient_id": recipient, "content": "realtime hello"},
                    headers={"Authorization": f"Bearer {make_token(sender)}"},
                )
                assert response.status_code == 201

                notification = ws.receive_json()
                assert notification["type"] == "message_insert"
                assert notification["data"]["message_id"] == response.json()["id"]
                assert notification["data"]["record"]["content"] == "realtime hello"

    def test_stats(self):
        stats = TestClient(app).get("/ws/stats").json()

        assert stats["total_connections"] == 0
