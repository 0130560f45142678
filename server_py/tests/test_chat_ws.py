import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from anonchat.core.database import Base
from anonchat.core.dependencies import get_coordinator
from anonchat.main import app
from anonchat.services.session import ChatCoordinator
from anonchat.services.store import ChatStore


@pytest.fixture
def client(tmp_path):
    db_path = tmp_path / "ws.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    coordinator = ChatCoordinator(
        ChatStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    )
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def receive_until(websocket, event_type):
    while True:
        frame = websocket.receive_json()
        if frame["type"] == event_type:
            return frame["data"]


def poll_for(websocket, event_type, attempts=50):
    """Ждет событие от сервера, не блокируясь навсегда.

    Каждый get_messages гарантирует ответ (history или error), поэтому
    чтение всегда завершается.
    """
    for _ in range(attempts):
        websocket.send_json({"type": "get_messages"})
        while True:
            frame = websocket.receive_json()
            if frame["type"] == event_type:
                return frame["data"]
            if frame["type"] in ("history", "error"):
                break
        time.sleep(0.05)
    raise AssertionError(f"{event_type} was not received")


def test_pair_and_chat_over_websocket(client):
    with client.websocket_connect("/ws/chat") as alice, client.websocket_connect("/ws/chat") as bob:
        alice.send_json({"type": "register", "identity": "alice"})
        assert receive_until(alice, "registered")["user"]["externalId"] == "alice"
        bob.send_json({"type": "init", "telegramId": "bob"})
        receive_until(bob, "registered")

        alice.send_json({"type": "find_partner"})
        receive_until(alice, "searching")
        bob.send_json({"type": "find_partner"})
        assert receive_until(bob, "chat_started")["partner"] == {"externalId": "alice"}
        assert receive_until(alice, "chat_started")["partner"] == {"externalId": "bob"}

        alice.send_json({"type": "send_message", "content": "hello bob"})
        echo = receive_until(alice, "message")
        received = receive_until(bob, "message")
        assert echo["isOwn"] is True
        assert received["isOwn"] is False
        assert received["content"] == "hello bob"

        response = client.get("/api/v1/chat/history", params={"user_a": "bob", "user_b": "alice"})
        assert response.status_code == 200
        assert [m["content"] for m in response.json()] == ["hello bob"]
        assert response.json()[0]["senderId"] == "alice"

        response = client.get("/api/v1/chat/users/alice")
        assert response.status_code == 200
        assert response.json()["state"] == "paired"
        assert response.json()["currentPartnerId"] == "bob"

        bob.send_json({"type": "next_partner"})
        assert receive_until(alice, "chat_ended") == {"reason": "partner_left"}
        receive_until(bob, "searching")

        stats = client.get("/api/v1/chat/stats").json()
        assert stats["connections"] == 2
        assert stats["waiting"] == 1
        assert stats["sweeperRunning"] is True


def test_errors_are_reported_without_closing(client):
    with client.websocket_connect("/ws/chat") as websocket:
        websocket.send_json({"type": "find_partner"})
        assert websocket.receive_json()["data"]["reason"] == "not_registered"

        websocket.send_json({"type": "warp_drive"})
        assert websocket.receive_json()["data"]["reason"] == "invalid_command"

        websocket.send_text("{not json")
        assert websocket.receive_json()["data"]["reason"] == "invalid_command"

        websocket.send_json({"type": "register", "identity": "carol"})
        receive_until(websocket, "registered")
        websocket.send_json({"type": "send_message", "content": "anyone?"})
        assert websocket.receive_json()["data"]["reason"] == "no_active_session"


def test_disconnect_notifies_partner(client):
    with client.websocket_connect("/ws/chat") as alice:
        alice.send_json({"type": "register", "identity": "alice"})
        receive_until(alice, "registered")
        alice.send_json({"type": "find_partner"})
        receive_until(alice, "searching")

        with client.websocket_connect("/ws/chat") as bob:
            bob.send_json({"type": "register", "identity": "bob"})
            receive_until(bob, "registered")
            bob.send_json({"type": "find_partner"})
            receive_until(bob, "chat_started")
            receive_until(alice, "chat_started")

        assert poll_for(alice, "partner_disconnected") == {"partner": {"externalId": "bob"}}

    response = client.get("/chat/users/bob")
    assert response.status_code == 200
    assert response.json()["isActive"] is False
    assert response.json()["currentPartnerId"] == "alice"


def test_unknown_user_status(client):
    assert client.get("/api/v1/chat/users/ghost").status_code == 404
