import json
import os

import pytest

import whats
from disconnect_policy import DisconnectReason
from whats import RateLimiter, create_app

AUTH = {"Authorization": "Bearer secret"}


@pytest.fixture()
def app(store, sessions, history, timers, monkeypatch):
    monkeypatch.setattr(whats, "check_internet_connection", lambda: True)
    return create_app(
        bot_options={
            "store": store,
            "session_factory": sessions,
            "history": history,
            "auto_replies": {"hola bot": "hello from the bot"},
            "supervisor_options": {"timer": timers, "max_retries": 5, "base_delay": 5, "delay_cap": 30},
        },
        api_key="secret",
        rate_limit=RateLimiter(5, 60),
    )


@pytest.fixture()
def bot(app):
    return app.config["BOT"]


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def connected(bot, sessions):
    bot.supervisor.start()
    sessions.current.emit("open")
    return sessions.current


def socket_events(socket_client, name):
    return [event["args"] for event in socket_client.get_received() if event["name"] == name]


def test_health_reports_connection_state(client, bot, connected):
    data = client.get("/health").get_json()

    assert data["success"] is True
    assert data["connected"] is True
    assert data["reconnecting"] is False
    assert data["retryAttempts"] == 0
    assert data["status"] == "ok"
    assert data["uptime"] >= 0
    assert data["keepAlive"]["totalPings"] == 0


def test_health_while_reconnecting(client, bot, sessions):
    bot.supervisor.start()
    sessions.current.emit("close", DisconnectReason.CONNECTION_LOST)

    data = client.get("/health").get_json()

    assert data["connected"] is False
    assert data["reconnecting"] is True
    assert data["retryAttempts"] == 1


def test_ping(client):
    data = client.get("/ping").get_json()

    assert data["pong"] is True
    assert data["connected"] is False


def test_status_endpoint(client, connected, store):
    data = client.get("/status").get_json()["data"]

    assert data["connected"] is True
    assert data["profile_exists"] is True
    assert data["profile_path"] == store.path
    assert data["credentials_saved_at"] is not None
    assert data["internet"] is True


def test_dashboard_page(client):
    response = client.get("/")

    assert response.status_code == 200
    assert b"socket.io" in response.data


def test_send_requires_auth(client, connected):
    response = client.post("/send-message", json={"phone": "573001234567", "message": "hi"})

    assert response.status_code == 401
    assert response.get_json() == {"success": False, "error": "Unauthorized"}


def test_send_requires_connection(client):
    response = client.post("/send-message", json={"phone": "573001234567", "message": "hi"}, headers=AUTH)

    assert response.status_code == 503
    assert response.get_json()["error"] == "WhatsApp not connected"


@pytest.mark.parametrize("payload, error", [
    ({"phone": "573001234567"}, "Phone and message are required"),
    ({"message": "hi"}, "Phone and message are required"),
    ({"phone": 573001234567, "message": "hi"}, "Phone and message must be strings"),
    ({"phone": "   ", "message": "hi"}, "Phone and message cannot be empty"),
])
def test_send_validates_payload(client, connected, payload, error):
    response = client.post("/send-message", json=payload, headers=AUTH)

    assert response.status_code == 400
    assert response.get_json()["error"] == error


def test_send_message_success(app, client, bot, connected):
    socket_client = app.config["SOCKETIO"].test_client(app)
    socket_client.get_received()

    response = client.post("/send-message", json={"phone": "+57 (300) 123-4567", "message": " hi there "},
                           headers=AUTH)

    assert response.status_code == 200
    assert response.get_json() == {"success": True}
    assert connected.sent == [("573001234567@s.whatsapp.net", "hi there")]

    record = bot.history.records()[0]
    assert record["type"] == "sent"
    assert record["from"] == "API Bot"
    assert record["contact"] == "573001234567@s.whatsapp.net"
    assert os.path.exists(bot.history.path)

    new_messages = socket_events(socket_client, "new-message")
    assert new_messages and new_messages[0][0]["text"] == "hi there"


def test_send_connection_failure_demotes_status(client, bot, connected, timers):
    connected.send_error = RuntimeError("chrome not reachable")

    response = client.post("/send-message", json={"phone": "573001234567", "message": "hi"}, headers=AUTH)

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to send message"
    assert bot.supervisor.connected is False
    assert timers.delays == [5]
    assert len(bot.history) == 0


def test_send_is_rate_limited(client, connected):
    codes = [
        client.post("/send-message", json={"phone": "573001234567", "message": "hi"}, headers=AUTH).status_code
        for _ in range(6)
    ]

    assert codes == [200, 200, 200, 200, 200, 429]


def test_rate_limiter_window():
    limiter = RateLimiter(2, 60)

    assert limiter.allow("a", now=0)
    assert limiter.allow("a", now=1)
    assert not limiter.allow("a", now=2)
    assert limiter.allow("b", now=2)
    assert limiter.allow("a", now=61)


def test_export_messages_csv(client, bot):
    bot.handle_incoming({"id": "abc", "from": "Ana", "contact": "Ana", "text": "hello"})

    response = client.get("/messages/export")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert b"abc,received,Ana,Ana,hello" in response.data


def test_dashboard_receives_state_on_connect(app, bot, sessions):
    bot.supervisor.start()
    sessions.current.emit("qr", "data:image/png;base64,QR")
    bot.history.add({"id": "1", "type": "received", "from": "Ana", "contact": "Ana", "text": "hi", "timestamp": "t"})

    socket_client = app.config["SOCKETIO"].test_client(app)
    received = socket_client.get_received()
    names = [event["name"] for event in received]

    assert "connection-status" in names
    assert "messages-history" in names
    qr_events = [event["args"][0] for event in received if event["name"] == "qr"]
    assert qr_events == ["data:image/png;base64,QR"]


def test_dashboard_receives_live_status(app, bot, sessions):
    socket_client = app.config["SOCKETIO"].test_client(app)
    socket_client.get_received()

    bot.supervisor.start()
    sessions.current.emit("open")

    statuses = socket_events(socket_client, "connection-status")
    assert {"connected": True, "reconnecting": False} in [args[0] for args in statuses]


def test_incoming_message_is_recorded_and_auto_replied(bot, connected):
    connected.emit("message", {"id": "m1", "from": "Ana", "contact": "Ana", "text": "Hola bot, how are you?"})

    records = bot.history.records()
    assert [r["type"] for r in records] == ["sent", "received"]
    assert records[0]["text"] == "hello from the bot"
    assert records[0]["from"] == "Bot"
    assert connected.sent == [("Ana", "hello from the bot")]


def test_incoming_messages_are_saved_every_five(bot, connected):
    for i in range(4):
        connected.emit("message", {"id": f"m{i}", "from": "Ana", "contact": "Ana", "text": f"msg {i}"})
    assert not os.path.exists(bot.history.path)

    connected.emit("message", {"id": "m4", "from": "Ana", "contact": "Ana", "text": "msg 4"})
    with open(bot.history.path) as f:
        assert len(json.load(f)) == 5


def test_shutdown_saves_and_preserves_session(bot, connected, store):
    bot.handle_incoming({"id": "x", "from": "Ana", "contact": "Ana", "text": "bye"})

    bot.shutdown()

    assert connected.closed
    assert not connected.logged_out
    assert os.path.exists(bot.history.path)
    assert os.path.exists(store.marker_path)


def test_rate_limiter_forgets_idle_clients():
    limiter = RateLimiter(2, 60)
    limiter.allow("a", now=0)
    limiter.allow("b", now=0)

    assert set(limiter._hits) == {"a", "b"}

    limiter.allow("c", now=61)

    assert set(limiter._hits) == {"c"}
