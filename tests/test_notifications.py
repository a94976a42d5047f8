import asyncio

import pytest
import resend
from fastapi.testclient import TestClient

from database import get_db
from errors import UpstreamError
from mailer import Mailer, build_status_email_html, short_order_id
import main
from main import app
from notifications import Broadcaster


class _BrokenSocket:
    async def accept(self):
        pass

    async def receive_text(self):
        raise RuntimeError("connection reset")


@pytest.fixture
def live_client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestBroadcaster:
    def test_emit_without_listeners_is_a_no_op(self):
        hub = Broadcaster()

        hub.emit("newOrder", {"order_id": "1"})

        assert hub.connection_count == 0

    def test_websocket_receives_events(self, live_client, admin):
        with live_client.websocket_connect("/ws/notifications") as websocket:
            response = live_client.post("/api/admin/test-notification", headers=admin["headers"])
            message = websocket.receive_json()

        assert response.status_code == 200
        assert message["event"] == "newOrder"
        assert message["data"]["order_id"] == "test-order"
        assert message["data"]["test"] is True

    def test_customer_cannot_trigger_test_event(self, live_client, customer):
        assert live_client.post("/api/admin/test-notification", headers=customer["headers"]).status_code == 403

    def test_socket_is_released_when_receive_fails(self, monkeypatch):
        hub = Broadcaster()
        monkeypatch.setattr(main, "broadcaster", hub)

        with pytest.raises(RuntimeError):
            asyncio.run(main.notifications_socket(_BrokenSocket()))

        assert hub.connection_count == 0


class TestMailer:
    def test_unconfigured_skips(self, monkeypatch):
        monkeypatch.setattr(resend.Emails, "send", lambda params: pytest.fail("should not send"))

        assert Mailer(api_key="").send_order_status_email("a@example.com", "abc123def456", "shipped") is False

    def test_status_email_payload(self, monkeypatch):
        sent = []

        def fake_send(params):
            sent.append(params)
            return {"id": "email_1"}

        monkeypatch.setattr(resend.Emails, "send", fake_send)

        assert Mailer(api_key="re_live", sender="Shop <shop@example.com>").send_order_status_email(
            "a@example.com", "65f0c0ffee00000000abc123", "shipped")

        assert sent[0]["to"] == ["a@example.com"]
        assert sent[0]["from"] == "Shop <shop@example.com>"
        assert sent[0]["subject"] == "Order Shipped - Order #ABC123"
        assert "3-5 business days" in sent[0]["html"]
        assert resend.api_key == "re_live"

    def test_provider_failure_raises(self, monkeypatch):
        def failing_send(params):
            raise RuntimeError("rate limited")

        monkeypatch.setattr(resend.Emails, "send", failing_send)

        with pytest.raises(UpstreamError):
            Mailer(api_key="re_live").send("a@example.com", "Hi", "Body")

    def test_unknown_status_uses_received_template(self):
        html = build_status_email_html("0000ff", "on-hold")

        assert "Order Received" in html
        assert short_order_id("0000ff") == "0000FF"
