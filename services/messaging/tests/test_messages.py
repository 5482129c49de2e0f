import pytest
from fastapi.testclient import TestClient

from services.messaging import main


class RecordingChannel:
    def __init__(self, fail=False):
        self.fail = fail
        self.delivered = []

    def deliver(self, jid, body):
        if self.fail:
            raise ConnectionError("session closed")
        self.delivered.append((jid, body))


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.mark.parametrize(
    "phone, jid",
    [
        ("258841234567", "258841234567@s.whatsapp.net"),
        ("+258 84 123 4567", "258841234567@s.whatsapp.net"),
        ("841234567", "841234567@s.whatsapp.net"),
    ],
)
def test_to_jid(phone, jid):
    assert main.to_jid(phone) == jid


def test_to_jid_rejects_no_digits():
    with pytest.raises(ValueError):
        main.to_jid("n/a")


def test_message_is_queued_and_sent(client, monkeypatch):
    channel = RecordingChannel()
    monkeypatch.setattr(main, "channel", channel)

    r = client.post("/messages", json={"to": "+258 84 123 4567", "text": "Your order #ABC was created"})

    assert r.status_code == 202
    body = r.json()
    assert body["jid"] == "258841234567@s.whatsapp.net"
    assert body["status"] == "QUEUED"
    assert channel.delivered == [("258841234567@s.whatsapp.net", "Your order #ABC was created")]
    assert client.get(f"/messages/{body['id']}").json()["status"] == "SENT"


def test_failed_delivery_is_recorded(client, monkeypatch):
    monkeypatch.setattr(main, "channel", RecordingChannel(fail=True))

    r = client.post("/messages", json={"to": "841234567", "text": "hello"})

    assert r.status_code == 202
    assert client.get(f"/messages/{r.json()['id']}").json()["status"] == "FAILED"


def test_invalid_recipient(client):
    r = client.post("/messages", json={"to": "n/a", "text": "hello"})
    assert r.status_code == 422
    assert r.json()["detail"] == "INVALID_RECIPIENT"


def test_unknown_message(client):
    r = client.get("/messages/00000000-0000-0000-0000-000000000000")
    assert r.status_code == 404
