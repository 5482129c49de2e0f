import uuid
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from services.payments import main

URL = "/ipg/v1x/c2bPayment/singleStage/"
CALLBACK_URL = "http://shop.test/api/payments/mpesa/callback/"


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def callbacks(monkeypatch):
    """Capture callback POSTs instead of sending them."""
    sent = []

    def fake_post(url, json=None, timeout=None, **kw):
        sent.append({"url": url, "json": json})
        return httpx.Response(200)

    monkeypatch.setattr(main, "CALLBACK_URL", CALLBACK_URL)
    monkeypatch.setattr(main, "CALLBACK_DELAY", 0.0)
    monkeypatch.setattr(main, "CALLBACK_BACKOFF_BASE", 0.0)
    monkeypatch.setattr(main.httpx, "post", fake_post)
    return sent


def _body(**overrides):
    ref = f"PERFUME_{uuid.uuid4().hex[:12].upper()}"
    body = {
        "input_TransactionReference": ref,
        "input_CustomerMSISDN": "258841234567",
        "input_Amount": "200",
        "input_ThirdPartyReference": ref,
        "input_ServiceProviderCode": "",
    }
    body.update(overrides)
    return body


def test_payment_is_acknowledged_and_callback_delivered(client, callbacks):
    body = _body()

    r = client.post(URL, json=body)

    assert r.status_code == 201
    ack = r.json()
    assert ack["output_ResponseCode"] == "INS-0"
    assert ack["output_ThirdPartyReference"] == body["input_ThirdPartyReference"]
    assert ack["output_ConversationID"]

    assert len(callbacks) == 1
    cb = callbacks[0]
    assert cb["url"] == CALLBACK_URL
    assert cb["json"]["input_ThirdPartyReference"] == body["input_ThirdPartyReference"]
    assert cb["json"]["input_ResultCode"] == "INS-0"
    assert cb["json"]["input_ConversationID"] == ack["output_ConversationID"]

    stored = client.get(f"/payments/{body['input_ThirdPartyReference']}").json()
    assert stored["amount"] == "200.00"
    assert stored["callback_delivered"] is True


def test_amount_over_balance_fails_in_callback(client, callbacks, monkeypatch):
    monkeypatch.setattr(main, "BALANCE_LIMIT", Decimal("500"))

    r = client.post(URL, json=_body(input_Amount="1000"))

    assert r.status_code == 201
    assert callbacks[0]["json"]["input_ResultCode"] == "INS-2006"
    assert callbacks[0]["json"]["input_ResultDesc"] == "Insufficient balance"


def test_identical_retry_replays_ack_without_second_callback(client, callbacks):
    body = _body()

    r1 = client.post(URL, json=body)
    r2 = client.post(URL, json=body)

    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert len(callbacks) == 1


def test_reused_reference_with_other_payload_is_rejected(client, callbacks):
    body = _body()
    assert client.post(URL, json=body).status_code == 201

    r = client.post(URL, json={**body, "input_Amount": "300"})

    assert r.status_code == 409
    assert r.json()["output_ResponseCode"] == "INS-10"


def test_callback_is_retried_until_accepted(client, monkeypatch):
    attempts = []

    def flaky_post(url, json=None, timeout=None, **kw):
        attempts.append(json)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused")
        if len(attempts) == 2:
            return httpx.Response(500)
        return httpx.Response(200)

    monkeypatch.setattr(main, "CALLBACK_URL", CALLBACK_URL)
    monkeypatch.setattr(main, "CALLBACK_RETRIES", 3)
    monkeypatch.setattr(main, "CALLBACK_DELAY", 0.0)
    monkeypatch.setattr(main, "CALLBACK_BACKOFF_BASE", 0.0)
    monkeypatch.setattr(main.httpx, "post", flaky_post)
    body = _body()

    client.post(URL, json=body)

    assert len(attempts) == 3
    assert client.get(f"/payments/{body['input_ThirdPartyReference']}").json()["callback_delivered"] is True


def test_first_callback_attempt_waits_for_merchant_commit(client, callbacks, monkeypatch):
    events = []
    monkeypatch.setattr(main, "CALLBACK_DELAY", 0.75)
    monkeypatch.setattr(main.time, "sleep", lambda seconds: events.append(("sleep", seconds)))
    fake_post = main.httpx.post

    def post_after_wait(url, json=None, timeout=None, **kw):
        events.append(("post", url))
        return fake_post(url, json=json, timeout=timeout, **kw)

    monkeypatch.setattr(main.httpx, "post", post_after_wait)

    client.post(URL, json=_body())

    assert events == [("sleep", 0.75), ("post", CALLBACK_URL)]
    assert len(callbacks) == 1


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"input_CustomerMSISDN": "841234567"}, "INS-2051"),
        ({"input_CustomerMSISDN": "25884123456x"}, "INS-2051"),
        ({"input_Amount": "abc"}, "INS-21"),
        ({"input_Amount": "-5"}, "INS-21"),
        ({"input_Amount": "NaN"}, "INS-21"),
    ],
)
def test_invalid_parameters(client, callbacks, overrides, code):
    r = client.post(URL, json=_body(**overrides))
    assert r.status_code == 400
    assert r.json()["output_ResponseCode"] == code
    assert callbacks == []


def test_missing_parameters(client):
    body = _body()
    del body["input_Amount"]
    r = client.post(URL, json=body)
    assert r.status_code == 400
    assert r.json()["output_ResponseCode"] == "INS-20"


def test_wrong_api_key(client, monkeypatch):
    monkeypatch.setattr(main, "API_KEY", "sandbox-key")

    assert client.post(URL, json=_body()).status_code == 401
    r = client.post(URL, json=_body(), headers={"Authorization": "Bearer sandbox-key"})
    assert r.status_code == 201


def test_wrong_service_provider_code(client, monkeypatch):
    monkeypatch.setattr(main, "SERVICE_PROVIDER_CODE", "171717")
    r = client.post(URL, json=_body(input_ServiceProviderCode="000000"))
    assert r.status_code == 400
    assert r.json()["output_ResponseCode"] == "INS-13"


def test_unknown_payment(client):
    r = client.get("/payments/PERFUME_UNKNOWN")
    assert r.status_code == 404
    assert r.json()["output_ResponseCode"] == "INS-2002"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "rid-1"})
    assert r.json() == {"ok": True}
    assert r.headers["X-Request-ID"] == "rid-1"
