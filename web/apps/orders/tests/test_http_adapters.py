"""Unit tests for the HTTP adapters to the payment provider and the
messaging gateway.

These tests verify that the HTTP clients handle success, rejection and
network error conditions correctly by monkeypatching ``httpx.Client.post``
and asserting the adapter behavior. Each client gets its own circuit
breaker so failures do not leak between tests.
"""

from decimal import Decimal

import httpx
import pytest

from apps.orders.domain import NotificationError, PaymentRequest, ProviderCommunicationError
from apps.orders.http_adapters import CircuitBreaker, HttpNotificationSender, HttpPaymentGatewayClient

API_URL = "https://provider.test/ipg/v1x/c2bPayment/singleStage/"
REQUEST = PaymentRequest(reference="PERFUME_1700000000000ABC123", amount=Decimal("200.00"), phone="258841234567")


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``.
    """

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}
        self.text = str(self._json)

    def json(self):
        return self._json


def _gateway(**kw):
    return HttpPaymentGatewayClient(api_url=API_URL, breaker=CircuitBreaker("test-payments", 5, 60), **kw)


def _recording_post(responses, calls):
    def fake_post(self, url, json=None, headers=None, **kw):
        calls.append({"url": url, "json": json, "headers": headers})
        item = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    return fake_post


def test_gateway_initiate_ok(monkeypatch):
    """201 with output_* fields becomes a PaymentAck; payload uses input_* fields."""
    calls = []
    ack = {
        "output_ConversationID": "conv-1",
        "output_TransactionID": "tx-1",
        "output_ResponseCode": "INS-0",
        "output_ResponseDesc": "Request processed successfully",
        "output_ThirdPartyReference": REQUEST.reference,
    }
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(201, ack)], calls), raising=True)

    result = _gateway(auth_token="secret", service_provider_code="171717").initiate(REQUEST)

    assert result.conversation_id == "conv-1"
    assert result.response_code == "INS-0"
    assert result.raw == ack
    sent = calls[0]
    assert sent["url"] == API_URL
    assert sent["json"] == {
        "input_TransactionReference": REQUEST.reference,
        "input_CustomerMSISDN": "258841234567",
        "input_Amount": "200",
        "input_ThirdPartyReference": REQUEST.reference,
        "input_ServiceProviderCode": "171717",
    }
    assert sent["headers"]["Authorization"] == "Bearer secret"
    assert sent["headers"]["Origin"] == "*"


def test_gateway_rejection_carries_provider_body(monkeypatch):
    calls = []
    body = {"output_ResponseCode": "INS-2006", "output_ResponseDesc": "Insufficient balance"}
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(400, body)], calls), raising=True)

    with pytest.raises(ProviderCommunicationError) as e:
        _gateway().initiate(REQUEST)

    assert len(calls) == 1
    assert e.value.provider_payload == body
    assert e.value.message == "Payment transaction failed: Insufficient balance"


def test_gateway_rejection_uses_output_error(monkeypatch):
    body = {"output_error": "Invalid API key"}
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(401, body)], []), raising=True)

    with pytest.raises(ProviderCommunicationError) as e:
        _gateway().initiate(REQUEST)

    assert e.value.message == "Payment transaction failed: Invalid API key"


class HtmlResp(DummyResp):
    def __init__(self, status_code=200):
        super().__init__(status_code)
        self.text = "<html>maintenance</html>"

    def json(self):
        raise ValueError("Expecting value")


@pytest.mark.parametrize("resp", [HtmlResp(200), DummyResp(201, ["INS-0"])])
def test_gateway_unreadable_ack_is_a_provider_error(monkeypatch, resp):
    monkeypatch.setattr(httpx.Client, "post", _recording_post([resp], []), raising=True)
    breaker = CircuitBreaker("test-payments", 5, 60)

    with pytest.raises(ProviderCommunicationError) as e:
        HttpPaymentGatewayClient(api_url=API_URL, breaker=breaker).initiate(REQUEST)

    assert e.value.provider_payload == resp.text
    assert breaker.state == "CLOSED"


def test_gateway_retries_5xx_then_succeeds(monkeypatch):
    calls = []
    ok = DummyResp(201, {"output_ConversationID": "conv-2", "output_ResponseCode": "INS-0"})
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(503), ok], calls), raising=True)

    result = _gateway().initiate(REQUEST)

    assert result.conversation_id == "conv-2"
    assert len(calls) == 2
    assert calls[1]["headers"]["X-Retry-Count"] == "1"


def test_gateway_network_error_after_retries(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = []
    monkeypatch.setattr(httpx.Client, "post", _recording_post([httpx.ConnectError("boom")], calls), raising=True)

    with pytest.raises(ProviderCommunicationError) as e:
        _gateway().initiate(REQUEST)

    assert len(calls) == 3
    assert e.value.provider_payload is None
    assert str(e.value) == "PROVIDER_COMMUNICATION_ERROR"


def test_gateway_timeout_is_not_retried(monkeypatch):
    calls = []
    monkeypatch.setattr(httpx.Client, "post", _recording_post([httpx.ReadTimeout("slow")], calls), raising=True)

    with pytest.raises(ProviderCommunicationError):
        _gateway().initiate(REQUEST)

    assert len(calls) == 1


def test_gateway_open_circuit_short_circuits(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    calls = []
    monkeypatch.setattr(httpx.Client, "post", _recording_post([httpx.ConnectError("boom")], calls), raising=True)
    client = HttpPaymentGatewayClient(api_url=API_URL, breaker=CircuitBreaker("test", 1, 60))

    with pytest.raises(ProviderCommunicationError):
        client.initiate(REQUEST)
    assert client.breaker.state == "OPEN"

    with pytest.raises(ProviderCommunicationError) as e:
        client.initiate(REQUEST)
    assert e.value.detail == "CIRCUIT_OPEN"
    assert len(calls) == 1


def test_circuit_half_open_probe_closes_on_success():
    cb = CircuitBreaker("probe", 1, 0.0)
    cb.on_failure()
    assert cb.state == "HALF_OPEN"
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(RuntimeError):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"


def _notifier():
    return HttpNotificationSender("http://messaging:9002/", breaker=CircuitBreaker("test-messaging", 5, 60))


def test_notifier_send_ok(monkeypatch):
    calls = []
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(202, {"status": "QUEUED"})], calls), raising=True)

    _notifier().send("841234567", "hello")

    assert calls[0]["url"] == "http://messaging:9002/messages"
    assert calls[0]["json"] == {"to": "841234567", "text": "hello"}


def test_notifier_reconnects_once_after_transport_error(monkeypatch):
    calls = []
    responses = [httpx.RemoteProtocolError("connection reset"), DummyResp(202)]
    monkeypatch.setattr(httpx.Client, "post", _recording_post(responses, calls), raising=True)
    sender = _notifier()

    sender.send("841234567", "hello")

    assert len(calls) == 2
    sender.close()


def test_notifier_failure_raises_notification_error(monkeypatch):
    monkeypatch.setattr(httpx.Client, "post", _recording_post([httpx.ConnectError("down")], []), raising=True)

    with pytest.raises(NotificationError):
        _notifier().send("841234567", "hello")


def test_notifier_rejected_message_raises(monkeypatch):
    monkeypatch.setattr(httpx.Client, "post", _recording_post([DummyResp(422, {"detail": "INVALID_RECIPIENT"})], []), raising=True)

    with pytest.raises(NotificationError):
        _notifier().send("???", "hello")
