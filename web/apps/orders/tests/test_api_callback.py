"""API tests for the provider callback endpoint."""

import pytest

from apps.orders import providers
from apps.orders.adapters import LoggingNotifier
from apps.orders.models import OrderModel

CREATE_URL = "/api/orders/"
CALLBACK_URL = "/api/payments/mpesa/callback/"


@pytest.fixture
def notifier(monkeypatch):
    n = LoggingNotifier()
    monkeypatch.setattr(providers, "get_notifier", lambda: n)
    return n


@pytest.fixture
def mpesa_order(client, make_product, notifier):
    """Place an M-Pesa order for 2 units out of 5; returns (order, product)."""
    product = make_product(price="100.00", stock=5)
    r = client.post(
        CREATE_URL,
        data={
            "customer_info": {"name": "Ana", "phone": "841234567", "address": "Maputo"},
            "products": [{"product_id": str(product.id), "quantity": 2}],
            "payment_method": "MPESA",
        },
        content_type="application/json",
    )
    assert r.status_code == 201
    notifier.sent.clear()
    return OrderModel.objects.get(pk=r.json()["id"]), product


def _callback(client, reference, code, desc=None):
    body = {"input_ThirdPartyReference": reference, "input_ResultCode": code}
    if desc is not None:
        body["input_ResultDesc"] = desc
    return client.post(CALLBACK_URL, data=body, content_type="application/json")


@pytest.mark.django_db
def test_success_callback_marks_order_paid(client, mpesa_order, notifier):
    order, product = mpesa_order

    r = _callback(client, order.third_party_reference, "INS-0", "Request processed successfully")

    assert r.status_code == 200
    assert r.json() == {"detail": "CALLBACK_PROCESSED"}
    order.refresh_from_db()
    assert order.payment_status == "paid"
    assert order.order_status == "processing"
    assert order.provider_response_code == "INS-0"
    product.refresh_from_db()
    assert product.stock == 3
    assert len(notifier.sent) == 1


@pytest.mark.django_db
def test_failure_callback_cancels_and_restores_stock(client, mpesa_order, notifier):
    order, product = mpesa_order

    r = _callback(client, order.third_party_reference, "INS-2006", "Insufficient balance")

    assert r.status_code == 200
    order.refresh_from_db()
    assert order.payment_status == "failed"
    assert order.order_status == "cancelled"
    assert order.provider_response_description == "Insufficient balance"
    product.refresh_from_db()
    assert product.stock == 5
    assert "Insufficient balance" in notifier.sent[0][1]


@pytest.mark.django_db
def test_duplicate_failure_callback_restores_stock_once(client, mpesa_order, notifier):
    order, product = mpesa_order

    assert _callback(client, order.third_party_reference, "INS-2006", "Insufficient balance").status_code == 200
    assert _callback(client, order.third_party_reference, "INS-2006", "Insufficient balance").status_code == 200

    product.refresh_from_db()
    assert product.stock == 5
    assert len(notifier.sent) == 1


@pytest.mark.django_db
def test_duplicate_success_callback_is_applied_once(client, mpesa_order, notifier):
    order, product = mpesa_order

    first = _callback(client, order.third_party_reference, "INS-0", "Request processed successfully")
    order.refresh_from_db()
    updated_at = order.updated_at
    second = _callback(client, order.third_party_reference, "INS-0", "Request processed successfully")

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"detail": "CALLBACK_PROCESSED"}
    order.refresh_from_db()
    assert order.payment_status == "paid"
    assert order.order_status == "processing"
    assert order.updated_at == updated_at
    product.refresh_from_db()
    assert product.stock == 3
    assert len(notifier.sent) == 1


@pytest.mark.django_db
def test_success_callback_keeps_cancelled_order_cancelled(client, mpesa_order, notifier):
    order, product = mpesa_order
    r = client.patch(
        f"/api/orders/{order.id}/status/", data={"order_status": "cancelled"}, content_type="application/json"
    )
    assert r.status_code == 200

    assert _callback(client, order.third_party_reference, "INS-0").status_code == 200

    order.refresh_from_db()
    assert order.payment_status == "paid"
    assert order.order_status == "cancelled"
    product.refresh_from_db()
    assert product.stock == 3


@pytest.mark.django_db
def test_unknown_reference_is_acknowledged(client, notifier):
    r = _callback(client, "PERFUME_DOES_NOT_EXIST", "INS-0")
    assert r.status_code == 200
    assert r.json() == {"detail": "CALLBACK_PROCESSED"}
    assert notifier.sent == []


@pytest.mark.django_db
def test_missing_reference_returns_400(client):
    r = client.post(CALLBACK_URL, data={"input_ResultCode": "INS-0"}, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_CALLBACK"


@pytest.mark.django_db
def test_unexpected_error_returns_500(client, mpesa_order, monkeypatch):
    order, _ = mpesa_order

    class Broken:
        def handle(self, *args, **kwargs):
            raise RuntimeError("db gone")

    monkeypatch.setattr(providers, "get_callback_service", lambda: Broken())

    r = _callback(client, order.third_party_reference, "INS-0")
    assert r.status_code == 500
