import uuid

import pytest

from apps.orders.adapters import InMemoryCatalog, InMemoryOrderStore, InMemoryUnitOfWork, LoggingNotifier
from apps.orders.domain import CartLine, CustomerInfo, OrderNotFound, OrderStatus, PaymentMethod
from apps.orders.services import CheckoutService, OrderStatusService


@pytest.fixture
def env():
    catalog = InMemoryCatalog()
    catalog.add("P1", "50.00", 3)
    orders = InMemoryOrderStore()
    uow = InMemoryUnitOfWork(catalog, orders)
    notifier = LoggingNotifier()
    checkout = CheckoutService(catalog, orders, uow, {}, LoggingNotifier())
    order = checkout.checkout(
        CustomerInfo(name="Rui", phone="+258 85 000 1111", address="Beira"),
        [CartLine("P1", 1)],
        PaymentMethod.CASH_ON_DELIVERY,
    ).order
    return orders, OrderStatusService(orders, uow, notifier), notifier, order


def test_update_status_persists_and_notifies(env):
    orders, service, notifier, order = env

    updated = service.update_status(order.id, OrderStatus.SHIPPED)

    assert updated.order_status is OrderStatus.SHIPPED
    assert orders.find_by_id(order.id).order_status is OrderStatus.SHIPPED
    assert notifier.sent == [("+258 85 000 1111", notifier.sent[0][1])]
    assert '"shipped"' in notifier.sent[0][1]
    assert order.tracking_id in notifier.sent[0][1]


def test_update_status_accepts_raw_value(env):
    orders, service, _, order = env
    assert service.update_status(order.id, "delivered").order_status is OrderStatus.DELIVERED


def test_unknown_order(env):
    _, service, notifier, _ = env
    with pytest.raises(OrderNotFound):
        service.update_status(uuid.uuid4(), OrderStatus.SHIPPED)
    assert notifier.sent == []
