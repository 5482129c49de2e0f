"""In-process adapters for the orders domain ports.

These adapters implement the ports without a database or network calls.
``PaymentGatewayStub`` and ``LoggingNotifier`` are wired by the providers
when HTTP adapters are disabled (tests and local development). The
in-memory catalog, order store and unit of work back the domain service
tests with deterministic behaviour.
"""

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .domain import (
    CatalogPort,
    InsufficientStock,
    NotifierPort,
    Order,
    OrderStorePort,
    PaymentAck,
    PaymentGatewayPort,
    PaymentRequest,
    Product,
    UnitOfWorkPort,
    format_amount,
)

logger = logging.getLogger(__name__)


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Acknowledges every request the way the provider does on success and
    remembers the requests it received.
    """

    def __init__(self, response_code: str = "INS-0"):
        self.response_code = response_code
        self.requests: List[PaymentRequest] = []

    def initiate(self, request: PaymentRequest) -> PaymentAck:
        self.requests.append(request)
        conversation_id = uuid.uuid4().hex
        raw = {
            "output_ConversationID": conversation_id,
            "output_ResponseCode": self.response_code,
            "output_ResponseDesc": "Request processed successfully",
            "output_ThirdPartyReference": request.reference,
            "output_Amount": format_amount(request.amount),
        }
        return PaymentAck(
            conversation_id=conversation_id,
            response_code=self.response_code,
            response_description=raw["output_ResponseDesc"],
            raw=raw,
        )


class LoggingNotifier(NotifierPort):
    """Notifier that writes messages to the log instead of a channel."""

    def __init__(self):
        self.sent: List[tuple[str, str]] = []

    def send(self, to: str, text: str) -> None:
        self.sent.append((to, text))
        logger.info("notification", extra={"to": to, "text": text})


class InMemoryCatalog(CatalogPort):
    def __init__(self, products: Optional[List[Product]] = None):
        self.products: Dict[str, Product] = {p.id: p for p in products or []}

    def add(self, product_id: str, price, stock: int, name: str = "") -> Product:
        product = Product(id=product_id, name=name or product_id, price=Decimal(str(price)), stock=stock)
        self.products[product_id] = product
        return product

    def stock(self, product_id: str) -> int:
        return self.products[product_id].stock

    def find_by_id(self, product_id: str) -> Product | None:
        return self.products.get(product_id)

    def reserve_stock(self, product_id: str, quantity: int) -> None:
        product = self.products[product_id]
        if product.stock < quantity:
            raise InsufficientStock(product_id, quantity, product.stock)
        self.products[product_id] = replace(product, stock=product.stock - quantity)

    def restore_stock(self, product_id: str, quantity: int) -> None:
        product = self.products[product_id]
        self.products[product_id] = replace(product, stock=product.stock + quantity)


class InMemoryOrderStore(OrderStorePort):
    """Order store keeping deep copies so callers cannot mutate stored state."""

    def __init__(self):
        self.orders: Dict[uuid.UUID, Order] = {}

    def create(self, order: Order) -> Order:
        now = datetime.now(timezone.utc)
        stored = replace(copy.deepcopy(order), id=uuid.uuid4(), created_at=now, updated_at=now)
        self.orders[stored.id] = stored
        return copy.deepcopy(stored)

    def find_by_id(self, order_id, for_update: bool = False) -> Order | None:
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    def find_by_provider_reference(self, reference: str, for_update: bool = False) -> Order | None:
        for order in self.orders.values():
            if order.correlation.third_party_reference == reference:
                return copy.deepcopy(order)
        return None

    def update(self, order: Order) -> Order:
        if order.id not in self.orders:
            raise KeyError(order.id)
        stored = replace(copy.deepcopy(order), updated_at=datetime.now(timezone.utc))
        self.orders[order.id] = stored
        return copy.deepcopy(stored)


class InMemoryUnitOfWork(UnitOfWorkPort):
    """Serializes units of work with a lock and restores snapshots on error."""

    def __init__(self, catalog: InMemoryCatalog, orders: InMemoryOrderStore):
        self.catalog = catalog
        self.orders = orders
        self._lock = threading.RLock()

    @contextmanager
    def atomic(self):
        with self._lock:
            products = dict(self.catalog.products)
            orders = dict(self.orders.orders)
            try:
                yield self
            except BaseException:
                self.catalog.products = products
                self.orders.orders = orders
                raise
