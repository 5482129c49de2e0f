"""Domain models, ports and errors for orders.

This module contains the dataclasses used as DTOs for orders and products,
protocol definitions (ports) for the collaborators the checkout workflow
depends on (catalog, order store, unit of work, payment gateway and
notification sender), the error taxonomy raised by the services, and the
phone normalization rule used by mobile-money payments.

Nothing here depends on Django; persistence and I/O live in adapters.
"""

import re
import secrets
import time
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Protocol, Sequence


COUNTRY_CODE = "258"
MPESA_PREFIXES = ("84", "85")
EMOLA_PREFIXES = ("86", "87")


# ---- Enums ----
class PaymentMethod(str, Enum):
    """Payment methods accepted at checkout."""

    MPESA = "MPESA"
    EMOLA = "EMOLA"
    CARD = "CARD"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"

    @property
    def is_mobile_money(self) -> bool:
        return self in (PaymentMethod.MPESA, PaymentMethod.EMOLA)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderStatus(str, Enum):
    """Fulfilment status of an order.

    Orders start in PROCESSING; SHIPPED and DELIVERED are set by an
    administrator, CANCELLED by a failed payment or an administrator.
    """

    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# ---- Errors ----
class OrderError(ValueError):
    """Base class for workflow errors.

    ``str(error)`` is the short error code, mirroring how the views map
    codes to HTTP statuses. ``message`` is safe to show to customers while
    ``detail`` is meant for logs.
    """

    code = "ORDER_ERROR"
    message = "The order could not be processed."

    def __init__(self, message: str | None = None, detail: Any = None):
        super().__init__(self.code)
        if message is not None:
            self.message = message
        self.detail = detail


class OrderValidationError(OrderError):
    code = "VALIDATION_ERROR"
    message = "Incomplete or malformed order data."


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} was not found.", detail={"product_id": product_id})
        self.product_id = product_id


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        super().__init__(
            f"Insufficient stock for product {product_id}.",
            detail={"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id


class InvalidPhoneNumber(OrderError):
    code = "INVALID_PHONE_NUMBER"

    def __init__(self, phone: str):
        super().__init__(f"Phone number '{phone}' is not valid for mobile money.", detail={"phone": phone})


class ProviderCommunicationError(OrderError):
    """The payment provider rejected the request or could not be reached.

    ``provider_payload`` holds the provider's error body verbatim when one
    was received.
    """

    code = "PROVIDER_COMMUNICATION_ERROR"
    message = "Could not communicate with the payment service."

    def __init__(self, message: str | None = None, provider_payload: Any = None, detail: Any = None):
        super().__init__(message, detail=detail if detail is not None else provider_payload)
        self.provider_payload = provider_payload


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, key: str):
        super().__init__("Order not found.", detail={"key": key})


class NotificationError(Exception):
    """Raised by notification senders; never escapes the services."""


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CustomerInfo:
    """Customer contact data. ``phone`` is used for payment and notifications."""

    name: str
    phone: str
    address: str


@dataclass(frozen=True)
class CartLine:
    """A requested product and quantity, as submitted at checkout."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: Decimal
    stock: int


@dataclass(frozen=True)
class LineItem:
    """An order line with the unit price snapshotted at purchase time."""

    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class ProviderCorrelation:
    """Identifiers exchanged with the payment provider for one order."""

    third_party_reference: str
    conversation_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier, or None until the order store assigns it.
        tracking_id: Customer-facing identifier, fixed at creation.
        customer: Contact details of the buyer.
        lines: Ordered line items with snapshotted prices.
        payment_method: How the customer pays.
        correlation: Provider reference and acknowledgment fields.
        payment_status: Starts PENDING.
        order_status: Starts PROCESSING.
        currency: ISO currency code; the shop sells in meticais.
    """

    id: uuid.UUID | None
    tracking_id: str
    customer: CustomerInfo
    lines: List[LineItem]
    payment_method: PaymentMethod
    correlation: ProviderCorrelation
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PROCESSING
    currency: str = "MZN"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def total_amount(self) -> Decimal:
        """Sum of unit price times quantity over all lines."""
        return sum((line.subtotal for line in self.lines), Decimal("0"))


@dataclass(frozen=True)
class PaymentRequest:
    """Payment initiation request sent to a mobile-money provider."""

    reference: str
    amount: Decimal
    phone: str


@dataclass(frozen=True)
class PaymentAck:
    """Initial acknowledgment returned by the provider.

    ``raw`` keeps the provider's full response body so it can be returned
    to the client.
    """

    conversation_id: Optional[str]
    response_code: Optional[str]
    response_description: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    provider_response: Optional[dict] = None


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of processing a provider callback.

    ``applied`` is False when the callback was a duplicate and no state
    changed.
    """

    order: Order
    applied: bool


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Port describing the catalog operations used by checkout.

    All calls participate in the unit of work opened by the caller.
    """

    def find_by_id(self, product_id: str) -> Product | None:
        raise NotImplementedError()

    def reserve_stock(self, product_id: str, quantity: int) -> None:
        """Decrement stock by ``quantity``.

        Raises:
            InsufficientStock: If the decrement would make stock negative.
        """
        raise NotImplementedError()

    def restore_stock(self, product_id: str, quantity: int) -> None:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port describing order persistence."""

    def create(self, order: Order) -> Order:
        raise NotImplementedError()

    def find_by_id(self, order_id, for_update: bool = False) -> Order | None:
        raise NotImplementedError()

    def find_by_provider_reference(self, reference: str, for_update: bool = False) -> Order | None:
        raise NotImplementedError()

    def update(self, order: Order) -> Order:
        raise NotImplementedError()


class UnitOfWorkPort(Protocol):
    """Port describing an atomic unit of work.

    ``atomic()`` returns a context manager; an exception leaving the block
    discards every catalog and order write made inside it.
    """

    def atomic(self) -> AbstractContextManager:
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing a mobile-money payment provider."""

    def initiate(self, request: PaymentRequest) -> PaymentAck:
        """Submit a payment initiation request.

        Raises:
            ProviderCommunicationError: When the provider rejects the
                request, times out or cannot be reached.
        """
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Port describing the customer notification channel."""

    def send(self, to: str, text: str) -> None:
        """Deliver ``text`` to the contact address ``to``.

        Raises:
            NotificationError: When delivery fails.
        """
        raise NotImplementedError()


# ---- Helpers ----
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str, prefixes: Sequence[str] = MPESA_PREFIXES) -> str:
    """Normalize a phone number to the provider's MSISDN format.

    Non-digits are stripped and one leading ``0`` is dropped. A 9-digit
    number starting with one of ``prefixes`` gets the country code; a
    12-digit number already starting with the country code is returned
    unchanged.

    Raises:
        InvalidPhoneNumber: For any other shape.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if digits.startswith("0"):
        digits = digits[1:]
    if len(digits) == 9 and digits[:2] in prefixes:
        return f"{COUNTRY_CODE}{digits}"
    if len(digits) == 12 and digits.startswith(COUNTRY_CODE):
        return digits
    raise InvalidPhoneNumber(phone)


def new_provider_reference(prefix: str = "PERFUME") -> str:
    """Return a third-party reference unique across concurrent checkouts."""
    return f"{prefix}_{time.time_ns() // 1_000_000}{secrets.token_hex(3).upper()}"


def new_tracking_id() -> str:
    return uuid.uuid4().hex[:12].upper()


def format_amount(amount: Decimal) -> str:
    """Render an amount the way the provider expects it: ``200.00`` -> ``200``."""
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal("1")))
    return format(amount.normalize(), "f")
