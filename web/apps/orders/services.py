"""Domain services for checkout, payment callbacks and status updates.

The services orchestrate the ports defined in ``domain``. They never talk
to Django or the network directly: the catalog, order store and unit of
work are injected together with the payment gateways and the notification
sender, so each service can run against in-memory adapters in tests.
"""

import logging
from collections import Counter
from dataclasses import replace
from typing import Callable, Iterable, Mapping, Sequence

from . import messages
from .domain import (
    EMOLA_PREFIXES,
    MPESA_PREFIXES,
    CallbackOutcome,
    CartLine,
    CatalogPort,
    CheckoutResult,
    CustomerInfo,
    InsufficientStock,
    LineItem,
    NotifierPort,
    Order,
    OrderError,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    OrderValidationError,
    PaymentGatewayPort,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    ProductNotFound,
    ProviderCommunicationError,
    ProviderCorrelation,
    UnitOfWorkPort,
    new_provider_reference,
    new_tracking_id,
    normalize_phone,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIXES = {
    PaymentMethod.MPESA: MPESA_PREFIXES,
    PaymentMethod.EMOLA: EMOLA_PREFIXES,
}


class _NotifyingService:
    """Shared best-effort notification helper."""

    def __init__(self, notifier: NotifierPort):
        self.notifier = notifier

    def _notify(self, order: Order, text: str) -> None:
        try:
            self.notifier.send(order.customer.phone, text)
        except Exception:
            logger.warning(
                "notification failed",
                exc_info=True,
                extra={"order_id": str(order.id), "tracking_id": order.tracking_id},
            )


class CheckoutService(_NotifyingService):
    """Converts a cart into a persisted order and initiates its payment.

    Stock reservation, price snapshotting, order persistence and the
    provider initiation call run in a single unit of work. Any error raised
    inside it rolls every write back, so a failed checkout leaves no order
    and no stock change behind. The "order created" notification is sent
    only after the unit of work has committed.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        orders: OrderStorePort,
        uow: UnitOfWorkPort,
        gateways: Mapping[PaymentMethod, PaymentGatewayPort],
        notifier: NotifierPort,
        reference_prefix: str = "PERFUME",
        phone_prefixes: Mapping[PaymentMethod, Sequence[str]] | None = None,
        reference_factory: Callable[[str], str] = new_provider_reference,
    ):
        super().__init__(notifier)
        self.catalog = catalog
        self.orders = orders
        self.uow = uow
        self.gateways = dict(gateways)
        self.reference_prefix = reference_prefix
        self.phone_prefixes = dict(phone_prefixes or DEFAULT_PREFIXES)
        self.reference_factory = reference_factory

    def checkout(
        self,
        customer: CustomerInfo,
        cart: Iterable[CartLine],
        payment_method: PaymentMethod,
    ) -> CheckoutResult:
        """Place an order for ``cart`` and start its payment.

        Args:
            customer: Buyer contact data; the phone is also the payment
                account for mobile-money methods.
            cart: Requested products and quantities.
            payment_method: One of ``PaymentMethod``.

        Returns:
            CheckoutResult with the committed order and the provider's
            raw initiation response (None for non mobile-money methods).

        Raises:
            OrderValidationError: Empty cart, bad quantity or missing
                customer fields.
            InvalidPhoneNumber: The phone cannot be used for mobile money.
            ProductNotFound: A cart line references an unknown product.
            InsufficientStock: A line asks for more than is in stock.
            ProviderCommunicationError: The provider rejected the request
                or could not be reached.
        """
        cart = list(cart)
        try:
            msisdn = self._validate(customer, cart, payment_method)
            with self.uow.atomic():
                order, ack = self._place(customer, cart, payment_method, msisdn)
        except OrderError as e:
            logger.warning(
                "checkout aborted",
                extra={"code": e.code, "detail": e.detail, "payment_method": getattr(payment_method, "value", payment_method)},
            )
            raise

        logger.info(
            "order created",
            extra={
                "order_id": str(order.id),
                "tracking_id": order.tracking_id,
                "reference": order.correlation.third_party_reference,
                "payment_method": order.payment_method.value,
            },
        )
        self._notify(order, messages.order_created(order))
        return CheckoutResult(order=order, provider_response=ack.raw if ack else None)

    def _validate(self, customer: CustomerInfo, cart: list[CartLine], payment_method) -> str | None:
        if not cart:
            raise OrderValidationError("The cart is empty.", detail="EMPTY_CART")
        if not isinstance(payment_method, PaymentMethod):
            raise OrderValidationError("Unsupported payment method.", detail={"payment_method": payment_method})
        missing = [f for f in ("name", "phone", "address") if not (getattr(customer, f, "") or "").strip()]
        if missing:
            raise OrderValidationError("Customer information is incomplete.", detail={"missing": missing})
        for line in cart:
            if line.quantity < 1:
                raise OrderValidationError(
                    "Quantities must be at least 1.",
                    detail={"product_id": line.product_id, "quantity": line.quantity},
                )
        if payment_method.is_mobile_money:
            return normalize_phone(customer.phone, self.phone_prefixes.get(payment_method, MPESA_PREFIXES))
        return None

    def _place(self, customer, cart, payment_method, msisdn):
        # 1) Lock each distinct product once, in id order, so concurrent
        # carts listing the same products in another order cannot deadlock
        products = {pid: self.catalog.find_by_id(pid) for pid in sorted({line.product_id for line in cart})}

        # 2) Validate every line before touching stock
        requested = Counter()
        lines = []
        for line in cart:
            product = products[line.product_id]
            if product is None:
                raise ProductNotFound(line.product_id)
            requested[product.id] += line.quantity
            if requested[product.id] > product.stock:
                raise InsufficientStock(product.id, requested[product.id], product.stock)
            lines.append(LineItem(product_id=product.id, quantity=line.quantity, unit_price=product.price))

        # 3) Reserve stock
        for item in lines:
            self.catalog.reserve_stock(item.product_id, item.quantity)

        # 4) Persist pending order
        order = self.orders.create(
            Order(
                id=None,
                tracking_id=new_tracking_id(),
                customer=customer,
                lines=lines,
                payment_method=payment_method,
                correlation=ProviderCorrelation(third_party_reference=self.reference_factory(self.reference_prefix)),
            )
        )

        # 5) Payment
        ack = None
        if payment_method.is_mobile_money:
            gateway = self.gateways.get(payment_method)
            if gateway is None:
                raise ProviderCommunicationError(
                    "This payment method is not available.",
                    detail={"payment_method": payment_method.value},
                )
            ack = gateway.initiate(
                PaymentRequest(
                    reference=order.correlation.third_party_reference,
                    amount=order.total_amount,
                    phone=msisdn,
                )
            )
            order.correlation = replace(
                order.correlation,
                conversation_id=ack.conversation_id,
                response_code=ack.response_code,
                response_description=ack.response_description,
            )
            order = self.orders.update(order)
        elif payment_method is PaymentMethod.CARD:
            order.payment_status = PaymentStatus.PAID
            order = self.orders.update(order)
        return order, ack


class PaymentCallbackService(_NotifyingService):
    """Reconciles an order with the provider's asynchronous payment result.

    Callbacks are matched by third-party reference only. The order row is
    locked for the duration of the unit of work and state only changes
    while the payment is still pending, so duplicate or concurrent
    deliveries of the same callback restore stock and notify at most once.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        orders: OrderStorePort,
        uow: UnitOfWorkPort,
        notifier: NotifierPort,
        success_code: str = "INS-0",
    ):
        super().__init__(notifier)
        self.catalog = catalog
        self.orders = orders
        self.uow = uow
        self.success_code = success_code

    def handle(self, reference: str, result_code: str, result_description: str | None = None) -> CallbackOutcome:
        """Apply a payment result to the order carrying ``reference``.

        Raises:
            OrderNotFound: No order has this provider reference.
        """
        with self.uow.atomic():
            order = self.orders.find_by_provider_reference(reference, for_update=True)
            if order is None:
                raise OrderNotFound(reference)
            if order.payment_status is not PaymentStatus.PENDING or not order.payment_method.is_mobile_money:
                logger.info(
                    "callback ignored",
                    extra={"reference": reference, "payment_status": order.payment_status.value, "result_code": result_code},
                )
                return CallbackOutcome(order=order, applied=False)

            order.correlation = replace(
                order.correlation,
                response_code=result_code,
                response_description=result_description,
            )
            if result_code == self.success_code:
                order.payment_status = PaymentStatus.PAID
                if order.order_status not in (OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED):
                    order.order_status = OrderStatus.PROCESSING
                text = messages.payment_confirmed(order)
            else:
                order.payment_status = PaymentStatus.FAILED
                order.order_status = OrderStatus.CANCELLED
                for line in order.lines:
                    self.catalog.restore_stock(line.product_id, line.quantity)
                text = messages.payment_failed(order, result_description)
            order = self.orders.update(order)

        logger.info(
            "payment reconciled",
            extra={"reference": reference, "result_code": result_code, "payment_status": order.payment_status.value},
        )
        self._notify(order, text)
        return CallbackOutcome(order=order, applied=True)


class OrderStatusService(_NotifyingService):
    """Administrative fulfilment-status updates."""

    def __init__(self, orders: OrderStorePort, uow: UnitOfWorkPort, notifier: NotifierPort):
        super().__init__(notifier)
        self.orders = orders
        self.uow = uow

    def update_status(self, order_id, new_status: OrderStatus) -> Order:
        with self.uow.atomic():
            order = self.orders.find_by_id(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(str(order_id))
            order.order_status = OrderStatus(new_status)
            order = self.orders.update(order)
        self._notify(order, messages.status_changed(order))
        return order
