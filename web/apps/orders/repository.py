"""Repository layer for persisting orders.

This module maps domain ``Order`` objects to the Django ORM models and
back, and provides the unit of work used by the services. It keeps a thin
interface so the domain layer is not coupled to Django ORM details.
"""

from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.db import transaction

from .domain import (
    CustomerInfo,
    LineItem,
    Order,
    OrderStatus,
    OrderStorePort,
    PaymentMethod,
    PaymentStatus,
    ProviderCorrelation,
    UnitOfWorkPort,
)
from .models import OrderLineModel, OrderModel


class DjangoUnitOfWork(UnitOfWorkPort):
    """Unit of work backed by ``transaction.atomic``.

    Nested calls become savepoints, so a service running inside an outer
    transaction (e.g. a test case) still rolls back only its own writes.
    """

    def atomic(self):
        return transaction.atomic()


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        tracking_id=obj.tracking_id,
        customer=CustomerInfo(name=obj.customer_name, phone=obj.customer_phone, address=obj.customer_address),
        lines=[
            LineItem(product_id=str(line.product_id), quantity=line.quantity, unit_price=line.unit_price)
            for line in obj.lines.all()
        ],
        payment_method=PaymentMethod(obj.payment_method),
        payment_status=PaymentStatus(obj.payment_status),
        order_status=OrderStatus(obj.order_status),
        currency=obj.currency,
        correlation=ProviderCorrelation(
            third_party_reference=obj.third_party_reference,
            conversation_id=obj.provider_conversation_id,
            response_code=obj.provider_response_code,
            response_description=obj.provider_response_description,
        ),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class OrderRepository(OrderStorePort):
    """Repository that persists Order domain objects using Django ORM.

    Lines are written once on creation; ``update`` only touches the
    status and provider-correlation columns, which are the only fields
    that change after checkout.
    """

    def create(self, order: Order) -> Order:
        """Persist a new order together with its lines.

        Args:
            order: Domain ``Order`` without an id.

        Returns:
            The persisted order, with ``id`` and timestamps assigned.
        """
        obj = OrderModel.objects.create(
            tracking_id=order.tracking_id,
            customer_name=order.customer.name,
            customer_phone=order.customer.phone,
            customer_address=order.customer.address,
            payment_method=order.payment_method.value,
            payment_status=order.payment_status.value,
            order_status=order.order_status.value,
            total_amount=order.total_amount,
            currency=order.currency,
            third_party_reference=order.correlation.third_party_reference,
            provider_conversation_id=order.correlation.conversation_id,
            provider_response_code=order.correlation.response_code,
            provider_response_description=order.correlation.response_description,
        )
        OrderLineModel.objects.bulk_create(
            [
                OrderLineModel(
                    order=obj,
                    product_id=line.product_id,
                    position=position,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for position, line in enumerate(order.lines)
            ]
        )
        return self._get(obj.pk)

    def find_by_id(self, order_id, for_update: bool = False) -> Order | None:
        try:
            return self._first(OrderModel.objects.filter(pk=order_id), for_update)
        except (ValidationError, ValueError):
            return None

    def find_by_provider_reference(self, reference: str, for_update: bool = False) -> Order | None:
        return self._first(OrderModel.objects.filter(third_party_reference=reference), for_update)

    def update(self, order: Order) -> Order:
        obj = OrderModel.objects.get(pk=order.id)
        obj.payment_status = order.payment_status.value
        obj.order_status = order.order_status.value
        obj.provider_conversation_id = order.correlation.conversation_id
        obj.provider_response_code = order.correlation.response_code
        obj.provider_response_description = order.correlation.response_description
        obj.save(
            update_fields=[
                "payment_status",
                "order_status",
                "provider_conversation_id",
                "provider_response_code",
                "provider_response_description",
                "updated_at",
            ]
        )
        return self._get(obj.pk)

    def page(self, page: int = 1, page_size: int = 20):
        """Return ``(count, page_number, orders)`` newest first."""
        qs = OrderModel.objects.prefetch_related("lines").order_by("-created_at")
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return p.count, page_obj.number, [_to_domain(o) for o in page_obj.object_list]

    def _get(self, pk) -> Order:
        return _to_domain(OrderModel.objects.prefetch_related("lines").get(pk=pk))

    def _first(self, qs, for_update: bool) -> Order | None:
        if for_update:
            qs = qs.select_for_update()
        obj = qs.prefetch_related("lines").first()
        return _to_domain(obj) if obj else None
