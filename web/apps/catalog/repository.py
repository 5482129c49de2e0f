"""Repository layer for product stock.

The checkout workflow reads products and moves stock only through this
repository. Every call is expected to run inside the caller's
``transaction.atomic()`` block so reservations commit or roll back
together with the order that owns them.
"""

from django.core.exceptions import ValidationError
from django.db.models import F

from apps.orders.domain import CatalogPort, InsufficientStock, Product

from .models import ProductModel


class CatalogRepository(CatalogPort):
    """Catalog store backed by the Django ORM.

    Lookups lock the product row (``SELECT ... FOR UPDATE``) and
    reservations are conditional updates, so two concurrent checkouts can
    never take the same unit of stock.
    """

    def find_by_id(self, product_id: str) -> Product | None:
        """Return the product with ``product_id`` or None.

        Malformed identifiers are treated as unknown products.
        """
        try:
            obj = ProductModel.objects.select_for_update().filter(pk=product_id).first()
        except (ValidationError, ValueError):
            return None
        if obj is None:
            return None
        return Product(id=str(obj.pk), name=obj.name, price=obj.price, stock=obj.stock)

    def reserve_stock(self, product_id: str, quantity: int) -> None:
        """Decrement stock, failing instead of going below zero.

        Raises:
            InsufficientStock: When fewer than ``quantity`` units remain.
        """
        updated = ProductModel.objects.filter(pk=product_id, stock__gte=quantity).update(
            stock=F("stock") - quantity
        )
        if not updated:
            available = ProductModel.objects.filter(pk=product_id).values_list("stock", flat=True).first()
            raise InsufficientStock(product_id, quantity, available)

    def restore_stock(self, product_id: str, quantity: int) -> None:
        ProductModel.objects.filter(pk=product_id).update(stock=F("stock") + quantity)
