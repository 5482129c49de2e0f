from decimal import Decimal
from uuid import uuid4

import pytest
from django.db import transaction

from apps.catalog.repository import CatalogRepository
from apps.orders.domain import InsufficientStock


@pytest.mark.django_db
def test_find_by_id_maps_product(make_product):
    p = make_product(price="120.50", stock=4, name="Amber 75ml")

    with transaction.atomic():
        product = CatalogRepository().find_by_id(str(p.id))

    assert product.id == str(p.id)
    assert product.name == "Amber 75ml"
    assert product.price == Decimal("120.50")
    assert product.stock == 4


@pytest.mark.django_db
@pytest.mark.parametrize("product_id", ["not-a-uuid", str(uuid4())])
def test_find_by_id_unknown(product_id):
    with transaction.atomic():
        assert CatalogRepository().find_by_id(product_id) is None


@pytest.mark.django_db
def test_reserve_and_restore_stock(make_product):
    p = make_product(stock=5)
    repo = CatalogRepository()

    repo.reserve_stock(str(p.id), 5)
    p.refresh_from_db()
    assert p.stock == 0

    repo.restore_stock(str(p.id), 2)
    p.refresh_from_db()
    assert p.stock == 2


@pytest.mark.django_db
def test_reserve_more_than_available_fails(make_product):
    p = make_product(stock=2)

    with pytest.raises(InsufficientStock) as e:
        CatalogRepository().reserve_stock(str(p.id), 3)

    assert e.value.detail == {"product_id": str(p.id), "requested": 3, "available": 2}
    p.refresh_from_db()
    assert p.stock == 2
