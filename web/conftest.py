from decimal import Decimal

import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0


@pytest.fixture(autouse=True)
def clear_throttle_cache():
    from django.core.cache import cache

    cache.clear()


@pytest.fixture
def make_product(db):
    """Create a catalog product; price defaults to 100.00 and stock to 5."""
    from apps.catalog.models import ProductModel

    def _make(price="100.00", stock=5, name="Eau de Parfum 100ml"):
        return ProductModel.objects.create(name=name, price=Decimal(price), stock=stock)

    return _make
