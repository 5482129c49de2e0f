"""Service provider helpers for wiring the order services with ports.

The factories below return configured ``CheckoutService``,
``PaymentCallbackService`` and ``OrderStatusService`` instances backed by
the Django repositories. When ``settings.USE_HTTP_ADAPTERS`` is truthy the
payment gateways and notification sender are the HTTP clients; otherwise
the in-process stubs are used, which suits tests and local development.
"""

from functools import lru_cache

from django.conf import settings

from apps.catalog.repository import CatalogRepository

from .adapters import LoggingNotifier, PaymentGatewayStub
from .domain import EMOLA_PREFIXES, MPESA_PREFIXES, NotifierPort, PaymentMethod
from .http_adapters import HttpNotificationSender, HttpPaymentGatewayClient
from .repository import DjangoUnitOfWork, OrderRepository
from .services import CheckoutService, OrderStatusService, PaymentCallbackService


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def get_payment_gateways() -> dict:
    """Return the payment gateway for each configured mobile-money method."""
    if not _use_http():
        stub = PaymentGatewayStub()
        return {PaymentMethod.MPESA: stub, PaymentMethod.EMOLA: stub}

    gateways = {}
    for method, conf in getattr(settings, "PAYMENT_PROVIDERS", {}).items():
        if not conf.get("API_URL"):
            continue
        gateways[PaymentMethod(method)] = HttpPaymentGatewayClient(
            api_url=conf["API_URL"],
            auth_token=conf.get("AUTH_TOKEN", ""),
            service_provider_code=conf.get("SERVICE_PROVIDER_CODE", ""),
            origin=conf.get("ORIGIN", "*"),
            timeout=getattr(settings, "PAYMENT_TIMEOUT_SECS", 30.0),
            verify=conf.get("VERIFY_TLS", True),
        )
    return gateways


@lru_cache(maxsize=1)
def _http_notifier(base_url: str, timeout: float) -> HttpNotificationSender:
    # One sender (and one pooled connection) per process
    return HttpNotificationSender(base_url=base_url, timeout=timeout)


def get_notifier() -> NotifierPort:
    base_url = getattr(settings, "NOTIFY_BASE_URL", "")
    if not _use_http() or not base_url:
        return LoggingNotifier()
    return _http_notifier(base_url, getattr(settings, "NOTIFY_TIMEOUT_SECS", 3.0))


def _phone_prefixes() -> dict:
    prefixes = {PaymentMethod.MPESA: MPESA_PREFIXES, PaymentMethod.EMOLA: EMOLA_PREFIXES}
    for method, conf in getattr(settings, "PAYMENT_PROVIDERS", {}).items():
        if conf.get("PHONE_PREFIXES"):
            prefixes[PaymentMethod(method)] = tuple(conf["PHONE_PREFIXES"])
    return prefixes


def get_checkout_service() -> CheckoutService:
    return CheckoutService(
        catalog=CatalogRepository(),
        orders=OrderRepository(),
        uow=DjangoUnitOfWork(),
        gateways=get_payment_gateways(),
        notifier=get_notifier(),
        reference_prefix=getattr(settings, "PAYMENT_REFERENCE_PREFIX", "PERFUME"),
        phone_prefixes=_phone_prefixes(),
    )


def get_callback_service() -> PaymentCallbackService:
    return PaymentCallbackService(
        catalog=CatalogRepository(),
        orders=OrderRepository(),
        uow=DjangoUnitOfWork(),
        notifier=get_notifier(),
        success_code=getattr(settings, "PAYMENT_SUCCESS_CODE", "INS-0"),
    )


def get_status_service() -> OrderStatusService:
    return OrderStatusService(orders=OrderRepository(), uow=DjangoUnitOfWork(), notifier=get_notifier())
