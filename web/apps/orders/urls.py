from django.urls import path

from .views import (
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    PaymentCallbackView,
    RetrieveOrderView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST checkout
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]

# Mounted under /api/payments/; called by the payment provider
payments_urlpatterns = [
    path("mpesa/callback/", PaymentCallbackView.as_view(), name="mpesa-callback"),
]
