"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain DTOs, delegate to a domain service obtained from
``providers`` and translate the outcome into an HTTP response.

Error mapping for checkout and admin endpoints: every workflow error is an
``OrderError`` whose code selects the status (see ``ERROR_STATUS``); the
body carries the code in ``detail``, a human-readable ``message`` and, for
payment provider failures, the provider's error payload in ``error``.

The provider callback endpoint is called by the payment provider's
infrastructure. It answers 200 for every well-formed callback, including
unknown references and duplicates, so the provider learns nothing about
internal state; only unexpected failures produce a 500.
"""

import json
import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import CartLine, CustomerInfo, OrderError, OrderNotFound, ProviderCommunicationError
from .idempotency import finalize, get_or_create_idempotent
from .repository import OrderRepository
from .schemas import CheckoutDTO, OrderReadDTO, OrderStatusUpdateDTO, PaymentCallbackDTO

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "INVALID_PHONE_NUMBER": status.HTTP_400_BAD_REQUEST,
    "PRODUCT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PROVIDER_COMMUNICATION_ERROR": status.HTTP_502_BAD_GATEWAY,
}

CALLBACK_ACK = {"detail": "CALLBACK_PROCESSED"}


def _validation_error(e: ValidationError) -> Response:
    return Response(
        {
            "detail": "VALIDATION_ERROR",
            "message": "Incomplete or malformed order data.",
            "error": json.loads(e.json(include_url=False)),
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


def _error_body(e: OrderError) -> dict:
    body = {"detail": e.code, "message": e.message}
    if isinstance(e, ProviderCommunicationError) and e.provider_payload is not None:
        body["error"] = e.provider_payload
    return body


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List orders (admin) and place new orders (checkout).

    Checkout supports idempotency via the ``Idempotency-Key`` header: the
    first request is processed and its response stored; retries with the
    same key and identical payload replay it with ``Idempotent-Replay:
    true``. Reusing the key with a different payload returns 409, as does a
    retry that arrives while the first request is still running.
    """

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(max(int(request.GET.get("page_size", 20)), 1), 100)
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR", "message": "Invalid pagination."}, status=400)

        count, number, orders = OrderRepository().page(page, page_size)
        return Response(
            {
                "count": count,
                "page": number,
                "page_size": page_size,
                "results": [OrderReadDTO.from_domain(o).model_dump(mode="json") for o in orders],
            },
            status=200,
        )

    def post(self, request):
        """Checkout.

        Returns:
            Response: One of the following responses.
            - 201 with {message, id, tracking_id, total_amount, currency,
              payment_status, order_status, provider_response}.
            - 200/4xx/5xx replay of a stored response for a repeated
              idempotency key.
            - 409 IDEMPOTENCY_CONFLICT / IDEMPOTENCY_IN_PROGRESS.
            - 400 VALIDATION_ERROR or INVALID_PHONE_NUMBER.
            - 404 PRODUCT_NOT_FOUND.
            - 422 INSUFFICIENT_STOCK.
            - 502 PROVIDER_COMMUNICATION_ERROR, with the provider's body
              in ``error`` when there was one.
            - 500 ORDER_FAILED on unexpected errors.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CheckoutDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        customer = CustomerInfo(
            name=dto.customer_info.name,
            phone=dto.customer_info.phone,
            address=dto.customer_info.address,
        )
        cart = [CartLine(product_id=str(line.product_id), quantity=line.quantity) for line in dto.products]
        service = providers.get_checkout_service()

        try:
            result = service.checkout(customer, cart, dto.payment_method)
        except OrderError as e:
            status_code = ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST)
            body = _error_body(e)
            if rec:
                finalize(rec, status_code, body)
            return Response(body, status=status_code)
        except Exception:
            logger.exception("checkout failed")
            body = {"detail": "ORDER_FAILED", "message": "Error while creating the order."}
            if rec:
                finalize(rec, status.HTTP_500_INTERNAL_SERVER_ERROR, body)
            return Response(body, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        # 4) Response
        order = result.order
        body = {
            "message": "Order created successfully!",
            "id": str(order.id),
            "tracking_id": order.tracking_id,
            "total_amount": str(order.total_amount),
            "currency": order.currency,
            "payment_status": order.payment_status.value,
            "order_status": order.order_status.value,
            "provider_response": result.provider_response,
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = OrderRepository().find_by_id(oid)
        if order is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"), status=200)


class OrderStatusView(APIView):
    """Administrative order-status update (PUT or PATCH ``{order_status}``)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_status"

    def put(self, request, oid):
        try:
            dto = OrderStatusUpdateDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        try:
            order = providers.get_status_service().update_status(oid, dto.order_status)
        except OrderError as e:
            return Response(_error_body(e), status=ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST))
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json"), status=200)

    patch = put


class PaymentCallbackView(APIView):
    """Receives the provider's asynchronous payment result."""

    def post(self, request):
        logger.info("payment callback received", extra={"payload": request.data})
        try:
            dto = PaymentCallbackDTO.model_validate(request.data)
        except ValidationError:
            return Response({"detail": "INVALID_CALLBACK"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            providers.get_callback_service().handle(
                dto.third_party_reference, dto.result_code, dto.result_description
            )
        except OrderNotFound:
            logger.warning("callback for unknown reference", extra={"reference": dto.third_party_reference})
        except Exception:
            logger.exception("payment callback failed", extra={"reference": dto.third_party_reference})
            return Response(status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return Response(CALLBACK_ACK, status=status.HTTP_200_OK)
