"""Customer-facing notification texts."""

from .domain import Order, PaymentStatus


def order_created(order: Order) -> str:
    if order.payment_status is PaymentStatus.PAID:
        tail = "Payment received."
    else:
        tail = "Awaiting payment."
    return (
        f"Hello {order.customer.name}, your order #{order.tracking_id} was created successfully! "
        f"Total: {order.total_amount:.2f} {order.currency}. {tail}"
    )


def payment_confirmed(order: Order) -> str:
    return (
        f"Payment for your order #{order.tracking_id} was confirmed! "
        "We are already preparing your order."
    )


def payment_failed(order: Order, reason: str | None) -> str:
    return (
        f"Payment for your order #{order.tracking_id} failed. Reason: {reason or 'unknown'}. "
        "Please try again or contact support."
    )


def status_changed(order: Order) -> str:
    return f'Update on your order #{order.tracking_id}: the status changed to "{order.order_status.value}".'
