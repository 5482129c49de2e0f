import uuid

from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tracking_id = models.CharField(max_length=32, unique=True, editable=False)

    customer_name = models.CharField(max_length=120)
    customer_phone = models.CharField(max_length=32)
    customer_address = models.CharField(max_length=255)

    class PaymentMethod(models.TextChoices):
        MPESA = "MPESA"
        EMOLA = "EMOLA"
        CARD = "CARD"
        CASH_ON_DELIVERY = "CASH_ON_DELIVERY"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        FAILED = "failed"

    class OrderStatus(models.TextChoices):
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    order_status = models.CharField(max_length=16, choices=OrderStatus.choices, default=OrderStatus.PROCESSING)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="MZN")

    # Provider correlation, filled in as the payment flow advances
    third_party_reference = models.CharField(max_length=64, unique=True)
    provider_conversation_id = models.CharField(max_length=128, null=True, blank=True)
    provider_response_code = models.CharField(max_length=32, null=True, blank=True)
    provider_response_description = models.CharField(max_length=255, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    product = models.ForeignKey("catalog.ProductModel", related_name="+", on_delete=models.PROTECT)
    position = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField()
    # Price at purchase time, never recomputed from the catalog
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    # 0 while the first request is still in flight
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, related_name="+", on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
