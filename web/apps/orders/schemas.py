"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders
API (checkout, status update and the provider callback) and the read
schema used to render orders in responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Order, OrderStatus, PaymentMethod, PaymentStatus


class CustomerInfoIn(BaseModel):
    """Customer contact data submitted at checkout.

    Attributes:
        name: Customer full name.
        phone: Contact number; mobile-money payments are requested on it
            and notifications are delivered to it.
        address: Delivery address.
    """

    name: str = Field(min_length=1, max_length=120)
    phone: str = Field(min_length=3, max_length=32)
    address: str = Field(min_length=1, max_length=255)

    @field_validator("name", "phone", "address")
    @classmethod
    def strip_blank(cls, v: str) -> str:
        """Strip surrounding whitespace and reject blank values."""
        v2 = v.strip()
        if not v2:
            raise ValueError("must not be blank")
        return v2


class CartLineIn(BaseModel):
    """Input schema for a single cart line.

    Attributes:
        product_id: Catalog product identifier (UUID).
        quantity: Positive integer indicating units requested.
    """

    product_id: UUID
    quantity: int = Field(gt=0)


class CheckoutDTO(BaseModel):
    """Schema for the checkout request."""

    customer_info: CustomerInfoIn
    products: list[CartLineIn] = Field(min_length=1)
    payment_method: PaymentMethod


class OrderStatusUpdateDTO(BaseModel):
    order_status: OrderStatus


class PaymentCallbackDTO(BaseModel):
    """Asynchronous payment result delivered by the provider.

    Field aliases follow the provider's wire format; snake_case names are
    accepted too.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    third_party_reference: str = Field(alias="input_ThirdPartyReference", min_length=1)
    result_code: str = Field(alias="input_ResultCode", min_length=1)
    result_description: Optional[str] = Field(default=None, alias="input_ResultDesc")


class LineItemOut(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal


class CustomerInfoOut(BaseModel):
    name: str
    phone: str
    address: str


class ProviderCorrelationOut(BaseModel):
    third_party_reference: str
    conversation_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None


class OrderReadDTO(BaseModel):
    """Read schema for orders returned by the API."""

    id: UUID
    tracking_id: str
    customer_info: CustomerInfoOut
    products: list[LineItemOut]
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    provider: ProviderCorrelationOut
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            tracking_id=order.tracking_id,
            customer_info=CustomerInfoOut(
                name=order.customer.name, phone=order.customer.phone, address=order.customer.address
            ),
            products=[
                LineItemOut(product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
                for line in order.lines
            ],
            total_amount=order.total_amount,
            currency=order.currency,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            order_status=order.order_status,
            provider=ProviderCorrelationOut(
                third_party_reference=order.correlation.third_party_reference,
                conversation_id=order.correlation.conversation_id,
                response_code=order.correlation.response_code,
                response_description=order.correlation.response_description,
            ),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
