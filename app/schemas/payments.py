from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.order import (
    OrderStatus,
    PaymentProviderType,
    PaymentStatus,
    RemoteVoidStatus,
)


class LineItem(BaseModel):
    sku: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=200)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0)


class OrderCreate(BaseModel):
    line_items: list[LineItem] = Field(min_length=1)
    provider: PaymentProviderType
    currency: str = Field(default="JPY", min_length=3, max_length=3)
    recipient_email: str | None = Field(default=None, max_length=255)
    coupon_code: str | None = Field(default=None, max_length=64)


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    status: OrderStatus
    payment_status: PaymentStatus | None = None
    provider: PaymentProviderType | None = None
    amount: Decimal
    currency: str
    line_items: list[LineItem] | None = None
    coupon_code: str | None = None
    external_refs: dict[str, str] = Field(
        default_factory=dict, validation_alias="external_ref_map"
    )
    remote_void_status: RemoteVoidStatus
    cancel_reason: str | None = None
    paid_at: datetime | None = None
    canceled_at: datetime | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class CheckoutResponse(BaseModel):
    order: OrderRead
    provider: PaymentProviderType
    external_id: str
    redirect_url: str | None = None


class OrderStatusRead(BaseModel):
    order_id: UUID
    status: OrderStatus
    payment_status: PaymentStatus | None = None
    version: int
    refreshed: bool = False


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=120)


class FulfillmentRequest(BaseModel):
    status: OrderStatus
    expected_version: int | None = Field(default=None, ge=1)

    @field_validator("status")
    @classmethod
    def _fulfillment_only(cls, value: OrderStatus) -> OrderStatus:
        if value not in (OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered):
            raise ValueError("status must be processing, shipped or delivered")
        return value


class WebhookAck(BaseModel):
    status: str


class PaymentRetryRequest(BaseModel):
    provider: PaymentProviderType
