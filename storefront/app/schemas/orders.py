from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from storefront.app.db.models.core_types import OrderStatus, PaymentStatus
from storefront.app.schemas.inventory import AvailabilityCheck, InventoryItem


class OrderCreate(BaseModel):
    items: list[InventoryItem] = Field(min_length=1)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class OrderItemRead(BaseModel):
    id: int
    product_id: int
    name: str
    sku: str
    price: Decimal
    quantity: int

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    user_id: str | None
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    currency: str
    created_at: datetime
    items: list[OrderItemRead]

    class Config:
        from_attributes = True


class CartCheck(BaseModel):
    items: list[InventoryItem] = Field(min_length=1)


class CartCheckResult(BaseModel):
    all_available: bool
    checks: list[AvailabilityCheck]
