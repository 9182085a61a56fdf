from __future__ import annotations

import enum
from decimal import Decimal

from pydantic import BaseModel, Field


class InventoryItem(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class MutationReason(str, enum.Enum):
    ok = "ok"
    insufficient_stock = "insufficient_stock"
    not_found = "not_found"
    storage_fault = "storage_fault"


class AvailabilityCheck(BaseModel):
    product_id: int
    requested: int
    current_stock: int
    available: bool


class StockMutation(BaseModel):
    product_id: int
    success: bool
    new_stock: int | None = None  # None quand rien n'a été écrit
    reason: MutationReason = MutationReason.ok


class BatchResult(BaseModel):
    success: bool
    failed_items: list[int] = Field(default_factory=list)
    reason: MutationReason = MutationReason.ok
    replayed: bool = False


class ProductStockRead(BaseModel):
    id: int
    sku: str
    name: str
    price: Decimal
    stock: int

    class Config:
        from_attributes = True


class LowStockSection(BaseModel):
    products: list[ProductStockRead]
    count: int
    threshold: int


class OutOfStockSection(BaseModel):
    products: list[ProductStockRead]
    count: int


class StockSummary(BaseModel):
    total_low_stock: int
    total_out_of_stock: int
    needs_attention: int


class StockReport(BaseModel):
    low_stock: LowStockSection
    out_of_stock: OutOfStockSection
    summary: StockSummary


class RestockCreate(BaseModel):
    quantity: int = Field(gt=0)
