from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_db
from storefront.app.db.models.models_v1 import Product
from storefront.app.schemas.inventory import AvailabilityCheck, ProductStockRead
from storefront.services import inventory

router = APIRouter(prefix="/products")


class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    stock: int = Field(default=0, ge=0)
    active: bool = True


@router.get("", response_model=list[ProductStockRead])
async def list_products(db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(select(Product).order_by(Product.sku))).scalars().all()
    return rows


@router.post("", status_code=201, response_model=ProductStockRead)
async def create_product(payload: ProductCreate, db: AsyncSession = Depends(get_db)):
    exists = (await db.execute(select(Product).where(Product.sku == payload.sku))).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="SKU already exists")

    # stock initial à la création uniquement ; ensuite tout passe par le ledger
    p = Product(
        sku=payload.sku,
        name=payload.name,
        price=payload.price,
        stock=payload.stock,
        active=payload.active,
    )
    db.add(p)
    await db.commit()
    await db.refresh(p)
    return p


@router.get("/{product_id}/availability", response_model=AvailabilityCheck)
async def product_availability(
    product_id: int,
    quantity: int = Query(default=1, gt=0),
    db: AsyncSession = Depends(get_db),
):
    return await inventory.check_availability(db, product_id, quantity)
