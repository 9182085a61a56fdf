from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_db
from storefront.app.core.config import LOW_STOCK_THRESHOLD
from storefront.app.schemas.inventory import RestockCreate, StockMutation, StockReport
from storefront.services import inventory

router = APIRouter(prefix="/admin/inventory")


@router.get("/low-stock", response_model=StockReport)
async def low_stock_report(
    threshold: int = Query(default=LOW_STOCK_THRESHOLD, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """
    Dashboard admin (READ ONLY)
    - low_stock : 0 < stock <= threshold, stock croissant
    - out_of_stock : stock == 0
    """
    return await inventory.get_stock_report(db, threshold)


@router.post("/{product_id}/restock", response_model=StockMutation)
async def restock_product(
    product_id: int,
    payload: RestockCreate,
    db: AsyncSession = Depends(get_db),
):
    result = await inventory.increment(db, product_id, payload.quantity)
    if not result.success:
        raise HTTPException(status_code=503, detail="Stock update failed, retry later")
    return result
