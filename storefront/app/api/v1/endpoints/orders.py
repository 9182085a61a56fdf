from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api.deps import get_client_ip, get_db, get_security_log, get_user_id
from storefront.app.schemas.orders import CartCheck, CartCheckResult, OrderCreate, OrderRead
from storefront.services import orders
from storefront.services.security import SecurityEventLog

router = APIRouter()


@router.post("/orders", status_code=201, response_model=OrderRead)
async def create_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_db),
    security_log: SecurityEventLog = Depends(get_security_log),
    user_id: str | None = Depends(get_user_id),
    ip: str | None = Depends(get_client_ip),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    idem = idempotency_key.strip() if idempotency_key and idempotency_key.strip() else None
    return await orders.place_order(
        db,
        payload.items,
        security_log=security_log,
        user_id=user_id,
        currency=payload.currency,
        idempotency_key=idem,
        ip=ip,
    )


@router.post("/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    security_log: SecurityEventLog = Depends(get_security_log),
    user_id: str | None = Depends(get_user_id),
    ip: str | None = Depends(get_client_ip),
):
    return await orders.cancel_order(db, order_id, security_log=security_log, user_id=user_id, ip=ip)


@router.post("/cart/check", response_model=CartCheckResult)
async def check_cart(payload: CartCheck, db: AsyncSession = Depends(get_db)):
    return await orders.validate_cart_items(db, payload.items)
