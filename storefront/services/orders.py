"""
Flux commande : checkout, annulation, validation panier.

Ce module orchestre les commandes mais ne contient AUCUNE écriture de
stock : tout passe par storefront.services.inventory.
"""

from __future__ import annotations

import secrets
import string
import time
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.config import DEFAULT_CURRENCY
from storefront.app.db.models.core_types import OrderStatus, PaymentStatus, Severity
from storefront.app.db.models.models_v1 import Order, OrderItem, Product
from storefront.app.schemas.inventory import InventoryItem, MutationReason
from storefront.app.schemas.orders import CartCheckResult
from storefront.services import inventory
from storefront.services.errors import (
    IdempotencyConflictError,
    OrderAccessError,
    OrderNotFoundError,
    OrderStateError,
    OutOfStockError,
    StorageFaultError,
)
from storefront.services.security import SecurityEventLog

logger = structlog.get_logger(__name__)

NOT_CANCELLABLE = {OrderStatus.shipped, OrderStatus.delivered}
ALREADY_CANCELLED = {OrderStatus.cancelled, OrderStatus.refunded}

_BASE36 = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def generate_order_number() -> str:
    timestamp = _base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{timestamp}-{random_part}"


def merge_lines(items: Iterable[InventoryItem]) -> list[InventoryItem]:
    """Regroupe les lignes d'un même produit (ordre de première apparition conservé)."""
    totals: dict[int, int] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return [InventoryItem(product_id=pid, quantity=qty) for pid, qty in totals.items()]


async def _find_order_by_key(db: AsyncSession, idempotency_key: str) -> Order | None:
    return (
        await db.execute(select(Order).where(Order.idempotency_key == idempotency_key))
    ).scalar_one_or_none()


def _replay(existing: Order, idempotency_key: str, user_id: str | None, lines: list[InventoryItem]) -> Order:
    """
    Rejeu d'une Idempotency-Key : même utilisateur ET mêmes lignes, sinon
    conflit. Une clé ne renvoie jamais la commande d'un autre utilisateur.
    """
    stored = {item.product_id: item.quantity for item in existing.items}
    wanted = {line.product_id: line.quantity for line in lines}
    if existing.user_id != user_id or stored != wanted:
        logger.warning(
            "order_idempotency_conflict",
            order_id=existing.id,
            idempotency_key=idempotency_key,
            user_id=user_id,
        )
        raise IdempotencyConflictError(idempotency_key)

    logger.info("order_replayed", order_id=existing.id, idempotency_key=idempotency_key)
    return existing


# ---------- Panier ----------
async def validate_cart_items(db: AsyncSession, items: Iterable[InventoryItem]) -> CartCheckResult:
    """Contrôle best-effort avant modification du panier : ne réserve rien."""
    checks = await inventory.check_availability_batch(db, merge_lines(items))
    return CartCheckResult(all_available=all(c.available for c in checks), checks=checks)


# ---------- Checkout ----------
async def place_order(
    db: AsyncSession,
    items: Iterable[InventoryItem],
    *,
    security_log: SecurityEventLog,
    user_id: str | None = None,
    currency: str | None = None,
    idempotency_key: str | None = None,
    ip: str | None = None,
) -> Order:
    """
    Crée la commande et décrémente le stock dans UNE transaction.

    1. rejeu idempotent (Idempotency-Key déjà vue -> commande existante,
       IdempotencyConflictError si autre utilisateur ou autres lignes)
    2. contrôle de toutes les lignes (toutes les ruptures remontées d'un coup)
    3. insertion commande + decrement_batch tout-ou-rien
    4. échec du batch -> rollback de la commande, OutOfStockError
    """
    lines = merge_lines(items)
    if not lines:
        raise ValueError("An order needs at least one item")

    if idempotency_key:
        existing = await _find_order_by_key(db, idempotency_key)
        if existing is not None:
            return _replay(existing, idempotency_key, user_id, lines)

    checks = await inventory.check_availability_batch(db, lines)
    shortages = [
        {"product_id": c.product_id, "requested": c.requested, "available": c.current_stock}
        for c in checks
        if not c.available
    ]
    if shortages:
        await db.rollback()
        security_log.record(
            "INSUFFICIENT_INVENTORY",
            Severity.low,
            user_id=user_id,
            ip=ip,
            details={"insufficient_items": shortages},
        )
        raise OutOfStockError(shortages)

    products = {
        p.id: p
        for p in (
            await db.execute(select(Product).where(Product.id.in_([line.product_id for line in lines])))
        ).scalars()
    }

    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        status=OrderStatus.pending,
        payment_status=PaymentStatus.pending,
        subtotal=sum((products[line.product_id].price * line.quantity for line in lines), Decimal("0")),
        currency=(currency or DEFAULT_CURRENCY).upper(),
        idempotency_key=idempotency_key,
        items=[
            OrderItem(
                product_id=line.product_id,
                name=products[line.product_id].name,
                sku=products[line.product_id].sku,
                price=products[line.product_id].price,
                quantity=line.quantity,
            )
            for line in lines
        ],
    )
    db.add(order)

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        # course sur la même Idempotency-Key : l'autre requête a gagné
        if idempotency_key:
            existing = await _find_order_by_key(db, idempotency_key)
            if existing is not None:
                return _replay(existing, idempotency_key, user_id, lines)
        raise StorageFaultError("Failed to create order")

    result = await inventory.decrement_batch(db, lines, operation_key=f"order:{order.order_number}")

    if not result.success:
        await db.rollback()
        if result.reason == MutationReason.storage_fault:
            security_log.record(
                "INVENTORY_DECREASE_FAILED",
                Severity.high,
                user_id=user_id,
                ip=ip,
                details={"order_number": order.order_number, "reason": result.reason.value},
            )
            raise StorageFaultError("Failed to reserve inventory")

        # le stock a bougé entre le contrôle et l'écriture
        requested = {line.product_id: line.quantity for line in lines}
        unavailable = [{"product_id": pid, "requested": requested.get(pid)} for pid in result.failed_items]
        security_log.record(
            "INVENTORY_DECREASE_FAILED",
            Severity.medium,
            user_id=user_id,
            ip=ip,
            details={"failed_items": result.failed_items, "reason": result.reason.value},
        )
        raise OutOfStockError(unavailable)

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("order_commit_failed", order_number=order.order_number, exc_info=True)
        raise StorageFaultError("Failed to create order") from exc

    security_log.record(
        "ORDER_CREATED",
        Severity.low,
        user_id=user_id,
        ip=ip,
        details={"order_id": order.id, "order_number": order.order_number, "total": str(order.subtotal)},
    )
    return order


# ---------- Annulation ----------
async def cancel_order(
    db: AsyncSession,
    order_id: int,
    *,
    security_log: SecurityEventLog,
    user_id: str | None = None,
    ip: str | None = None,
) -> Order:
    """
    Annule la commande puis restaure le stock.

    Le changement de statut est commité AVANT la restauration : un échec
    d'increment_batch est signalé (événement high) mais ne bloque pas
    l'annulation.
    """
    order = await db.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)

    # commande nominative : seul son propriétaire l'annule, une requête anonyme est refusée
    if order.user_id is not None and order.user_id != user_id:
        raise OrderAccessError("Order belongs to another user")

    if order.status in NOT_CANCELLABLE:
        raise OrderStateError("Cannot cancel shipped or delivered orders")
    if order.status in ALREADY_CANCELLED:
        raise OrderStateError("Order is already cancelled")

    order.status = OrderStatus.cancelled
    order.payment_status = PaymentStatus.refunded if order.payment_status == PaymentStatus.paid else PaymentStatus.pending

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("order_cancel_commit_failed", order_id=order_id, exc_info=True)
        raise StorageFaultError("Failed to cancel order") from exc

    restock = [InventoryItem(product_id=i.product_id, quantity=i.quantity) for i in order.items]
    result = await inventory.increment_batch(
        db,
        restock,
        operation_key=f"order:{order.order_number}:restock",
    )
    if not result.success:
        security_log.record(
            "INVENTORY_RESTORE_FAILED",
            Severity.high,
            user_id=user_id,
            ip=ip,
            details={
                "order_id": order.id,
                "order_number": order.order_number,
                "failed_items": result.failed_items,
                "reason": result.reason.value,
            },
        )

    security_log.record(
        "ORDER_CANCELLED",
        Severity.low,
        user_id=user_id,
        ip=ip,
        details={"order_id": order.id, "order_number": order.order_number, "total": str(order.subtotal)},
    )
    return order
