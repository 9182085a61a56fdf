"""
Inventory ledger.

Seul module autorisé à écrire products.stock. Toutes les fonctions
reçoivent la session de l'appelant (unit of work explicite) :

- session sans transaction en cours : l'opération ouvre sa propre
  transaction et la commite ;
- transaction déjà ouverte par l'appelant : l'opération tourne dans un
  SAVEPOINT, le commit final reste à la charge de l'appelant.

Concurrence : aucun verrou applicatif. Le décrément relit le stock puis
écrit avec la garde "WHERE stock >= :qty" ; si un autre writer est passé
entre la lecture et l'écriture, l'UPDATE ne touche aucune ligne et
l'opération échoue proprement (jamais de stock négatif, jamais de
double vente). La contrainte CHECK ck_products_stock_nonneg reste le
filet de sécurité côté base.
"""

from __future__ import annotations

import hashlib
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.core.config import LOW_STOCK_THRESHOLD
from storefront.app.db.models.core_types import InventoryOperationType
from storefront.app.db.models.models_v1 import InventoryOperation, Product
from storefront.app.schemas.inventory import (
    AvailabilityCheck,
    BatchResult,
    InventoryItem,
    LowStockSection,
    MutationReason,
    OutOfStockSection,
    ProductStockRead,
    StockMutation,
    StockReport,
    StockSummary,
)
from storefront.services.errors import IdempotencyConflictError, ProductNotFoundError

logger = structlog.get_logger(__name__)


class _Rejected(Exception):
    """Interne : annule la transaction en cours sans la traiter comme une panne."""

    def __init__(self, product_id: int, reason: MutationReason, current_stock: int | None = None):
        self.product_id = product_id
        self.reason = reason
        self.current_stock = current_stock
        super().__init__(f"{reason.value} for product {product_id}")


# ---------- Helpers ----------
@asynccontextmanager
async def _atomic(db: AsyncSession) -> AsyncIterator[None]:
    if db.in_transaction():
        async with db.begin_nested():
            yield
    else:
        async with db.begin():
            yield


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer (got {quantity!r})")


def _fingerprint(operation_type: InventoryOperationType, items: list[InventoryItem]) -> str:
    payload = json.dumps(
        {
            "type": operation_type.value,
            "items": sorted([i.product_id, i.quantity] for i in items),
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def _stock_of(db: AsyncSession, product_id: int) -> int | None:
    return (
        await db.execute(select(Product.stock).where(Product.id == product_id))
    ).scalar_one_or_none()


async def _claim_operation_key(
    db: AsyncSession,
    *,
    key: str,
    operation_type: InventoryOperationType,
    request_hash: str,
    item_count: int,
) -> bool:
    """
    Réserve la clé d'idempotence dans la transaction courante.
    Retourne True si l'opération a déjà été commitée (rejeu).
    """
    existing = (
        await db.execute(select(InventoryOperation).where(InventoryOperation.operation_key == key))
    ).scalar_one_or_none()
    if existing is not None:
        if existing.operation_type != operation_type or existing.request_hash != request_hash:
            raise IdempotencyConflictError(key)
        return True

    db.add(
        InventoryOperation(
            operation_key=key,
            operation_type=operation_type,
            request_hash=request_hash,
            item_count=item_count,
        )
    )
    await db.flush()
    return False


async def _already_committed(db: AsyncSession, key: str, request_hash: str) -> bool:
    # Clé perdue dans une course : l'autre transaction a-t-elle commité ?
    # La relecture passe par _atomic : une session oisive le redevient.
    try:
        async with _atomic(db):
            existing_hash = (
                await db.execute(
                    select(InventoryOperation.request_hash).where(InventoryOperation.operation_key == key)
                )
            ).scalar_one_or_none()
    except SQLAlchemyError:
        return False
    if existing_hash is None:
        return False
    if existing_hash != request_hash:
        raise IdempotencyConflictError(key)
    return True


async def _conditional_decrement(db: AsyncSession, product_id: int, quantity: int) -> int:
    current = await _stock_of(db, product_id)
    if current is None:
        raise ProductNotFoundError(product_id)
    if current < quantity:
        raise _Rejected(product_id, MutationReason.insufficient_stock, current)

    new_stock = (
        await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .where(Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .returning(Product.stock)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()

    if new_stock is None:
        # un décrément concurrent a consommé le stock après notre lecture
        raise _Rejected(product_id, MutationReason.insufficient_stock)
    return int(new_stock)


async def _additive_increment(db: AsyncSession, product_id: int, quantity: int) -> int:
    new_stock = (
        await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .returning(Product.stock)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    if new_stock is None:
        raise ProductNotFoundError(product_id)
    return int(new_stock)


# ---------- Lecture ----------
async def check_availability(db: AsyncSession, product_id: int, quantity: int) -> AvailabilityCheck:
    """Lecture seule ; lève ProductNotFoundError si le produit n'existe pas."""
    _require_positive(quantity)

    async with _atomic(db):
        current = await _stock_of(db, product_id)

    if current is None:
        raise ProductNotFoundError(product_id)

    return AvailabilityCheck(
        product_id=product_id,
        requested=quantity,
        current_stock=current,
        available=current >= quantity,
    )


async def check_availability_batch(
    db: AsyncSession,
    items: Iterable[InventoryItem],
) -> list[AvailabilityCheck]:
    """
    Un résultat par ligne, dans l'ordre reçu. Pas de fail-fast sur les
    ruptures : l'appelant voit toutes les lignes indisponibles d'un coup.
    """
    items = list(items)
    for item in items:
        _require_positive(item.quantity)
    if not items:
        return []

    product_ids = sorted({item.product_id for item in items})
    async with _atomic(db):
        rows = (
            await db.execute(select(Product.id, Product.stock).where(Product.id.in_(product_ids)))
        ).all()
    stocks = {int(pid): int(stock) for pid, stock in rows}

    for item in items:
        if item.product_id not in stocks:
            raise ProductNotFoundError(item.product_id)

    return [
        AvailabilityCheck(
            product_id=item.product_id,
            requested=item.quantity,
            current_stock=stocks[item.product_id],
            available=stocks[item.product_id] >= item.quantity,
        )
        for item in items
    ]


# ---------- Décrément ----------
async def decrement(db: AsyncSession, product_id: int, quantity: int) -> StockMutation:
    """
    Décrément atomique et conditionnel.

    Stock insuffisant -> success=False (aucune écriture), jamais d'exception.
    Panne de transaction -> success=False, reason=storage_fault.
    """
    _require_positive(quantity)

    try:
        async with _atomic(db):
            new_stock = await _conditional_decrement(db, product_id, quantity)
    except _Rejected as exc:
        logger.info(
            "inventory_decrement_rejected",
            product_id=product_id,
            quantity=quantity,
            current_stock=exc.current_stock,
        )
        return StockMutation(product_id=product_id, success=False, reason=exc.reason)
    except SQLAlchemyError:
        logger.error(
            "inventory_decrement_failed",
            product_id=product_id,
            quantity=quantity,
            operation="decrement",
            exc_info=True,
        )
        return StockMutation(product_id=product_id, success=False, reason=MutationReason.storage_fault)

    return StockMutation(product_id=product_id, success=True, new_stock=new_stock)


async def decrement_batch(
    db: AsyncSession,
    items: Iterable[InventoryItem],
    *,
    operation_key: str | None = None,
) -> BatchResult:
    """
    Tout ou rien : une seule transaction pour toutes les lignes, la
    première ligne en échec annule le batch entier (aucune déduction
    partielle). failed_items contient le produit fautif.

    operation_key : clé d'idempotence (ex. "order:ORD-XYZ"). Un rejeu
    d'un batch déjà commité renvoie success=True, replayed=True sans
    toucher au stock.
    """
    items = list(items)
    for item in items:
        _require_positive(item.quantity)
    if not items:
        return BatchResult(success=True)

    request_hash = _fingerprint(InventoryOperationType.decrement, items)
    replayed = False

    try:
        async with _atomic(db):
            if operation_key is not None:
                replayed = await _claim_operation_key(
                    db,
                    key=operation_key,
                    operation_type=InventoryOperationType.decrement,
                    request_hash=request_hash,
                    item_count=len(items),
                )
            if not replayed:
                for item in items:
                    try:
                        await _conditional_decrement(db, item.product_id, item.quantity)
                    except ProductNotFoundError:
                        raise _Rejected(item.product_id, MutationReason.not_found) from None
    except _Rejected as exc:
        logger.info(
            "inventory_batch_decrement_rejected",
            product_id=exc.product_id,
            reason=exc.reason.value,
            current_stock=exc.current_stock,
            operation_key=operation_key,
        )
        return BatchResult(success=False, failed_items=[exc.product_id], reason=exc.reason)
    except IntegrityError:
        if operation_key is not None and await _already_committed(db, operation_key, request_hash):
            return BatchResult(success=True, replayed=True)
        logger.error(
            "inventory_batch_decrement_failed",
            items=[item.model_dump() for item in items],
            operation="decrement_batch",
            operation_key=operation_key,
            exc_info=True,
        )
        return BatchResult(success=False, reason=MutationReason.storage_fault)
    except SQLAlchemyError:
        logger.error(
            "inventory_batch_decrement_failed",
            items=[item.model_dump() for item in items],
            operation="decrement_batch",
            operation_key=operation_key,
            exc_info=True,
        )
        return BatchResult(success=False, reason=MutationReason.storage_fault)

    if replayed:
        logger.info("inventory_batch_decrement_replayed", operation_key=operation_key)
    return BatchResult(success=True, replayed=replayed)


# ---------- Incrément (restock / annulation) ----------
async def increment(db: AsyncSession, product_id: int, quantity: int) -> StockMutation:
    """
    Ajout inconditionnel. Produit inconnu -> ProductNotFoundError.
    Panne de stockage -> success=False, loggé en erreur pour les opérateurs.
    """
    _require_positive(quantity)

    try:
        async with _atomic(db):
            new_stock = await _additive_increment(db, product_id, quantity)
    except SQLAlchemyError:
        logger.error(
            "inventory_increment_failed",
            product_id=product_id,
            quantity=quantity,
            operation="increment",
            alert=True,
            exc_info=True,
        )
        return StockMutation(product_id=product_id, success=False, reason=MutationReason.storage_fault)

    return StockMutation(product_id=product_id, success=True, new_stock=new_stock)


async def increment_batch(
    db: AsyncSession,
    items: Iterable[InventoryItem],
    *,
    operation_key: str | None = None,
) -> BatchResult:
    """
    Incréments indépendants dans une seule transaction. Pas de garde
    conditionnelle (un ajout ne peut pas rendre le stock négatif) :
    seule une panne (ou un produit disparu) annule le batch.
    Ne lève jamais pour ces cas : l'appelant (annulation) ne doit pas
    échouer à cause de la restauration du stock.
    """
    items = list(items)
    for item in items:
        _require_positive(item.quantity)
    if not items:
        return BatchResult(success=True)

    request_hash = _fingerprint(InventoryOperationType.increment, items)
    replayed = False

    try:
        async with _atomic(db):
            if operation_key is not None:
                replayed = await _claim_operation_key(
                    db,
                    key=operation_key,
                    operation_type=InventoryOperationType.increment,
                    request_hash=request_hash,
                    item_count=len(items),
                )
            if not replayed:
                for item in items:
                    try:
                        await _additive_increment(db, item.product_id, item.quantity)
                    except ProductNotFoundError:
                        raise _Rejected(item.product_id, MutationReason.not_found) from None
    except _Rejected as exc:
        logger.error(
            "inventory_batch_increment_failed",
            product_id=exc.product_id,
            reason=exc.reason.value,
            operation="increment_batch",
            operation_key=operation_key,
            alert=True,
        )
        return BatchResult(success=False, failed_items=[exc.product_id], reason=exc.reason)
    except IntegrityError:
        if operation_key is not None and await _already_committed(db, operation_key, request_hash):
            return BatchResult(success=True, replayed=True)
        logger.error(
            "inventory_batch_increment_failed",
            items=[item.model_dump() for item in items],
            operation="increment_batch",
            operation_key=operation_key,
            alert=True,
            exc_info=True,
        )
        return BatchResult(success=False, reason=MutationReason.storage_fault)
    except SQLAlchemyError:
        logger.error(
            "inventory_batch_increment_failed",
            items=[item.model_dump() for item in items],
            operation="increment_batch",
            operation_key=operation_key,
            alert=True,
            exc_info=True,
        )
        return BatchResult(success=False, reason=MutationReason.storage_fault)

    return BatchResult(success=True, replayed=replayed)


# ---------- Reporting (admin) ----------
async def get_low_stock_products(
    db: AsyncSession,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> list[Product]:
    """Produits avec 0 < stock <= threshold, stock croissant."""
    if threshold < 0:
        raise ValueError("threshold must be >= 0")

    async with _atomic(db):
        rows = (
            await db.execute(
                select(Product)
                .where(Product.stock > 0)
                .where(Product.stock <= threshold)
                .order_by(Product.stock.asc(), Product.id.asc())
            )
        ).scalars().all()
    return list(rows)


async def get_out_of_stock_products(db: AsyncSession) -> list[Product]:
    async with _atomic(db):
        rows = (
            await db.execute(
                select(Product)
                .where(Product.stock == 0)
                .order_by(Product.id.asc())
            )
        ).scalars().all()
    return list(rows)


async def get_stock_report(db: AsyncSession, threshold: int = LOW_STOCK_THRESHOLD) -> StockReport:
    low = [ProductStockRead.model_validate(p) for p in await get_low_stock_products(db, threshold)]
    out = [ProductStockRead.model_validate(p) for p in await get_out_of_stock_products(db)]

    return StockReport(
        low_stock=LowStockSection(products=low, count=len(low), threshold=threshold),
        out_of_stock=OutOfStockSection(products=out, count=len(out)),
        summary=StockSummary(
            total_low_stock=len(low),
            total_out_of_stock=len(out),
            needs_attention=len(low) + len(out),
        ),
    )
