from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from structlog.testing import capture_logs

from storefront.app.db.models.models_v1 import InventoryOperation, Product
from storefront.app.schemas.inventory import InventoryItem, MutationReason
from storefront.services import inventory
from storefront.services.errors import IdempotencyConflictError, ProductNotFoundError


def _items(*pairs):
    return [InventoryItem(product_id=pid, quantity=qty) for pid, qty in pairs]


def _storage_fault(*args, **kwargs):
    raise OperationalError("UPDATE products", {}, Exception("server closed the connection unexpectedly"))


# ---------- check_availability ----------
async def test_check_availability_out_of_stock(db_session, make_product):
    p = await make_product(stock=0)

    result = await inventory.check_availability(db_session, p, 1)

    assert result.available is False
    assert result.current_stock == 0
    assert result.requested == 1


async def test_check_availability_exact_stock_is_available(db_session, make_product):
    p = await make_product(stock=4)

    result = await inventory.check_availability(db_session, p, 4)

    assert result.available is True
    assert result.current_stock == 4


async def test_check_availability_never_mutates(db_session, make_product, stock_of):
    p = await make_product(stock=7)

    for _ in range(5):
        await inventory.check_availability(db_session, p, 3)

    assert await stock_of(p) == 7


async def test_check_availability_unknown_product(db_session):
    with pytest.raises(ProductNotFoundError):
        await inventory.check_availability(db_session, 999_999, 1)


@pytest.mark.parametrize("quantity", [0, -1, True])
async def test_check_availability_rejects_non_positive_quantity(db_session, make_product, quantity):
    p = await make_product(stock=1)

    with pytest.raises(ValueError):
        await inventory.check_availability(db_session, p, quantity)


async def test_check_availability_batch_reports_every_shortage(db_session, make_product):
    p1 = await make_product(stock=5)
    p2 = await make_product(stock=1)
    p3 = await make_product(stock=0)

    results = await inventory.check_availability_batch(db_session, _items((p1, 2), (p2, 3), (p3, 1)))

    assert [r.product_id for r in results] == [p1, p2, p3]
    assert [r.available for r in results] == [True, False, False]
    assert [r.current_stock for r in results] == [5, 1, 0]


async def test_check_availability_batch_unknown_product(db_session, make_product):
    p = await make_product(stock=5)

    with pytest.raises(ProductNotFoundError) as exc_info:
        await inventory.check_availability_batch(db_session, _items((p, 1), (424242, 1)))

    assert exc_info.value.product_id == 424242


# ---------- decrement ----------
async def test_decrement_returns_new_stock(db_session, make_product, stock_of):
    p = await make_product(stock=10)

    result = await inventory.decrement(db_session, p, 4)

    assert result.success is True
    assert result.new_stock == 6
    assert await stock_of(p) == 6


async def test_decrement_insufficient_stock_is_a_result(db_session, make_product, stock_of):
    p = await make_product(stock=2)

    result = await inventory.decrement(db_session, p, 3)

    assert result.success is False
    assert result.reason == MutationReason.insufficient_stock
    assert result.new_stock is None
    assert await stock_of(p) == 2


async def test_decrement_unknown_product(db_session):
    with pytest.raises(ProductNotFoundError):
        await inventory.decrement(db_session, 123456, 1)


async def test_decrement_storage_fault_is_reported(db_session, make_product, stock_of, monkeypatch):
    p = await make_product(stock=3)
    monkeypatch.setattr(inventory, "_conditional_decrement", _storage_fault)

    with capture_logs() as logs:
        result = await inventory.decrement(db_session, p, 1)

    assert result.success is False
    assert result.reason == MutationReason.storage_fault
    assert await stock_of(p) == 3
    failed = [e for e in logs if e["event"] == "inventory_decrement_failed"]
    assert failed and failed[0]["product_id"] == p and failed[0]["quantity"] == 1


@pytest.mark.parametrize("quantity", [1, 3, 8])
async def test_decrement_then_increment_restores_stock(db_session, make_product, stock_of, quantity):
    p = await make_product(stock=8)

    dec = await inventory.decrement(db_session, p, quantity)
    inc = await inventory.increment(db_session, p, quantity)

    assert dec.success and inc.success
    assert inc.new_stock == 8
    assert await stock_of(p) == 8


# ---------- decrement_batch ----------
async def test_decrement_batch_success(db_session, make_product, stock_of):
    p1 = await make_product(stock=5)
    p2 = await make_product(stock=2)

    result = await inventory.decrement_batch(db_session, _items((p1, 5), (p2, 1)))

    assert result.success is True
    assert result.failed_items == []
    assert await stock_of(p1) == 0
    assert await stock_of(p2) == 1


async def test_decrement_batch_is_all_or_nothing(db_session, make_product, stock_of):
    """
    GIVEN 3 lignes dont la 2e sans stock suffisant
    THEN aucun stock n'a bougé, la 2e ligne est identifiée
    """
    p1 = await make_product(stock=4)
    p2 = await make_product(stock=1)
    p3 = await make_product(stock=9)

    result = await inventory.decrement_batch(db_session, _items((p1, 2), (p2, 2), (p3, 3)))

    assert result.success is False
    assert result.failed_items == [p2]
    assert result.reason == MutationReason.insufficient_stock
    assert await stock_of(p1) == 4
    assert await stock_of(p2) == 1
    assert await stock_of(p3) == 9


async def test_decrement_batch_rolls_back_first_line(db_session, make_product, stock_of):
    p = await make_product(stock=5)
    p2 = await make_product(stock=2)

    result = await inventory.decrement_batch(db_session, _items((p, 3), (p2, 10)))

    assert result.success is False
    assert await stock_of(p) == 5
    assert await stock_of(p2) == 2


async def test_decrement_batch_unknown_product(db_session, make_product, stock_of):
    p = await make_product(stock=5)

    result = await inventory.decrement_batch(db_session, _items((p, 1), (777_777, 1)))

    assert result.success is False
    assert result.failed_items == [777_777]
    assert result.reason == MutationReason.not_found
    assert await stock_of(p) == 5


async def test_decrement_batch_empty_is_noop(db_session):
    result = await inventory.decrement_batch(db_session, [])
    assert result.success is True


async def test_decrement_batch_replay_does_not_double_deduct(db_session, make_product, stock_of):
    p = await make_product(stock=10)
    items = _items((p, 3))

    first = await inventory.decrement_batch(db_session, items, operation_key="order:ORD-1")
    second = await inventory.decrement_batch(db_session, items, operation_key="order:ORD-1")

    assert first.success is True and first.replayed is False
    assert second.success is True and second.replayed is True
    assert await stock_of(p) == 7


async def test_decrement_batch_key_reused_with_other_payload(db_session, make_product, stock_of):
    p = await make_product(stock=10)
    await inventory.decrement_batch(db_session, _items((p, 3)), operation_key="order:ORD-2")

    with pytest.raises(IdempotencyConflictError):
        await inventory.decrement_batch(db_session, _items((p, 4)), operation_key="order:ORD-2")

    assert await stock_of(p) == 7


async def test_decrement_batch_lost_key_race_leaves_session_idle(
    db_session, session_factory, make_product, stock_of, monkeypatch
):
    """
    GIVEN une autre transaction commite la même clé entre la lecture et l'insertion
    THEN le batch répond en rejeu, la session redevient oisive et la suite commite
    """
    p = await make_product(stock=10)
    items = _items((p, 3))
    async with session_factory() as other:
        await inventory.decrement_batch(other, items, operation_key="order:ORD-RACE")

    async def claim_without_lookup(db, *, key, operation_type, request_hash, item_count):
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

    monkeypatch.setattr(inventory, "_claim_operation_key", claim_without_lookup)

    result = await inventory.decrement_batch(db_session, items, operation_key="order:ORD-RACE")

    assert result.success is True and result.replayed is True
    assert db_session.in_transaction() is False

    follow_up = await inventory.decrement(db_session, p, 1)

    assert follow_up.success is True
    assert await stock_of(p) == 6


async def test_decrement_batch_failed_attempt_does_not_consume_key(db_session, make_product, stock_of):
    p = await make_product(stock=1)
    items = _items((p, 2))

    failed = await inventory.decrement_batch(db_session, items, operation_key="order:ORD-3")
    await inventory.increment(db_session, p, 1)
    retried = await inventory.decrement_batch(db_session, items, operation_key="order:ORD-3")

    assert failed.success is False
    assert retried.success is True and retried.replayed is False
    assert await stock_of(p) == 0


async def test_decrement_batch_in_caller_transaction_uses_savepoint(db_session, make_product, stock_of):
    p = await make_product(stock=1)
    db_session.add(Product(sku="CALLER-SKU", name="caller work", price=Decimal("1.00"), stock=3))
    await db_session.flush()

    result = await inventory.decrement_batch(db_session, _items((p, 2)))
    await db_session.commit()

    assert result.success is False
    count = await db_session.scalar(select(func.count()).select_from(Product).where(Product.sku == "CALLER-SKU"))
    assert count == 1
    assert await stock_of(p) == 1


async def test_decrement_in_caller_transaction_waits_for_caller_commit(db_session, make_product, stock_of):
    p = await make_product(stock=5)
    await db_session.execute(select(Product.id))  # transaction ouverte par l'appelant

    result = await inventory.decrement(db_session, p, 2)
    await db_session.rollback()

    assert result.success is True
    assert await stock_of(p) == 5


# ---------- increment ----------
async def test_increment_unknown_product(db_session):
    with pytest.raises(ProductNotFoundError):
        await inventory.increment(db_session, 31337, 1)


async def test_increment_storage_fault_is_flagged(db_session, make_product, stock_of, monkeypatch):
    p = await make_product(stock=2)
    monkeypatch.setattr(inventory, "_additive_increment", _storage_fault)

    with capture_logs() as logs:
        result = await inventory.increment(db_session, p, 5)

    assert result.success is False
    assert result.reason == MutationReason.storage_fault
    assert await stock_of(p) == 2
    alerts = [e for e in logs if e["event"] == "inventory_increment_failed"]
    assert alerts and alerts[0]["alert"] is True and alerts[0]["log_level"] == "error"


async def test_increment_batch_success_and_replay(db_session, make_product, stock_of):
    p1 = await make_product(stock=0)
    p2 = await make_product(stock=3)
    items = _items((p1, 2), (p2, 1))

    first = await inventory.increment_batch(db_session, items, operation_key="order:ORD-9:restock")
    again = await inventory.increment_batch(db_session, items, operation_key="order:ORD-9:restock")

    assert first.success is True
    assert again.success is True and again.replayed is True
    assert await stock_of(p1) == 2
    assert await stock_of(p2) == 4
    ops = await db_session.scalar(select(func.count()).select_from(InventoryOperation))
    assert ops == 1


async def test_increment_batch_unknown_product_aborts_whole_batch(db_session, make_product, stock_of):
    p = await make_product(stock=1)

    result = await inventory.increment_batch(db_session, _items((p, 5), (888_888, 1)))

    assert result.success is False
    assert result.failed_items == [888_888]
    assert await stock_of(p) == 1


async def test_increment_batch_storage_fault(db_session, make_product, stock_of, monkeypatch):
    p = await make_product(stock=1)
    monkeypatch.setattr(inventory, "_additive_increment", _storage_fault)

    result = await inventory.increment_batch(db_session, _items((p, 5)))

    assert result.success is False
    assert result.reason == MutationReason.storage_fault
    assert await stock_of(p) == 1


# ---------- reporting ----------
async def test_low_stock_threshold_boundary(db_session, make_product):
    empty = await make_product(stock=0)
    one = await make_product(stock=1)
    ten = await make_product(stock=10)
    eleven = await make_product(stock=11)

    low = await inventory.get_low_stock_products(db_session, 10)
    out = await inventory.get_out_of_stock_products(db_session)

    assert [p.id for p in low] == [one, ten]
    assert empty not in [p.id for p in low]
    assert eleven not in [p.id for p in low]
    assert [p.id for p in out] == [empty]


async def test_low_stock_sorted_by_stock(db_session, make_product):
    a = await make_product(stock=7)
    b = await make_product(stock=2)
    c = await make_product(stock=5)

    low = await inventory.get_low_stock_products(db_session, 10)

    assert [p.id for p in low] == [b, c, a]


async def test_low_stock_negative_threshold(db_session):
    with pytest.raises(ValueError):
        await inventory.get_low_stock_products(db_session, -1)


async def test_stock_report_summary(db_session, make_product):
    await make_product(stock=0)
    await make_product(stock=0)
    await make_product(stock=3)
    await make_product(stock=50)

    report = await inventory.get_stock_report(db_session, threshold=5)

    assert report.low_stock.count == 1
    assert report.low_stock.threshold == 5
    assert report.out_of_stock.count == 2
    assert report.summary.needs_attention == 3
