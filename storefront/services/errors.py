"""
Exceptions métier du storefront.

Le stock insuffisant côté ledger n'est PAS une exception (résultat
success=False). Ne remontent ici que les cas réellement exceptionnels
et les refus des flux commande.
"""

from __future__ import annotations

from typing import Any


class StorefrontError(Exception):
    """Base de toutes les erreurs applicatives."""


class NotFoundError(StorefrontError, LookupError):
    pass


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class OutOfStockError(StorefrontError):
    """La commande ne peut pas être honorée ; items = lignes indisponibles."""

    def __init__(self, items: list[dict[str, Any]]):
        self.items = items
        super().__init__("Insufficient inventory")


class OrderStateError(StorefrontError):
    pass


class IdempotencyConflictError(StorefrontError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Idempotency key {key!r} already used with a different payload")


class StorageFaultError(StorefrontError):
    pass


class OrderAccessError(StorefrontError):
    pass
