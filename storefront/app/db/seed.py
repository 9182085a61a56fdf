from __future__ import annotations

import asyncio
from decimal import Decimal

from sqlalchemy import select

from storefront.app.db.session import SessionLocal
from storefront.app.db.models.models_v1 import Product

DEMO_PRODUCTS = [
    ("BRK-PAD-001", "Brake pads (front)", Decimal("49.90"), 25),
    ("OIL-5W30-4L", "Engine oil 5W-30 4L", Decimal("34.50"), 8),
    ("WPR-BLD-24", "Wiper blade 24in", Decimal("12.00"), 0),
]


async def run_seed():
    async with SessionLocal() as db:
        for sku, name, price, stock in DEMO_PRODUCTS:
            exists = await db.scalar(select(Product).where(Product.sku == sku))
            if not exists:
                db.add(Product(sku=sku, name=name, price=price, stock=stock, active=True))
        await db.commit()

    print(f"SEED OK: {len(DEMO_PRODUCTS)} products")


if __name__ == "__main__":
    asyncio.run(run_seed())
