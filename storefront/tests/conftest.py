import itertools
import os
from decimal import Decimal

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from storefront.app.db.base import Base
from storefront.app.db.models.models_v1 import Product
from storefront.services.security import SecurityEventLog


@pytest.fixture(scope="function")
async def engine(tmp_path):
    """
    Base isolée par test.

    TEST_DATABASE_URL (Postgres) si défini, sinon un fichier SQLite
    temporaire via aiosqlite. Un fichier et non ":memory:" : les tests de
    concurrence ouvrent plusieurs connexions sur la même base.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}"
    eng = create_async_engine(url, poolclass=NullPool)

    if eng.dialect.name == "sqlite":
        # pysqlite gère mal BEGIN / SAVEPOINT : on émet BEGIN nous-mêmes
        @event.listens_for(eng.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(eng.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def security_log():
    return SecurityEventLog(max_entries=100)


@pytest.fixture
def make_product(session_factory):
    counter = itertools.count(1)

    async def _make(stock: int = 0, *, price: str = "10.00", name: str | None = None) -> int:
        n = next(counter)
        async with session_factory() as db:
            p = Product(
                sku=f"TEST-SKU-{n}",
                name=name or f"TEST-PROD-{n}",
                price=Decimal(price),
                stock=stock,
                active=True,
            )
            db.add(p)
            await db.commit()
            return int(p.id)

    return _make


@pytest.fixture
def stock_of(session_factory):
    async def _stock(product_id: int) -> int | None:
        async with session_factory() as db:
            return await db.scalar(select(Product.stock).where(Product.id == product_id))

    return _stock
