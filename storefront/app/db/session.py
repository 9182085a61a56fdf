from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.app.core.config import DATABASE_URL, SQL_ECHO

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True, echo=SQL_ECHO)
SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
