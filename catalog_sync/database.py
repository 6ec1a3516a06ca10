from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from catalog_sync.config import settings

log = structlog.get_logger(__name__)

# stable constraint names so the unique (local_id, external_id) pair is addressable
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Pooled asyncpg engine; the pool is shared by the API and the scheduler."""
    return create_async_engine(
        url or settings.DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


engine = build_engine()

# sync runs keep plain snapshots past commit; rows must not expire under them
SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


def utcnow() -> datetime:
    """Naive UTC now, matching the TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db():
    """Request-scoped session; a failing handler never leaves a transaction open."""
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    # registers the tables on Base.metadata
    import catalog_sync.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    await engine.dispose()
    log.info("database.closed")
