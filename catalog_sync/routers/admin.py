from __future__ import annotations
from fastapi import APIRouter, Depends
import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.auth import require_operator_key
from catalog_sync.cache import ResponseCache, get_cache_stats
from catalog_sync.config import settings
from catalog_sync.database import engine, get_db
from catalog_sync.repositories.errors import ErrorLogRepository
from catalog_sync.repositories.mappings import MappingRepository
from catalog_sync.schemas import HealthResponse, MetricsResponse
from catalog_sync.services.scheduler import scheduler_running
from catalog_sync.signals import ping_redis

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health():
    """Unauthenticated so load balancers can poll it."""
    redis_ok = await ping_redis()
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except (SQLAlchemyError, OSError):
        db_status = "error"

    return HealthResponse(
        status="ok" if (redis_ok and db_status == "ok") else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "error",
        scheduler="running" if scheduler_running() else "stopped",
        version=settings.APP_VERSION,
    )


@router.get("/metrics", response_model=MetricsResponse, dependencies=[Depends(require_operator_key)])
async def metrics(db: AsyncSession = Depends(get_db)):
    stats = await get_cache_stats()
    counts = await ResponseCache(db).counts()
    return MetricsResponse(
        cache_entries=counts["entries"],
        cache_expired_entries=counts["expired"],
        cache_hits=stats["hits"],
        cache_misses=stats["misses"],
        hit_rate=stats["hit_rate"],
        mappings_by_state=await MappingRepository(db).counts_by_state(),
        unresolved_errors=await ErrorLogRepository(db).count_unresolved(),
    )


@router.delete("/cache", status_code=204, dependencies=[Depends(require_operator_key)])
async def bust_cache(db: AsyncSession = Depends(get_db)):
    await ResponseCache(db).clear()
