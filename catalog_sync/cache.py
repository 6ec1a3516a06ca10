from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.database import utcnow
from catalog_sync.exceptions import CacheError
from catalog_sync.models import CacheEntry

log = structlog.get_logger(__name__)


# ── Key builder ───────────────────────────────────────────────────────────────

def build_key(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:12]
    slug = raw[:60].replace(" ", "_")
    return f"cat:v1:{digest}:{slug}"


# ── Response cache ────────────────────────────────────────────────────────────
#
# Advisory: every failure is logged and reported as a miss so callers fall
# through to the upstream API. Writes commit immediately and are therefore
# only issued between units of work.

class ResponseCache:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    async def get(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        try:
            rows = await self.db.execute(
                select(CacheEntry)
                .where(CacheEntry.cache_key == key, CacheEntry.expires_at > now)
                .execution_options(populate_existing=True)
            )
            entry = rows.scalars().first()
            if entry is None:
                await record_miss()
                return None

            entry.access_count = (entry.access_count or 0) + 1
            entry.accessed_at = now
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log.warning("cache.get.error", key=key, error=str(e))
            await record_miss()
            return None

        await record_hit()
        return entry

    async def set(
        self,
        key: str,
        payload: bytes,
        ttl: int,
        *,
        external_id: Optional[str] = None,
        region: str = "US",
        api_endpoint: str = "",
        request_params: Optional[Dict[str, Any]] = None,
        response_status: int = 200,
    ) -> None:
        """
        Upsert the entry. An overwrite keeps created_at, carries the
        access counter forward (+1) and restarts the TTL from now.
        """
        if ttl <= 0:
            log.warning("cache.set.invalid_ttl", key=key, ttl=ttl)
            return

        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)
        try:
            rows = await self.db.execute(
                select(CacheEntry)
                .where(CacheEntry.cache_key == key)
                .execution_options(populate_existing=True)
            )
            entry = rows.scalars().first()
            if entry is None:
                self.db.add(
                    CacheEntry(
                        cache_key=key,
                        external_id=external_id,
                        region=region,
                        api_endpoint=api_endpoint,
                        request_params=request_params,
                        response_data=payload,
                        response_status=response_status,
                        expires_at=expires_at,
                        created_at=now,
                        accessed_at=now,
                        access_count=1,
                    )
                )
            else:
                entry.external_id = external_id
                entry.region = region
                entry.api_endpoint = api_endpoint
                entry.request_params = request_params
                entry.response_data = payload
                entry.response_status = response_status
                entry.expires_at = expires_at
                entry.accessed_at = now
                entry.access_count = (entry.access_count or 0) + 1
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log.warning("cache.set.error", key=key, error=str(e))

    async def purge_expired(self) -> int:
        """Delete rows whose expiry has passed. Safe to call repeatedly."""
        now = self._clock()
        try:
            result = await self.db.execute(
                delete(CacheEntry)
                .where(CacheEntry.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CacheError("Cache purge failed", {"error": str(e)}) from e

        removed = result.rowcount or 0
        if removed:
            log.info("cache.purged", count=removed)
        return removed

    async def clear(self) -> int:
        try:
            result = await self.db.execute(
                delete(CacheEntry).execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CacheError("Cache clear failed", {"error": str(e)}) from e
        log.info("cache.cleared", count=result.rowcount or 0)
        return result.rowcount or 0

    async def counts(self) -> Dict[str, int]:
        now = self._clock()
        total = (await self.db.execute(select(func.count(CacheEntry.id)))).scalar_one()
        expired = (
            await self.db.execute(
                select(func.count(CacheEntry.id)).where(CacheEntry.expires_at <= now)
            )
        ).scalar_one()
        return {"entries": total, "expired": expired}


# ── Stats (thread-safe via asyncio.Lock) ──────────────────────────────────────

_stats_lock = asyncio.Lock()
_stats = {"hits": 0, "misses": 0}


async def record_hit() -> None:
    async with _stats_lock:
        _stats["hits"] += 1


async def record_miss() -> None:
    async with _stats_lock:
        _stats["misses"] += 1


async def get_cache_stats() -> dict:
    async with _stats_lock:
        total = _stats["hits"] + _stats["misses"]
        hit_rate = round(_stats["hits"] / total, 4) if total else 0.0
        return {**_stats, "total_requests": total, "hit_rate": hit_rate}
