from __future__ import annotations

from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

import structlog
from catalog_sync.config import settings
from catalog_sync.exceptions import CacheError

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None

CANCEL_PREFIX = "sync:cancel:"
CANCEL_TTL = 6 * 3600


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise CacheError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        r = get_redis()
        return await r.ping()
    except (RedisError, CacheError, OSError):
        return False


# ── Cooperative cancellation ──────────────────────────────────────────────────
#
# An operator sets the flag; the executor polls it between candidates.
# Redis trouble reads as "not cancelled" so a flaky Redis never stops a sync.

class RedisCancelFlags:
    def __init__(self, redis_factory=get_redis, ttl: int = CANCEL_TTL):
        self._redis = redis_factory
        self.ttl = ttl

    @staticmethod
    def key(job_name: str) -> str:
        return f"{CANCEL_PREFIX}{job_name}"

    async def set(self, job_name: str) -> bool:
        try:
            await self._redis().set(self.key(job_name), "1", ex=self.ttl)
        except (RedisError, CacheError) as e:
            log.warning("cancel.set.error", job=job_name, error=str(e))
            return False
        log.info("cancel.requested", job=job_name)
        return True

    async def is_set(self, job_name: str) -> bool:
        try:
            return bool(await self._redis().exists(self.key(job_name)))
        except (RedisError, CacheError) as e:
            log.warning("cancel.check.error", job=job_name, error=str(e))
            return False

    async def clear(self, job_name: str) -> None:
        try:
            await self._redis().delete(self.key(job_name))
        except (RedisError, CacheError) as e:
            log.warning("cancel.clear.error", job=job_name, error=str(e))
