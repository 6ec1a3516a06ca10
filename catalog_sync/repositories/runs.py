from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.database import utcnow
from catalog_sync.models import JobState, SyncRun
from catalog_sync.schemas import RunResult

log = structlog.get_logger(__name__)


class RunRepository:
    """Per-job lock, disable switch and run history. Every write commits."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    async def get_state(self, job_name: str) -> Optional[JobState]:
        rows = await self.db.execute(
            select(JobState)
            .where(JobState.job_name == job_name)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def list_states(self) -> List[JobState]:
        rows = await self.db.execute(
            select(JobState).order_by(JobState.job_name).execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def _ensure_state(self, job_name: str) -> None:
        if await self.get_state(job_name) is not None:
            return
        try:
            self.db.add(JobState(job_name=job_name, disabled=False))
            await self.db.commit()
        except IntegrityError:
            # another trigger created it first
            await self.db.rollback()

    # ── Lock ──────────────────────────────────────────────────────────────────

    async def acquire_lock(self, job_name: str, holder: str, ttl_seconds: int) -> bool:
        """
        Take the named lock if it is free or its holder overran the expiry.
        A single conditional UPDATE, so two triggers can never both win.
        """
        await self._ensure_state(job_name)
        now = self._clock()

        state = await self.get_state(job_name)
        stale_holder = None
        if state is not None and state.lock_holder and state.lock_expires_at and state.lock_expires_at <= now:
            stale_holder = state.lock_holder

        result = await self.db.execute(
            update(JobState)
            .where(
                JobState.job_name == job_name,
                or_(JobState.lock_holder.is_(None), JobState.lock_expires_at <= now),
            )
            .values(
                lock_holder=holder,
                lock_acquired_at=now,
                lock_expires_at=now + timedelta(seconds=ttl_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return False
        if stale_holder:
            log.warning("lock.force_released", job=job_name, previous_holder=stale_holder)
        return True

    async def release_lock(self, job_name: str, holder: str) -> bool:
        result = await self.db.execute(
            update(JobState)
            .where(JobState.job_name == job_name, JobState.lock_holder == holder)
            .values(lock_holder=None, lock_acquired_at=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ── Auth breaker ──────────────────────────────────────────────────────────

    async def disable(self, job_name: str, reason: str) -> None:
        await self._ensure_state(job_name)
        await self.db.execute(
            update(JobState)
            .where(JobState.job_name == job_name)
            .values(disabled=True, disabled_reason=reason, disabled_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def enable(self, job_name: str) -> None:
        await self._ensure_state(job_name)
        await self.db.execute(
            update(JobState)
            .where(JobState.job_name == job_name)
            .values(disabled=False, disabled_reason=None, disabled_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    # ── History ───────────────────────────────────────────────────────────────

    async def record_run(self, result: RunResult, triggered_by: str = "scheduler") -> None:
        now = self._clock()
        self.db.add(
            SyncRun(
                job_name=result.job_name,
                job_type=result.job_type,
                status=result.status,
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
                cache_hits=result.cache_hits,
                duration_ms=result.duration_ms,
                error_detail=result.reason,
                triggered_by=triggered_by,
                created_at=now,
            )
        )
        await self.db.execute(
            update(JobState)
            .where(JobState.job_name == result.job_name)
            .values(last_run_at=now, last_status=result.status)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def recent(self, limit: int = 50, job_name: Optional[str] = None) -> List[SyncRun]:
        stmt = select(SyncRun)
        if job_name:
            stmt = stmt.where(SyncRun.job_name == job_name)
        rows = await self.db.execute(
            stmt.order_by(SyncRun.created_at.desc(), SyncRun.id.desc()).limit(limit)
        )
        return list(rows.scalars().all())

    async def cleanup_history(self, retention_days: int) -> int:
        cutoff = self._clock() - timedelta(days=retention_days)
        result = await self.db.execute(
            delete(SyncRun)
            .where(SyncRun.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0
