from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.database import utcnow
from catalog_sync.exceptions import NotFoundError
from catalog_sync.models import ErrorLogEntry
from catalog_sync.schemas import ErrorFilters, ErrorLogIn

log = structlog.get_logger(__name__)


class ErrorLogRepository:
    """
    Structured failure log. `record` commits on its own and never raises
    on storage trouble: the caller's work must go on without its log line.
    Use a session that holds no pending work of the caller.
    """

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    async def record(self, entry: ErrorLogIn) -> Optional[int]:
        row = ErrorLogEntry(
            error_type=entry.error_type,
            error_code=entry.error_code,
            message=entry.message,
            context=entry.context,
            external_id=entry.external_id,
            local_id=entry.local_id,
            severity=entry.severity.value,
            details=entry.details,
            resolved=False,
            created_at=self._clock(),
        )
        try:
            self.db.add(row)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log.warning(
                "error_log.write_failed",
                error_type=entry.error_type,
                message=entry.message,
                error=str(e),
            )
            return None
        return row.id

    def _filtered(self, stmt, filters: ErrorFilters):
        if filters.error_type:
            stmt = stmt.where(ErrorLogEntry.error_type == filters.error_type)
        if filters.severity:
            stmt = stmt.where(ErrorLogEntry.severity == filters.severity.value)
        if filters.resolved is not None:
            stmt = stmt.where(ErrorLogEntry.resolved.is_(filters.resolved))
        if filters.local_id is not None:
            stmt = stmt.where(ErrorLogEntry.local_id == filters.local_id)
        if filters.external_id:
            stmt = stmt.where(ErrorLogEntry.external_id == filters.external_id)
        if filters.date_from:
            stmt = stmt.where(ErrorLogEntry.created_at >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(ErrorLogEntry.created_at <= filters.date_to)
        return stmt

    async def query(
        self,
        filters: Optional[ErrorFilters] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[int, List[ErrorLogEntry]]:
        filters = filters or ErrorFilters()
        total = (
            await self.db.execute(
                self._filtered(select(func.count(ErrorLogEntry.id)), filters)
            )
        ).scalar_one()

        rows = await self.db.execute(
            self._filtered(select(ErrorLogEntry), filters)
            .order_by(ErrorLogEntry.created_at.desc(), ErrorLogEntry.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )
        return total, list(rows.scalars().all())

    async def recent(self, limit: int = 20) -> List[ErrorLogEntry]:
        _, rows = await self.query(ErrorFilters(), page=1, page_size=limit)
        return rows

    async def resolve(self, entry_id: int, resolver: str) -> ErrorLogEntry:
        now = self._clock()
        result = await self.db.execute(
            update(ErrorLogEntry)
            .where(ErrorLogEntry.id == entry_id)
            .values(resolved=True, resolved_at=now, resolved_by=resolver)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFoundError(f"Error log entry {entry_id} not found", {"id": entry_id})
        await self.db.commit()

        rows = await self.db.execute(
            select(ErrorLogEntry)
            .where(ErrorLogEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().one()

    async def cleanup(self, retention_days: int = 30) -> int:
        """Drop resolved entries older than the retention. Unresolved rows stay."""
        cutoff = self._clock() - timedelta(days=retention_days)
        result = await self.db.execute(
            delete(ErrorLogEntry)
            .where(
                ErrorLogEntry.resolved.is_(True),
                ErrorLogEntry.resolved_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        removed = result.rowcount or 0
        if removed:
            log.info("error_log.cleaned", count=removed, retention_days=retention_days)
        return removed

    async def count_unresolved(self) -> int:
        return (
            await self.db.execute(
                select(func.count(ErrorLogEntry.id)).where(ErrorLogEntry.resolved.is_(False))
            )
        ).scalar_one()
