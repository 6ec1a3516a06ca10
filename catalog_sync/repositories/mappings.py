from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, case, delete, false, func, not_, null, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.database import utcnow
from catalog_sync.exceptions import NotFoundError, StorageError, ValidationError
from catalog_sync.models import JobKind, ProductMapping, SyncState
from catalog_sync.schemas import MappingIn, UpsertResult

EXTERNAL_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")

# (enable flag, last-sync timestamp) owned by each sync job kind
KIND_COLUMNS = {
    JobKind.PRICE:      (ProductMapping.price_sync_enabled, ProductMapping.last_price_sync_at),
    JobKind.STOCK:      (ProductMapping.sync_enabled, ProductMapping.last_sync_at),
    JobKind.INFO:       (ProductMapping.sync_enabled, ProductMapping.last_update_at),
    JobKind.IMAGES:     (ProductMapping.sync_enabled, ProductMapping.last_image_sync_at),
    JobKind.VARIATIONS: (ProductMapping.sync_enabled, ProductMapping.last_variation_sync_at),
    JobKind.CATEGORIES: (ProductMapping.sync_enabled, ProductMapping.last_category_sync_at),
}

# states the regular sync jobs never pick up
_EXCLUDED_STATES = (SyncState.FAILED.value, SyncState.ABANDONED.value)


def _owns_state(kind: JobKind):
    """
    True when the mapping's failure bookkeeping belongs to `kind`: nothing
    has failed, the last failure was this kind, or the product itself is
    gone (abandoned with no failing kind).
    """
    return or_(
        ProductMapping.last_failed_job.is_(None),
        ProductMapping.last_failed_job == kind.value,
    )


def _held_for(kind: JobKind):
    """Failed or abandoned by `kind` (or by a missing product)."""
    return and_(ProductMapping.sync_state.in_(_EXCLUDED_STATES), _owns_state(kind))


def validate_external_id(value: Optional[str], field: str = "external_id") -> str:
    if not value or not EXTERNAL_ID_PATTERN.match(value):
        raise ValidationError(
            f"{field} must be 10 uppercase alphanumeric characters",
            {field: value},
        )
    return value


def _columns_for(kind: JobKind):
    try:
        return KIND_COLUMNS[kind]
    except KeyError:
        raise ValidationError(f"{kind.value} is not a sync job kind", {"job_kind": kind.value})


class MappingRepository:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self._clock = clock

    async def upsert(self, data: MappingIn) -> UpsertResult:
        """
        Insert the (local_id, external_id) pair or update it in place.
        On update only the fields explicitly set on `data` are written,
        so concurrent jobs never clobber each other's columns.
        """
        validate_external_id(data.external_id)
        if data.parent_external_id is not None:
            validate_external_id(data.parent_external_id, "parent_external_id")

        now = self._clock()
        try:
            existing = await self._get_pair(data.local_id, data.external_id)
            if existing is not None:
                changes = data.model_dump(exclude_unset=True, exclude={"local_id", "external_id"})
                for field, value in changes.items():
                    if field == "consecutive_error_count" and value is None:
                        continue
                    setattr(existing, field, getattr(value, "value", value))
                existing.updated_at = now
                await self.db.flush()
                return UpsertResult(id=existing.id, inserted=False)

            values = data.model_dump()
            values["import_source"] = data.import_source.value
            values["consecutive_error_count"] = data.consecutive_error_count or 0
            row = ProductMapping(
                **values,
                sync_state=SyncState.NEVER_SYNCED.value,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            await self.db.flush()
            return UpsertResult(id=row.id, inserted=True)
        except IntegrityError as exc:
            raise StorageError(
                "Mapping violates a storage constraint",
                {"local_id": data.local_id, "external_id": data.external_id, "error": str(exc.orig)},
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError("Mapping upsert failed", {"error": str(exc)}) from exc

    async def _get_pair(self, local_id: int, external_id: str) -> Optional[ProductMapping]:
        rows = await self.db.execute(
            select(ProductMapping)
            .where(ProductMapping.local_id == local_id, ProductMapping.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def get_by_id(self, mapping_id: int) -> Optional[ProductMapping]:
        rows = await self.db.execute(
            select(ProductMapping)
            .where(ProductMapping.id == mapping_id)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def find_by_local_id(self, local_id: int) -> Optional[ProductMapping]:
        rows = await self.db.execute(
            select(ProductMapping)
            .where(ProductMapping.local_id == local_id)
            .order_by(ProductMapping.id)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def find_by_external_id(
        self, external_id: str, region: Optional[str] = None
    ) -> Optional[ProductMapping]:
        stmt = select(ProductMapping).where(ProductMapping.external_id == external_id)
        if region:
            stmt = stmt.where(ProductMapping.region == region)
        rows = await self.db.execute(
            stmt.order_by(ProductMapping.id).execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def list_for_local_ids(self, local_ids: Iterable[int]) -> List[ProductMapping]:
        rows = await self.db.execute(
            select(ProductMapping)
            .where(ProductMapping.local_id.in_(list(local_ids)))
            .order_by(ProductMapping.local_id, ProductMapping.id)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def list_due_for_sync(
        self,
        job_kind: JobKind,
        staleness_threshold: timedelta,
        limit: int,
    ) -> List[ProductMapping]:
        """
        Never-synced first, then oldest-synced first. A failure only holds
        a mapping back from the kind that failed; the retry job owns it.
        """
        flag, last_synced = _columns_for(job_kind)
        cutoff = self._clock() - staleness_threshold

        stmt = (
            select(ProductMapping)
            .where(
                flag.is_(True),
                not_(_held_for(job_kind)),
                (last_synced.is_(None)) | (last_synced < cutoff),
            )
            .order_by(last_synced.asc().nulls_first(), ProductMapping.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        if job_kind is JobKind.VARIATIONS:
            # variation families are synced through their parent
            stmt = stmt.where(ProductMapping.parent_external_id == ProductMapping.external_id)
        rows = await self.db.execute(stmt)
        return list(rows.scalars().all())

    async def list_retry_candidates(
        self,
        max_retries: int,
        limit: int,
        backoff: Callable[[int], float],
    ) -> List[ProductMapping]:
        """
        Failed mappings still under max_retries whose backoff window,
        measured from last_error_at, has elapsed. A count of 0 means another
        kind succeeded since the failure; it waits like a first failure.
        """
        now = self._clock()
        # one window per attempt count; the count is bounded by max_retries
        elapsed = [
            and_(
                ProductMapping.consecutive_error_count == attempt,
                ProductMapping.last_error_at <= now - timedelta(seconds=backoff(attempt)),
            )
            for attempt in range(0, max_retries)
        ]
        rows = await self.db.execute(
            select(ProductMapping)
            .where(
                ProductMapping.sync_state == SyncState.FAILED.value,
                ProductMapping.consecutive_error_count < max_retries,
                ProductMapping.last_failed_job.is_not(None),
                or_(ProductMapping.last_error_at.is_(None), *elapsed) if elapsed else false(),
            )
            .order_by(ProductMapping.last_error_at.asc().nulls_first(), ProductMapping.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def record_sync_result(
        self,
        local_id: int,
        job_kind: JobKind,
        success: bool,
        *,
        external_id: Optional[str] = None,
        abandon: bool = False,
        max_attempts: Optional[int] = None,
    ) -> None:
        _, last_synced = _columns_for(job_kind)
        now = self._clock()
        values = {last_synced: now, ProductMapping.updated_at: now}

        if success:
            # another kind's outstanding failure stays held for that kind
            owns = _owns_state(job_kind)
            values.update({
                ProductMapping.consecutive_error_count: 0,
                ProductMapping.sync_state: case(
                    (owns, SyncState.SYNCED.value), else_=ProductMapping.sync_state
                ),
                ProductMapping.last_failed_job: case(
                    (owns, null()), else_=ProductMapping.last_failed_job
                ),
            })
        else:
            next_count = ProductMapping.consecutive_error_count + 1
            failed_job = job_kind.value
            if abandon:
                # the product is gone for every kind
                state = SyncState.ABANDONED.value
                failed_job = None
            elif max_attempts:
                state = case(
                    (next_count >= max_attempts, SyncState.ABANDONED.value),
                    else_=SyncState.FAILED.value,
                )
            else:
                state = SyncState.FAILED.value
            values.update({
                ProductMapping.consecutive_error_count: next_count,
                ProductMapping.sync_state: state,
                ProductMapping.last_failed_job: failed_job,
                ProductMapping.last_error_at: now,
            })

        stmt = update(ProductMapping).where(ProductMapping.local_id == local_id)
        if external_id is not None:
            stmt = stmt.where(ProductMapping.external_id == external_id)
        try:
            result = await self.db.execute(
                stmt.values(values).execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise StorageError("Could not record sync result", {"local_id": local_id, "error": str(exc)}) from exc
        if result.rowcount == 0:
            raise NotFoundError(f"No mapping for local id {local_id}", {"local_id": local_id})

    async def mark_state(
        self,
        mapping_ids: Iterable[int],
        state: SyncState,
        kind: Optional[JobKind] = None,
    ) -> None:
        """With `kind`, rows held by another kind's failure keep their state."""
        ids = list(mapping_ids)
        if not ids:
            return
        stmt = update(ProductMapping).where(ProductMapping.id.in_(ids))
        if kind is not None:
            stmt = stmt.where(
                or_(ProductMapping.sync_state.not_in(_EXCLUDED_STATES), _owns_state(kind))
            )
        try:
            await self.db.execute(
                stmt.values(sync_state=state.value)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise StorageError("Could not update sync state", {"error": str(exc)}) from exc

    async def list_local_ids(self, after_local_id: int, limit: int) -> List[int]:
        rows = await self.db.execute(
            select(ProductMapping.local_id)
            .where(ProductMapping.local_id > after_local_id)
            .group_by(ProductMapping.local_id)
            .order_by(ProductMapping.local_id)
            .limit(limit)
        )
        return [r[0] for r in rows.all()]

    async def delete_for_local_ids(self, local_ids: Iterable[int]) -> int:
        ids = list(local_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            delete(ProductMapping)
            .where(ProductMapping.local_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def counts_by_state(self) -> Dict[str, int]:
        rows = await self.db.execute(
            select(ProductMapping.sync_state, func.count(ProductMapping.id))
            .group_by(ProductMapping.sync_state)
        )
        return {state: count for state, count in rows.all()}
