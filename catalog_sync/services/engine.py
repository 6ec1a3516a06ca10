from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_sync.cache import ResponseCache, build_key
from catalog_sync.config import settings
from catalog_sync.database import utcnow
from catalog_sync.exceptions import (
    AppError, AuthError, CacheError, NotFoundError, PermanentError,
    ProductNotFoundError, RateLimitError, StorageError, TransientError,
)
from catalog_sync.models import JobKind, ProductMapping, Severity, SyncState
from catalog_sync.repositories.errors import ErrorLogRepository
from catalog_sync.repositories.mappings import MappingRepository
from catalog_sync.repositories.price_history import PriceHistoryRepository
from catalog_sync.repositories.runs import RunRepository
from catalog_sync.schemas import ErrorLogIn, PriceChange, RunResult
from catalog_sync.services.catalog import CatalogGateway, NullCatalogGateway
from catalog_sync.services.conditions import (
    ConfigurationProvider, MappingConfigurationProvider, dependencies_met,
)
from catalog_sync.services.jobs import (
    DEFAULT_JOBS, ENDPOINTS, JobDescriptor, OneShotJob, backoff_delay,
    by_priority,
)
from catalog_sync.services.product_api import ProductApiClient, ProductItem
from catalog_sync.signals import RedisCancelFlags

log = structlog.get_logger(__name__)


# ── Pacing ────────────────────────────────────────────────────────────────────

class RequestPacer:
    """Minimum spacing between external calls, shared by every job in the process."""

    def __init__(
        self,
        delay: float,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.delay = delay
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        async with self._lock:
            waited = 0.0
            if self._last is not None:
                remaining = self.delay - (self._clock() - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last = self._clock()
            return waited


pacer = RequestPacer(settings.API_REQUEST_DELAY)


# ── Run bookkeeping ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Candidate:
    """Plain snapshot of a mapping; ORM rows expire on every rollback."""
    id: int
    local_id: int
    external_id: str
    region: str
    kind: JobKind

    @classmethod
    def from_mapping(cls, m: ProductMapping, kind: JobKind) -> "Candidate":
        return cls(m.id, m.local_id, m.external_id, m.region, kind)


@dataclass
class _Tally:
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    cache_hits: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed


class _Stop(Exception):
    def __init__(self, status: str, reason: str):
        self.status = status
        self.reason = reason


class SyncEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        api: ProductApiClient,
        catalog: Optional[CatalogGateway] = None,
        config: Optional[ConfigurationProvider] = None,
        cancel_flags=None,
        request_pacer: Optional[RequestPacer] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        error_threshold: int = settings.ERROR_THRESHOLD,
        jobs: Optional[List[JobDescriptor]] = None,
    ):
        self._session_factory = session_factory
        self.api = api
        self.catalog = catalog or NullCatalogGateway()
        self.config = config or MappingConfigurationProvider()
        self.cancel_flags = cancel_flags or RedisCancelFlags()
        self.pacer = request_pacer or pacer
        self._clock = clock
        self._monotonic = monotonic
        self.error_threshold = error_threshold
        self.jobs = list(jobs if jobs is not None else DEFAULT_JOBS)

    # ── Public API ────────────────────────────────────────────────────────────

    def get_job(self, name: str) -> Optional[JobDescriptor]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    def precondition_failure(self, job: JobDescriptor) -> Optional[str]:
        if not job.enabled:
            return "job is disabled in configuration"
        if not dependencies_met(job.dependencies, self.config):
            return "dependency setting is off"
        if job.conditions is not None and not job.conditions.evaluate(self.config):
            return "conditions not met"
        return None

    async def cancel(self, job_name: str) -> bool:
        return await self.cancel_flags.set(job_name)

    async def run_all(self, triggered_by: str = "scheduler", force: bool = False) -> List[RunResult]:
        results = []
        for job in by_priority(self.jobs):
            results.append(await self.run(job, triggered_by=triggered_by, force=force))
        return results

    async def run(
        self,
        job: JobDescriptor,
        triggered_by: str = "scheduler",
        force: bool = False,
    ) -> RunResult:
        """
        One invocation of a job. Unmet preconditions and a busy lock skip
        without a history row; everything that took the lock is recorded.
        `force` bypasses enabled/dependencies/conditions, never the auth breaker.
        """
        started = self._monotonic()
        async with self._session_factory() as db:
            runs = RunRepository(db, self._clock)

            state = await runs.get_state(job.name)
            if state is not None and state.disabled:
                log.info("job.skipped.disabled", job=job.name, reason=state.disabled_reason)
                return self._result(job, "disabled", started, reason=state.disabled_reason)

            if not force:
                reason = self.precondition_failure(job)
                if reason:
                    log.info("job.skipped", job=job.name, reason=reason)
                    return self._result(job, "skipped", started, reason=reason)

            holder = uuid.uuid4().hex
            if not await runs.acquire_lock(job.name, holder, job.timeout_seconds):
                log.info("job.skipped.locked", job=job.name)
                return self._result(job, "skipped", started, reason="locked")

            await self.cancel_flags.clear(job.name)
            log.info("job.started", job=job.name, triggered_by=triggered_by, forced=force)

            try:
                result = await self._execute(db, job, started)
            except (SQLAlchemyError, StorageError, CacheError) as exc:
                # lock stays until it expires
                await db.rollback()
                log.error("job.failed", job=job.name, error=str(exc))
                await ErrorLogRepository(db, self._clock).record(
                    ErrorLogIn(
                        error_type="job_failed",
                        error_code=getattr(exc, "error_code", "STORAGE_ERROR"),
                        message=str(exc),
                        context=job.name,
                    )
                )
                result = self._result(job, "failed", started, reason=str(exc))
                await self._save(runs, result, triggered_by)
                return result

            try:
                await runs.release_lock(job.name, holder)
            except SQLAlchemyError as exc:
                await db.rollback()
                log.warning("lock.release_failed", job=job.name, error=str(exc))
            await self._save(runs, result, triggered_by)
            log.info("job.finished", **result.model_dump())
            return result

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def _execute(self, db: AsyncSession, job: JobDescriptor, started: float) -> RunResult:
        kind = job.job_type
        deadline = started + job.timeout_seconds

        if kind is JobKind.CACHE_CLEANUP:
            removed = await ResponseCache(db, self._clock).purge_expired()
            return self._result(job, "completed", started, tally=_Tally(removed, removed))

        if kind is JobKind.LOG_CLEANUP:
            removed = await ErrorLogRepository(db, self._clock).cleanup(job.retention_days)
            await RunRepository(db, self._clock).cleanup_history(job.retention_days)
            return self._result(job, "completed", started, tally=_Tally(removed, removed))

        if kind is JobKind.ORPHAN_CLEANUP:
            return await self._orphan_cleanup(db, job, started, deadline)

        mappings = MappingRepository(db, self._clock)
        if isinstance(job, OneShotJob) and job.local_ids:
            rows = await mappings.list_for_local_ids(job.local_ids)
            candidates = [Candidate.from_mapping(m, kind) for m in rows]
        elif kind is JobKind.RETRY_FAILED:
            rows = await mappings.list_retry_candidates(job.max_retries, job.batch_size, backoff_delay)
            candidates = []
            for m in rows:
                failed_kind = JobKind(m.last_failed_job)
                if failed_kind.is_sync:
                    candidates.append(Candidate.from_mapping(m, failed_kind))
        else:
            rows = await mappings.list_due_for_sync(kind, job.staleness, job.batch_size)
            candidates = [Candidate.from_mapping(m, kind) for m in rows]

        return await self._sync_batch(db, job, candidates, started, deadline)

    # ── Sync batches ──────────────────────────────────────────────────────────

    async def _sync_batch(
        self,
        db: AsyncSession,
        job: JobDescriptor,
        candidates: List[Candidate],
        started: float,
        deadline: float,
    ) -> RunResult:
        tally = _Tally(selected=len(candidates))
        if not candidates:
            return self._result(job, "completed", started, tally=tally)

        mappings = MappingRepository(db, self._clock)
        errors = ErrorLogRepository(db, self._clock)
        for kind in {c.kind for c in candidates}:
            ids = [c.id for c in candidates if c.kind is kind]
            await mappings.mark_state(ids, SyncState.PENDING, kind)
        await db.commit()

        status, reason = "completed", None
        consecutive = 0
        for cand in candidates:
            if await self.cancel_flags.is_set(job.name):
                status, reason = "cancelled", "cancelled by operator"
                log.info("job.cancelled", job=job.name, processed=tally.processed)
                break
            if deadline - self._monotonic() <= 0:
                status, reason = "timed_out", f"exceeded {job.timeout_seconds}s"
                log.warning("job.timed_out", job=job.name, processed=tally.processed)
                break

            try:
                await self._sync_one(db, cand, tally, deadline)
            except _Stop as stop:
                status, reason = stop.status, stop.reason
                await self._release_candidate(db, mappings, cand)
                if stop.status == "rate_limited":
                    await errors.record(self._error_entry(cand, "rate_limited", reason, Severity.WARNING))
                break
            except AuthError as exc:
                tally.failed += 1
                await self._fail(db, mappings, errors, cand, exc, job)
                await RunRepository(db, self._clock).disable(job.name, exc.detail)
                log.critical("sync.auth_failed", job=job.name, error=exc.detail)
                status, reason = "disabled", exc.detail
                break
            except (AppError, SQLAlchemyError) as exc:
                tally.failed += 1
                await self._fail(db, mappings, errors, cand, exc, job)
                consecutive += 1
                if consecutive >= self.error_threshold:
                    status = "circuit_open"
                    reason = f"{consecutive} consecutive failures"
                    log.error("sync.circuit_open", job=job.name, failures=consecutive)
                    await errors.record(
                        ErrorLogIn(
                            error_type="circuit_open",
                            message=f"{job.name} stopped after {consecutive} consecutive failures",
                            context=job.name,
                        )
                    )
                    break
            else:
                tally.succeeded += 1
                consecutive = 0

        return self._result(job, status, started, tally=tally, reason=reason)

    async def _sync_one(
        self,
        db: AsyncSession,
        cand: Candidate,
        tally: _Tally,
        deadline: float,
    ) -> None:
        mappings = MappingRepository(db, self._clock)
        cache = ResponseCache(db, self._clock)
        endpoint = ENDPOINTS[cand.kind]

        await mappings.mark_state([cand.id], SyncState.IN_FLIGHT, cand.kind)
        await db.commit()

        key = build_key(endpoint.name, cand.region, cand.external_id, *endpoint.resources)
        entry = await cache.get(key)
        if entry is not None and entry.response_data is not None:
            item = self._parse(cand, entry.response_data)
            tally.cache_hits += 1
        else:
            await self.pacer.wait()
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                raise _Stop("timed_out", "deadline reached before the external call")
            try:
                response = await asyncio.wait_for(
                    self.api.get_item(cand.external_id, cand.region, endpoint.resources, endpoint.name),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                raise _Stop("timed_out", "deadline reached during the external call")
            except RateLimitError as exc:
                log.warning("sync.rate_limited", external_id=cand.external_id, context=exc.context)
                raise _Stop("rate_limited", exc.detail)
            # unparseable payloads never reach the cache
            item = self._parse(cand, response.payload)
            await cache.set(
                key,
                response.payload,
                self._ttl(endpoint),
                external_id=cand.external_id,
                region=cand.region,
                api_endpoint=endpoint.name,
                request_params={"resources": list(endpoint.resources)},
                response_status=response.status,
            )

        await self._apply(cand, item)

        change: Optional[PriceChange] = None
        if cand.kind is JobKind.PRICE:
            if item.price is None:
                raise PermanentError("Product payload carries no price", {"external_id": cand.external_id})
            change = await PriceHistoryRepository(db, self._clock, settings.PRICE_HISTORY_LIMIT).append(
                cand.local_id, item.price, item.currency, external_id=cand.external_id
            )

        await mappings.record_sync_result(cand.local_id, cand.kind, True, external_id=cand.external_id)
        await db.commit()
        log.debug("sync.ok", kind=cand.kind.value, local_id=cand.local_id, external_id=cand.external_id)

        if change is not None:
            await self._price_alert(db, cand, change)

    def _parse(self, cand: Candidate, payload: bytes) -> ProductItem:
        try:
            return self.api.parse_item(payload)
        except AppError:
            raise
        except Exception as exc:
            raise PermanentError(
                "Product payload could not be parsed",
                {"external_id": cand.external_id, "error": f"{type(exc).__name__}: {exc}"},
            ) from exc

    async def _apply(self, cand: Candidate, item: ProductItem) -> None:
        """Catalog gateways are third-party code; anything they raise fails this candidate only."""
        try:
            await self.catalog.apply(cand.local_id, cand.kind, item)
        except AppError:
            raise
        except Exception as exc:
            raise PermanentError(
                "Catalog rejected the update",
                {"local_id": cand.local_id, "error": f"{type(exc).__name__}: {exc}"},
            ) from exc

    def _ttl(self, endpoint) -> int:
        return int(self.config.get(f"cache_ttl_{endpoint.name}", endpoint.ttl))

    async def _price_alert(self, db: AsyncSession, cand: Candidate, change: PriceChange) -> None:
        percent = change.price_change_percent
        if percent is None or abs(percent) < settings.PRICE_ALERT_THRESHOLD_PERCENT:
            return
        log.info("price.alert", local_id=cand.local_id, external_id=cand.external_id, percent=str(percent))
        await ErrorLogRepository(db, self._clock).record(
            ErrorLogIn(
                error_type="price_alert",
                message=f"Price of {cand.external_id} moved {percent}%",
                context=cand.kind.value,
                external_id=cand.external_id,
                local_id=cand.local_id,
                severity=Severity.INFO,
                details={
                    "previous_price": str(change.previous_price),
                    "price": str(change.price),
                    "price_change": str(change.price_change),
                    "price_change_percent": str(percent),
                },
            )
        )

    async def _release_candidate(self, db: AsyncSession, mappings: MappingRepository, cand: Candidate) -> None:
        """Put an interrupted candidate back to pending without touching its counter."""
        await db.rollback()
        try:
            await mappings.mark_state([cand.id], SyncState.PENDING, cand.kind)
            await db.commit()
        except StorageError as exc:
            await db.rollback()
            log.warning("sync.release_failed", local_id=cand.local_id, error=str(exc))

    async def _fail(
        self,
        db: AsyncSession,
        mappings: MappingRepository,
        errors: ErrorLogRepository,
        cand: Candidate,
        exc: Exception,
        job: JobDescriptor,
    ) -> None:
        await db.rollback()
        abandon = isinstance(exc, ProductNotFoundError)
        storage_failure = isinstance(exc, (StorageError, NotFoundError, SQLAlchemyError))

        if not storage_failure:
            try:
                await mappings.record_sync_result(
                    cand.local_id,
                    cand.kind,
                    False,
                    external_id=cand.external_id,
                    abandon=abandon,
                    max_attempts=job.max_retries,
                )
                await db.commit()
            except (StorageError, NotFoundError) as store_exc:
                await db.rollback()
                log.warning("sync.record_failed", local_id=cand.local_id, error=str(store_exc))

        if isinstance(exc, TransientError):
            log.warning("sync.failed", kind=cand.kind.value, local_id=cand.local_id, error=str(exc))
        else:
            log.error("sync.failed", kind=cand.kind.value, local_id=cand.local_id, error=str(exc),
                      abandoned=abandon)

        error_type = "product_not_found" if abandon else "sync_error"
        if isinstance(exc, AuthError):
            error_type = "auth_error"
        elif storage_failure:
            error_type = "storage_error"
        await errors.record(self._error_entry(cand, error_type, str(exc), Severity.ERROR, exc))

    def _error_entry(
        self,
        cand: Candidate,
        error_type: str,
        message: str,
        severity: Severity,
        exc: Optional[Exception] = None,
    ) -> ErrorLogIn:
        return ErrorLogIn(
            error_type=error_type,
            error_code=exc.error_code if isinstance(exc, AppError) else None,
            message=message or error_type,
            context=cand.kind.value,
            external_id=cand.external_id,
            local_id=cand.local_id,
            severity=severity,
            details=(exc.context or None) if isinstance(exc, AppError) else None,
        )

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def _orphan_cleanup(
        self,
        db: AsyncSession,
        job: JobDescriptor,
        started: float,
        deadline: float,
    ) -> RunResult:
        """Drop mappings (and their price history) whose catalog entry is gone."""
        mappings = MappingRepository(db, self._clock)
        prices = PriceHistoryRepository(db, self._clock)
        tally = _Tally()
        status, reason = "completed", None
        after = 0
        while True:
            if await self.cancel_flags.is_set(job.name):
                status, reason = "cancelled", "cancelled by operator"
                break
            if deadline - self._monotonic() <= 0:
                status, reason = "timed_out", f"exceeded {job.timeout_seconds}s"
                break

            ids = await mappings.list_local_ids(after, job.batch_size)
            if not ids:
                break
            existing = await self.catalog.existing_ids(ids)
            orphans = [i for i in ids if i not in existing]
            if orphans:
                await prices.delete_for_local_ids(orphans)
                removed = await mappings.delete_for_local_ids(orphans)
                await db.commit()
                tally.succeeded += removed
                log.info("orphans.removed", count=removed, local_ids=orphans)
            tally.selected += len(ids)
            after = ids[-1]

        return self._result(job, status, started, tally=tally, reason=reason, skipped=0)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _result(
        self,
        job: JobDescriptor,
        status: str,
        started: float,
        tally: Optional[_Tally] = None,
        reason: Optional[str] = None,
        skipped: Optional[int] = None,
    ) -> RunResult:
        tally = tally or _Tally()
        return RunResult(
            job_name=job.name,
            job_type=job.job_type.value,
            status=status,
            processed=tally.processed,
            succeeded=tally.succeeded,
            failed=tally.failed,
            skipped=max(tally.selected - tally.processed, 0) if skipped is None else skipped,
            cache_hits=tally.cache_hits,
            duration_ms=int((self._monotonic() - started) * 1000),
            reason=reason,
        )

    async def _save(self, runs: RunRepository, result: RunResult, triggered_by: str) -> None:
        try:
            await runs.record_run(result, triggered_by)
        except SQLAlchemyError as exc:
            await runs.db.rollback()
            log.warning("run.record_failed", job=result.job_name, error=str(exc))
