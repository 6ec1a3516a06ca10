from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.auth import require_operator_key
from catalog_sync.database import get_db, utcnow
from catalog_sync.exceptions import JobDisabledError, NotFoundError, ValidationError
from catalog_sync.models import JobKind
from catalog_sync.repositories.runs import RunRepository
from catalog_sync.schemas import (
    JobStatusOut, RunResult, ScheduledResponse, SingleSyncRequest, SyncRunOut,
)
from catalog_sync.services.engine import SyncEngine
from catalog_sync.services.jobs import RecurringJob, single_product_job
from catalog_sync.services.scheduler import get_engine, schedule_single_sync

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_operator_key)],
)


def _job_or_404(engine: SyncEngine, name: str):
    job = engine.get_job(name)
    if job is None:
        raise NotFoundError(f"Unknown job {name}", {"job_name": name})
    return job


def _sync_kind(value: str) -> JobKind:
    try:
        kind = JobKind(value)
    except ValueError:
        kind = None
    if kind is None or not kind.is_sync:
        raise ValidationError(f"{value} is not a sync job type", {"job_type": value})
    return kind


def _checked(result: RunResult) -> RunResult:
    if result.status == "disabled":
        raise JobDisabledError(
            f"Job {result.job_name} is disabled: {result.reason}",
            {"job_name": result.job_name},
        )
    return result


@router.get("", response_model=List[JobStatusOut])
async def list_jobs(
    engine: SyncEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    states = {s.job_name: s for s in await RunRepository(db).list_states()}
    now = utcnow()
    out = []
    for job in engine.jobs:
        state = states.get(job.name)
        out.append(
            JobStatusOut(
                name=job.name,
                job_type=job.job_type.value,
                priority=job.priority,
                enabled=job.enabled,
                interval_seconds=job.interval_seconds if isinstance(job, RecurringJob) else None,
                batch_size=job.batch_size,
                timeout_seconds=job.timeout_seconds,
                locked=bool(
                    state and state.lock_holder
                    and state.lock_expires_at and state.lock_expires_at > now
                ),
                disabled=bool(state and state.disabled),
                disabled_reason=state.disabled_reason if state else None,
                last_run_at=state.last_run_at if state else None,
                last_status=state.last_status if state else None,
            )
        )
    return out


@router.post("/run-all", response_model=List[RunResult])
async def run_all(
    force: bool = Query(False),
    engine: SyncEngine = Depends(get_engine),
):
    return await engine.run_all(triggered_by="manual", force=force)


@router.get("/runs", response_model=List[SyncRunOut])
async def recent_runs(
    limit: int = Query(50, ge=1, le=500),
    job_name: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    rows = await RunRepository(db).recent(limit, job_name)
    return [SyncRunOut.model_validate(r) for r in rows]


@router.post("/sync/{local_id}", response_model=RunResult)
async def sync_single_now(
    local_id: int,
    payload: SingleSyncRequest,
    engine: SyncEngine = Depends(get_engine),
):
    """Sync one catalog entry immediately, bypassing staleness and settings."""
    job = single_product_job(local_id, _sync_kind(payload.job_type), utcnow())
    return _checked(await engine.run(job, triggered_by="manual", force=True))


@router.post("/sync/{local_id}/schedule", response_model=ScheduledResponse, status_code=202)
async def sync_single_later(local_id: int, payload: SingleSyncRequest):
    job = schedule_single_sync(local_id, _sync_kind(payload.job_type), payload.delay_seconds)
    return ScheduledResponse(job_name=job.name, fire_at=job.fire_at)


@router.post("/{name}/run", response_model=RunResult)
async def run_job(
    name: str,
    force: bool = Query(True),
    engine: SyncEngine = Depends(get_engine),
):
    job = _job_or_404(engine, name)
    return _checked(await engine.run(job, triggered_by="manual", force=force))


@router.post("/{name}/cancel", status_code=202)
async def cancel_job(name: str, engine: SyncEngine = Depends(get_engine)):
    _job_or_404(engine, name)
    return {"job_name": name, "cancel_requested": await engine.cancel(name)}


@router.post("/{name}/enable", status_code=204)
async def enable_job(
    name: str,
    engine: SyncEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Clear the auth breaker once credentials are fixed."""
    _job_or_404(engine, name)
    await RunRepository(db).enable(name)
