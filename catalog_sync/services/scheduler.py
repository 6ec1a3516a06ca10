from __future__ import annotations

from datetime import timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from catalog_sync.config import settings
from catalog_sync.database import SessionLocal, utcnow
from catalog_sync.exceptions import JobDisabledError
from catalog_sync.models import JobKind
from catalog_sync.services.engine import SyncEngine
from catalog_sync.services.jobs import OneShotJob, RecurringJob, single_product_job
from catalog_sync.services.product_api import get_product_api

log = structlog.get_logger(__name__)
_scheduler: AsyncIOScheduler | None = None
_engine: SyncEngine | None = None


def get_engine() -> SyncEngine:
    global _engine
    if _engine is None:
        _engine = SyncEngine(SessionLocal, get_product_api())
    return _engine


def scheduler_running() -> bool:
    return bool(_scheduler and _scheduler.running)


async def _scheduled_run(job_name: str) -> None:
    engine = get_engine()
    job = engine.get_job(job_name)
    if job is None:
        log.warning("scheduler.unknown_job", job=job_name)
        return
    try:
        result = await engine.run(job, triggered_by="scheduler")
        log.info(
            "scheduler.run.done",
            job=job_name,
            status=result.status,
            processed=result.processed,
            failed=result.failed,
        )
    except Exception as exc:
        log.error("scheduler.run.failed", job=job_name, error=str(exc))


async def _one_shot_run(job: OneShotJob) -> None:
    try:
        result = await get_engine().run(job, triggered_by="single", force=True)
        log.info("scheduler.single.done", job=job.name, status=result.status)
    except Exception as exc:
        log.error("scheduler.single.failed", job=job.name, error=str(exc))


def _register(scheduler: AsyncIOScheduler, job: RecurringJob) -> None:
    scheduler.add_job(
        _scheduled_run,
        trigger=IntervalTrigger(seconds=job.interval_seconds),
        args=[job.name],
        id=job.name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def start_scheduler() -> None:
    global _scheduler
    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler.disabled")
        return

    _scheduler = AsyncIOScheduler(timezone=timezone.utc)
    for job in get_engine().jobs:
        if isinstance(job, RecurringJob):
            _register(_scheduler, job)
    _scheduler.start()
    log.info("scheduler.started", jobs=len(_scheduler.get_jobs()))


def schedule_single_sync(local_id: int, kind: JobKind, delay_seconds: int = 0) -> OneShotJob:
    """Fire a one-off sync of a single catalog entry after `delay_seconds`."""
    if not scheduler_running():
        raise JobDisabledError("Scheduler is not running", {"local_id": local_id})

    fire_at = utcnow() + timedelta(seconds=delay_seconds)
    job = single_product_job(local_id, kind, fire_at)
    _scheduler.add_job(
        _one_shot_run,
        trigger=DateTrigger(run_date=fire_at.replace(tzinfo=timezone.utc)),
        args=[job],
        id=job.name,
        replace_existing=True,
    )
    log.info("scheduler.single.scheduled", job=job.name, fire_at=fire_at.isoformat())
    return job


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        log.info("scheduler.stopped")
