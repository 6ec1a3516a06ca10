from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from catalog_sync.config import settings
from catalog_sync.models import JobKind
from catalog_sync.services.conditions import All, Any, Condition, Leaf

HOUR = 3600
DAY = 24 * HOUR


@dataclass(frozen=True)
class Endpoint:
    """Which upstream call a sync kind makes and how long its response stays fresh."""
    name: str
    resources: Tuple[str, ...]
    ttl_setting: str

    @property
    def ttl(self) -> int:
        return getattr(settings, self.ttl_setting)


ENDPOINTS: Dict[JobKind, Endpoint] = {
    JobKind.PRICE:      Endpoint("items", ("offers.price",), "CACHE_TTL_ITEM_DETAILS"),
    JobKind.STOCK:      Endpoint("items", ("offers.availability",), "CACHE_TTL_ITEM_DETAILS"),
    JobKind.INFO:       Endpoint("items", ("item_info.title", "item_info.features"), "CACHE_TTL_ITEM_DETAILS"),
    JobKind.IMAGES:     Endpoint("items", ("images.primary", "images.variants"), "CACHE_TTL_ITEM_DETAILS"),
    JobKind.VARIATIONS: Endpoint("variations", ("variation_summary", "offers.price"), "CACHE_TTL_VARIATIONS"),
    JobKind.CATEGORIES: Endpoint("browse_nodes", ("browse_node_info",), "CACHE_TTL_BROWSE_NODES"),
}


@dataclass(frozen=True)
class JobDescriptor:
    name: str
    job_type: JobKind
    priority: int                       # lower runs first
    batch_size: int = 50
    timeout_seconds: int = 300
    enabled: bool = True
    dependencies: Tuple[str, ...] = ()
    conditions: Optional[Condition] = None
    staleness: timedelta = timedelta(hours=6)
    max_retries: int = field(default_factory=lambda: settings.MAX_RETRIES)
    retention_days: int = field(default_factory=lambda: settings.LOG_RETENTION_DAYS)


@dataclass(frozen=True)
class RecurringJob(JobDescriptor):
    interval_seconds: int = 6 * HOUR


@dataclass(frozen=True)
class OneShotJob(JobDescriptor):
    fire_at: Optional[datetime] = None
    local_ids: Tuple[int, ...] = ()


def backoff_delay(
    error_count: int,
    base: Optional[float] = None,
    multiplier: Optional[float] = None,
    cap: Optional[float] = None,
) -> float:
    """Seconds to wait after the n-th consecutive failure before retrying."""
    base = settings.RETRY_DELAY if base is None else base
    multiplier = settings.BACKOFF_MULTIPLIER if multiplier is None else multiplier
    cap = settings.MAX_RETRY_DELAY if cap is None else cap
    attempt = max(error_count, 1) - 1
    return min(base * (multiplier ** attempt), cap)


def single_product_job(
    local_id: int,
    kind: JobKind,
    fire_at: datetime,
    template: Optional[JobDescriptor] = None,
) -> OneShotJob:
    """One-off sync of a single catalog entry, borrowing limits from the recurring job."""
    base = template or job_for_kind(kind)
    return OneShotJob(
        name=f"sync_single:{kind.value}:{local_id}",
        job_type=kind,
        priority=base.priority if base else 0,
        batch_size=1,
        timeout_seconds=base.timeout_seconds if base else 300,
        fire_at=fire_at,
        local_ids=(local_id,),
    )


_AUTO_SYNC = ("auto_sync_enabled",)

DEFAULT_JOBS: List[RecurringJob] = [
    RecurringJob(
        name="sync_prices", job_type=JobKind.PRICE, priority=10,
        batch_size=50, timeout_seconds=300, interval_seconds=6 * HOUR,
        staleness=timedelta(hours=6),
        dependencies=_AUTO_SYNC, conditions=Leaf("sync_price", "1"),
    ),
    RecurringJob(
        name="sync_stock", job_type=JobKind.STOCK, priority=15,
        batch_size=50, timeout_seconds=300, interval_seconds=6 * HOUR,
        staleness=timedelta(hours=6),
        dependencies=_AUTO_SYNC, conditions=Leaf("sync_stock", "1"),
    ),
    RecurringJob(
        name="update_info", job_type=JobKind.INFO, priority=20,
        batch_size=25, timeout_seconds=600, interval_seconds=12 * HOUR,
        staleness=timedelta(hours=12),
        dependencies=_AUTO_SYNC,
        conditions=Any(Leaf("sync_title", "1"), Leaf("sync_description", "1")),
    ),
    RecurringJob(
        name="sync_images", job_type=JobKind.IMAGES, priority=25,
        batch_size=20, timeout_seconds=900, interval_seconds=DAY,
        staleness=timedelta(days=1),
        dependencies=_AUTO_SYNC, conditions=Leaf("sync_images", "1"),
    ),
    RecurringJob(
        name="sync_variations", job_type=JobKind.VARIATIONS, priority=30,
        batch_size=15, timeout_seconds=600, interval_seconds=12 * HOUR,
        staleness=timedelta(hours=12),
        dependencies=_AUTO_SYNC,
    ),
    RecurringJob(
        name="update_categories", job_type=JobKind.CATEGORIES, priority=35,
        batch_size=30, timeout_seconds=300, interval_seconds=7 * DAY,
        staleness=timedelta(days=7),
        dependencies=("auto_categories",),
        conditions=All(Leaf("product_category_cron", "1")),
    ),
    RecurringJob(
        name="retry_failed", job_type=JobKind.RETRY_FAILED, priority=40,
        batch_size=10, timeout_seconds=300, interval_seconds=2 * HOUR,
        max_retries=3,
    ),
    RecurringJob(
        name="cache_cleanup", job_type=JobKind.CACHE_CLEANUP, priority=50,
        batch_size=1, timeout_seconds=120, interval_seconds=DAY,
    ),
    RecurringJob(
        name="log_cleanup", job_type=JobKind.LOG_CLEANUP, priority=55,
        batch_size=1, timeout_seconds=60, interval_seconds=7 * DAY,
        retention_days=30,
    ),
    RecurringJob(
        name="orphan_cleanup", job_type=JobKind.ORPHAN_CLEANUP, priority=65,
        batch_size=50, timeout_seconds=300, interval_seconds=7 * DAY,
    ),
]


def job_by_name(name: str, jobs: Optional[List[JobDescriptor]] = None) -> Optional[JobDescriptor]:
    for job in jobs if jobs is not None else DEFAULT_JOBS:
        if job.name == name:
            return job
    return None


def job_for_kind(kind: JobKind, jobs: Optional[List[JobDescriptor]] = None) -> Optional[JobDescriptor]:
    for job in jobs if jobs is not None else DEFAULT_JOBS:
        if job.job_type is kind:
            return job
    return None


def by_priority(jobs: List[JobDescriptor]) -> List[JobDescriptor]:
    return sorted(jobs, key=lambda j: (j.priority, j.name))
