from datetime import datetime

from catalog_sync.models import SYNC_KINDS, JobKind
from catalog_sync.services.jobs import (
    DEFAULT_JOBS, ENDPOINTS, backoff_delay, by_priority, job_by_name, job_for_kind,
    single_product_job,
)


def test_backoff_grows_and_caps():
    delays = [backoff_delay(n, base=300, multiplier=2, cap=3600) for n in (1, 2, 3, 4, 5)]
    assert delays == [300, 600, 1200, 2400, 3600]
    assert backoff_delay(0, base=300, multiplier=2, cap=3600) == 300


def test_default_jobs_have_unique_names():
    names = [j.name for j in DEFAULT_JOBS]
    assert len(names) == len(set(names))


def test_priority_order():
    ordered = [j.name for j in by_priority(DEFAULT_JOBS)]
    assert ordered[:2] == ["sync_prices", "sync_stock"]
    assert ordered[-1] == "orphan_cleanup"


def test_every_sync_kind_has_an_endpoint_and_a_job():
    assert set(ENDPOINTS) == set(SYNC_KINDS)
    for kind in SYNC_KINDS:
        assert job_for_kind(kind) is not None


def test_lookup_unknown_job():
    assert job_by_name("nope") is None


def test_single_product_job_borrows_limits():
    fire_at = datetime(2026, 3, 1, 12, 5)
    job = single_product_job(42, JobKind.STOCK, fire_at)

    assert job.name == "sync_single:stock:42"
    assert job.batch_size == 1
    assert job.local_ids == (42,)
    assert job.fire_at == fire_at
    assert job.priority == job_by_name("sync_stock").priority
