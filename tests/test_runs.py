import pytest
from structlog.testing import capture_logs

from catalog_sync.repositories.runs import RunRepository
from catalog_sync.schemas import RunResult


@pytest.mark.asyncio
async def test_lock_is_exclusive(db, clock):
    repo = RunRepository(db, clock)
    assert await repo.acquire_lock("sync_prices", "worker-a", 300) is True
    assert await repo.acquire_lock("sync_prices", "worker-b", 300) is False
    # independent names do not contend
    assert await repo.acquire_lock("sync_stock", "worker-b", 300) is True


@pytest.mark.asyncio
async def test_release_requires_holder(db, clock):
    repo = RunRepository(db, clock)
    await repo.acquire_lock("sync_prices", "worker-a", 300)

    assert await repo.release_lock("sync_prices", "worker-b") is False
    assert await repo.release_lock("sync_prices", "worker-a") is True
    assert await repo.acquire_lock("sync_prices", "worker-b", 300) is True


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(db, clock):
    repo = RunRepository(db, clock)
    await repo.acquire_lock("sync_prices", "crashed", 60)

    clock.advance(seconds=30)
    assert await repo.acquire_lock("sync_prices", "worker-b", 60) is False

    clock.advance(seconds=30)
    with capture_logs() as logs:
        assert await repo.acquire_lock("sync_prices", "worker-b", 60) is True

    warning = [e for e in logs if e["event"] == "lock.force_released"]
    assert warning and warning[0]["previous_holder"] == "crashed"
    assert warning[0]["log_level"] == "warning"
    state = await repo.get_state("sync_prices")
    assert state.lock_holder == "worker-b"


@pytest.mark.asyncio
async def test_disable_and_enable(db, clock):
    repo = RunRepository(db, clock)
    await repo.disable("sync_prices", "Authentication failed")

    state = await repo.get_state("sync_prices")
    assert state.disabled is True
    assert state.disabled_reason == "Authentication failed"
    assert state.disabled_at == clock.now

    await repo.enable("sync_prices")
    state = await repo.get_state("sync_prices")
    assert state.disabled is False
    assert state.disabled_reason is None


@pytest.mark.asyncio
async def test_record_run_updates_state(db, clock):
    repo = RunRepository(db, clock)
    await repo.acquire_lock("sync_prices", "w", 300)
    await repo.record_run(
        RunResult(job_name="sync_prices", job_type="price", status="completed", processed=2, succeeded=2),
        triggered_by="manual",
    )

    state = await repo.get_state("sync_prices")
    assert state.last_status == "completed"
    assert state.last_run_at == clock.now

    runs = await repo.recent(10, "sync_prices")
    assert len(runs) == 1
    assert runs[0].triggered_by == "manual"
    assert runs[0].succeeded == 2


@pytest.mark.asyncio
async def test_recent_and_cleanup_history(db, clock):
    repo = RunRepository(db, clock)
    await repo.record_run(RunResult(job_name="sync_prices", job_type="price", status="completed"))
    clock.advance(days=10)
    await repo.record_run(RunResult(job_name="sync_stock", job_type="stock", status="failed"))

    runs = await repo.recent(10)
    assert [r.job_name for r in runs] == ["sync_stock", "sync_prices"]

    assert await repo.cleanup_history(5) == 1
    assert [r.job_name for r in await repo.recent(10)] == ["sync_stock"]
