import pytest
from unittest.mock import AsyncMock, patch
from contextlib import asynccontextmanager
from structlog.testing import capture_logs

from catalog_sync.repositories.errors import ErrorLogRepository
from catalog_sync.repositories.runs import RunRepository
from catalog_sync.schemas import ErrorLogIn

from conftest import product


@pytest.mark.asyncio
async def test_health(client):
    # Mock the DB engine.connect() used by the health endpoint
    mock_conn = AsyncMock()
    mock_conn.execute = AsyncMock()

    @asynccontextmanager
    async def mock_connect():
        yield mock_conn

    with patch("catalog_sync.routers.admin.engine") as mock_engine, \
         patch("catalog_sync.routers.admin.ping_redis", new_callable=AsyncMock, return_value=True):
        mock_engine.connect = mock_connect
        r = await client.get("/admin/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["scheduler"] == "stopped"
    assert body["version"] is not None


@pytest.mark.asyncio
async def test_health_degraded_without_redis(client):
    mock_conn = AsyncMock()

    @asynccontextmanager
    async def mock_connect():
        yield mock_conn

    with patch("catalog_sync.routers.admin.engine") as mock_engine, \
         patch("catalog_sync.routers.admin.ping_redis", new_callable=AsyncMock, return_value=False):
        mock_engine.connect = mock_connect
        r = await client.get("/admin/health")
    assert r.json()["status"] == "degraded"
    assert r.json()["redis"] == "error"


@pytest.mark.asyncio
async def test_missing_operator_key(client):
    del client.headers["X-Operator-Key"]
    r = await client.get("/api/v1/jobs")
    assert r.status_code == 401
    assert r.json()["error"] == "UNAUTHORIZED"


# ── Mappings ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upsert_mapping_created_then_updated(client):
    body = {"local_id": 7, "external_id": "B08N5WRWNW"}
    r = await client.put("/api/v1/mappings", json=body)
    assert r.status_code == 201
    assert r.json()["sync_state"] == "never_synced"

    r = await client.put("/api/v1/mappings", json={**body, "region": "DE"})
    assert r.status_code == 200
    assert r.json()["region"] == "DE"

    r = await client.get("/api/v1/mappings/external/B08N5WRWNW?region=DE")
    assert r.status_code == 200
    assert r.json()["local_id"] == 7


@pytest.mark.asyncio
async def test_upsert_rejects_bad_external_id(client):
    r = await client.put("/api/v1/mappings", json={"local_id": 7, "external_id": "nope"})
    assert r.status_code == 422
    assert r.json()["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_mapping_not_found(client):
    r = await client.get("/api/v1/mappings/local/99999")
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_price_history_routes(client, seed, api):
    await seed((7, "B08N5WRWNW"))
    api.outcomes["B08N5WRWNW"] = [product("B08N5WRWNW", "29.99")]

    r = await client.get("/api/v1/mappings/local/7/price-stats")
    assert r.status_code == 404

    r = await client.post("/api/v1/jobs/sync/7", json={"job_type": "price"})
    assert r.status_code == 200

    r = await client.get("/api/v1/mappings/local/7/prices")
    assert [p["price"] for p in r.json()] == ["29.99"]


# ── Jobs ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_jobs(client):
    r = await client.get("/api/v1/jobs")
    assert r.status_code == 200
    names = [j["name"] for j in r.json()]
    assert "sync_prices" in names and "orphan_cleanup" in names


@pytest.mark.asyncio
async def test_run_job_and_history(client):
    r = await client.post("/api/v1/jobs/sync_prices/run")
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = await client.get("/api/v1/jobs/runs?job_name=sync_prices")
    assert r.status_code == 200
    runs = r.json()
    assert len(runs) == 1
    assert runs[0]["triggered_by"] == "manual"


@pytest.mark.asyncio
async def test_unknown_job(client):
    r = await client.post("/api/v1/jobs/nope/run")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_disabled_job_conflicts(client, session_factory):
    async with session_factory() as s:
        await RunRepository(s).disable("sync_prices", "bad key")

    r = await client.post("/api/v1/jobs/sync_prices/run")
    assert r.status_code == 409
    assert r.json()["error"] == "JOB_DISABLED"

    r = await client.post("/api/v1/jobs/sync_prices/enable")
    assert r.status_code == 204
    r = await client.post("/api/v1/jobs/sync_prices/run")
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_cancel_job(client, cancel_flags):
    r = await client.post("/api/v1/jobs/sync_stock/cancel")
    assert r.status_code == 202
    assert r.json() == {"job_name": "sync_stock", "cancel_requested": True}
    assert "sync_stock" in cancel_flags.flags


@pytest.mark.asyncio
async def test_single_sync_now(client, seed, api):
    await seed((3, "B000000003"))
    api.outcomes["B000000003"] = [product("B000000003", availability="Now")]

    r = await client.post("/api/v1/jobs/sync/3", json={"job_type": "stock"})
    assert r.status_code == 200
    assert r.json()["job_name"] == "sync_single:stock:3"
    assert r.json()["succeeded"] == 1


@pytest.mark.asyncio
async def test_single_sync_rejects_maintenance_type(client):
    r = await client.post("/api/v1/jobs/sync/3", json={"job_type": "cache_cleanup"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_schedule_requires_running_scheduler(client):
    r = await client.post("/api/v1/jobs/sync/3/schedule", json={"job_type": "price", "delay_seconds": 60})
    assert r.status_code == 409


# ── Errors ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_error_log_query_and_resolve(client, session_factory):
    async with session_factory() as s:
        repo = ErrorLogRepository(s)
        entry_id = await repo.record(ErrorLogIn(error_type="sync_error", message="boom", local_id=3))
        await repo.record(ErrorLogIn(error_type="rate_limited", message="slow", severity="warning"))

    r = await client.get("/api/v1/errors?error_type=sync_error")
    assert r.status_code == 200
    assert r.json()["total"] == 1

    r = await client.post(f"/api/v1/errors/{entry_id}/resolve", json={"resolver": "ops"})
    assert r.status_code == 200
    assert r.json()["resolved"] is True

    r = await client.get("/api/v1/errors?resolved=false")
    assert [e["error_type"] for e in r.json()["items"]] == ["rate_limited"]

    r = await client.get("/api/v1/errors/recent?limit=5")
    assert len(r.json()) == 2


@pytest.mark.asyncio
async def test_resolve_unknown_error(client):
    r = await client.post("/api/v1/errors/99999/resolve", json={"resolver": "ops"})
    assert r.status_code == 404


# ── Admin ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_metrics(client, seed):
    await seed((1, "B000000001"), (2, "B000000002"))
    r = await client.get("/admin/metrics")
    assert r.status_code == 200
    data = r.json()
    assert data["mappings_by_state"] == {"never_synced": 2}
    assert data["unresolved_errors"] == 0


@pytest.mark.asyncio
async def test_cache_bust(client):
    r = await client.delete("/admin/cache")
    assert r.status_code == 204


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    r = await client.get("/api/v1/jobs", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"
    assert "X-Response-Time-Ms" in r.headers


@pytest.mark.asyncio
async def test_wrong_operator_key_is_rejected(client):
    with capture_logs() as logs:
        r = await client.get("/api/v1/jobs", headers={"X-Operator-Key": "not-the-key"})
    assert r.status_code == 401
    rejected = [e for e in logs if e["event"] == "operator.rejected"]
    assert rejected[0]["path"] == "/api/v1/jobs"
    assert rejected[0]["key_present"] is True
