from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from catalog_sync.models import ImportSource, Severity


# ── Mappings ──────────────────────────────────────────────────────────────────

class MappingIn(BaseModel):
    """Upsert payload. Only the fields a caller sets are written on update."""
    local_id: int = Field(gt=0)
    external_id: str
    parent_external_id: Optional[str] = None
    region: str = "US"
    affiliate_tag: Optional[str] = None
    import_source: ImportSource = ImportSource.MANUAL
    sync_enabled: bool = True
    price_sync_enabled: bool = True
    last_sync_at: Optional[datetime] = None
    last_price_sync_at: Optional[datetime] = None
    last_update_at: Optional[datetime] = None
    consecutive_error_count: Optional[int] = Field(default=None, ge=0)


class MappingOut(BaseModel):
    id: int
    local_id: int
    external_id: str
    parent_external_id: Optional[str]
    region: str
    affiliate_tag: Optional[str]
    import_source: str
    sync_enabled: bool
    price_sync_enabled: bool
    sync_state: str
    last_sync_at: Optional[datetime]
    last_price_sync_at: Optional[datetime]
    last_update_at: Optional[datetime]
    last_image_sync_at: Optional[datetime]
    last_variation_sync_at: Optional[datetime]
    last_category_sync_at: Optional[datetime]
    consecutive_error_count: int
    last_failed_job: Optional[str]
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


class UpsertResult(BaseModel):
    id: int
    inserted: bool


# ── Price history ─────────────────────────────────────────────────────────────

class PriceChange(BaseModel):
    price: Decimal
    currency: str
    previous_price: Optional[Decimal] = None
    price_change: Optional[Decimal] = None
    price_change_percent: Optional[Decimal] = None

    @property
    def has_previous(self) -> bool:
        return self.previous_price is not None


class PriceObservationOut(BaseModel):
    id: int
    local_id: int
    price: Decimal
    currency: str
    price_change: Optional[Decimal]
    price_change_percent: Optional[Decimal]
    recorded_at: datetime
    model_config = {"from_attributes": True}


class PriceStats(BaseModel):
    min: Decimal
    max: Decimal
    avg: Decimal
    first: Decimal
    last: Decimal
    count: int


# ── Error / audit log ─────────────────────────────────────────────────────────

class ErrorLogIn(BaseModel):
    error_type: str
    message: str
    error_code: Optional[str] = None
    context: Optional[str] = None
    external_id: Optional[str] = None
    local_id: Optional[int] = None
    severity: Severity = Severity.ERROR
    details: Optional[Dict[str, Any]] = None


class ErrorLogOut(BaseModel):
    id: int
    error_type: str
    error_code: Optional[str]
    message: str
    context: Optional[str]
    external_id: Optional[str]
    local_id: Optional[int]
    severity: str
    details: Optional[Dict[str, Any]]
    resolved: bool
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    created_at: datetime
    model_config = {"from_attributes": True}


class ErrorFilters(BaseModel):
    error_type: Optional[str] = None
    severity: Optional[Severity] = None
    resolved: Optional[bool] = None
    local_id: Optional[int] = None
    external_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class PaginatedErrors(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[ErrorLogOut]


class ResolveRequest(BaseModel):
    resolver: str = Field(min_length=1, max_length=100)


# ── Jobs ──────────────────────────────────────────────────────────────────────

class RunResult(BaseModel):
    job_name: str
    job_type: str
    status: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cache_hits: int = 0
    duration_ms: int = 0
    reason: Optional[str] = None


class SyncRunOut(BaseModel):
    id: int
    job_name: str
    job_type: str
    status: str
    processed: int
    succeeded: int
    failed: int
    skipped: int
    cache_hits: int
    duration_ms: Optional[int]
    error_detail: Optional[str]
    triggered_by: str
    created_at: datetime
    model_config = {"from_attributes": True}


class JobStatusOut(BaseModel):
    name: str
    job_type: str
    priority: int
    enabled: bool
    interval_seconds: Optional[int] = None
    batch_size: int
    timeout_seconds: int
    locked: bool = False
    disabled: bool = False
    disabled_reason: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None


class SingleSyncRequest(BaseModel):
    job_type: str = "price"
    delay_seconds: int = Field(default=0, ge=0, le=86400)


class ScheduledResponse(BaseModel):
    job_name: str
    fire_at: datetime


# ── Admin ─────────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str


class MetricsResponse(BaseModel):
    cache_entries: int
    cache_expired_entries: int
    cache_hits: int
    cache_misses: int
    hit_rate: float
    mappings_by_state: Dict[str, int]
    unresolved_errors: int
