import enum

from sqlalchemy import (
    Boolean, Column, Integer, String, JSON, LargeBinary,
    DateTime, Index, Numeric, Text, UniqueConstraint,
)
from catalog_sync.database import Base


# ── Enums ─────────────────────────────────────────────────────────────────────

class ImportSource(str, enum.Enum):
    MANUAL = "manual"
    BATCH = "batch"
    SCHEDULED = "scheduled"


class SyncState(str, enum.Enum):
    NEVER_SYNCED = "never_synced"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"
    ABANDONED = "abandoned"


class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class JobKind(str, enum.Enum):
    PRICE = "price"
    STOCK = "stock"
    INFO = "info"
    IMAGES = "images"
    VARIATIONS = "variations"
    CATEGORIES = "categories"
    RETRY_FAILED = "retry_failed"
    CACHE_CLEANUP = "cache_cleanup"
    LOG_CLEANUP = "log_cleanup"
    ORPHAN_CLEANUP = "orphan_cleanup"

    @property
    def is_sync(self) -> bool:
        return self in SYNC_KINDS


SYNC_KINDS = frozenset({
    JobKind.PRICE, JobKind.STOCK, JobKind.INFO,
    JobKind.IMAGES, JobKind.VARIATIONS, JobKind.CATEGORIES,
})


# ── Tables ────────────────────────────────────────────────────────────────────

class ProductMapping(Base):
    __tablename__ = "product_mappings"

    id                      = Column(Integer, primary_key=True)
    local_id                = Column(Integer, nullable=False)
    external_id             = Column(String(10), nullable=False)
    parent_external_id      = Column(String(10), nullable=True)
    region                  = Column(String(10), nullable=False, default="US")
    affiliate_tag           = Column(String(50), nullable=True)
    import_source           = Column(String(20), nullable=False, default=ImportSource.MANUAL.value)
    sync_enabled            = Column(Boolean, nullable=False, default=True)
    price_sync_enabled      = Column(Boolean, nullable=False, default=True)
    sync_state              = Column(String(20), nullable=False, default=SyncState.NEVER_SYNCED.value)
    last_sync_at            = Column(DateTime, nullable=True)   # stock
    last_price_sync_at      = Column(DateTime, nullable=True)
    last_update_at          = Column(DateTime, nullable=True)   # titles / descriptions
    last_image_sync_at      = Column(DateTime, nullable=True)
    last_variation_sync_at  = Column(DateTime, nullable=True)
    last_category_sync_at   = Column(DateTime, nullable=True)
    consecutive_error_count = Column(Integer, nullable=False, default=0)
    last_failed_job         = Column(String(20), nullable=True)
    last_error_at           = Column(DateTime, nullable=True)
    created_at              = Column(DateTime, nullable=False)
    updated_at              = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("local_id", "external_id", name="uq_mapping_local_external"),
        Index("ix_mapping_external", "external_id"),
        Index("ix_mapping_parent", "parent_external_id"),
        Index("ix_mapping_region_sync", "region", "sync_enabled"),
        Index("ix_mapping_state", "sync_state"),
    )


class CacheEntry(Base):
    __tablename__ = "api_cache"

    id              = Column(Integer, primary_key=True)
    cache_key       = Column(String(255), nullable=False, unique=True)
    external_id     = Column(String(10), nullable=True)
    region          = Column(String(10), nullable=False, default="US")
    api_endpoint    = Column(String(100), nullable=False)
    request_params  = Column(JSON, nullable=True)
    response_data   = Column(LargeBinary, nullable=True)   # opaque upstream payload
    response_status = Column(Integer, nullable=False, default=200)
    expires_at      = Column(DateTime, nullable=False)
    created_at      = Column(DateTime, nullable=False)
    accessed_at     = Column(DateTime, nullable=False)
    access_count    = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_cache_external", "external_id"),
        Index("ix_cache_expires", "expires_at"),
        Index("ix_cache_endpoint", "api_endpoint"),
    )


class PriceObservation(Base):
    __tablename__ = "price_history"

    id                   = Column(Integer, primary_key=True)
    local_id             = Column(Integer, nullable=False)
    external_id          = Column(String(10), nullable=True)
    price                = Column(Numeric(10, 2), nullable=False)
    currency             = Column(String(3), nullable=False, default="USD")
    price_change         = Column(Numeric(10, 2), nullable=True)
    price_change_percent = Column(Numeric(14, 2), nullable=True)  # 0.01 -> MAX_PRICE fits
    recorded_at          = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_price_local_recorded", "local_id", "recorded_at"),
    )


class ErrorLogEntry(Base):
    __tablename__ = "error_logs"

    id          = Column(Integer, primary_key=True)
    error_type  = Column(String(50), nullable=False)
    error_code  = Column(String(50), nullable=True)
    message     = Column(Text, nullable=False)
    context     = Column(String(100), nullable=True)
    external_id = Column(String(10), nullable=True)
    local_id    = Column(Integer, nullable=True)
    severity    = Column(String(20), nullable=False, default=Severity.ERROR.value)
    details     = Column(JSON, nullable=True)
    resolved    = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    created_at  = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_error_type", "error_type"),
        Index("ix_error_severity", "severity"),
        Index("ix_error_resolved", "resolved", "resolved_at"),
        Index("ix_error_local", "local_id"),
        Index("ix_error_created", "created_at"),
    )


class JobState(Base):
    """Lock and last-run bookkeeping, one row per job name."""
    __tablename__ = "job_states"

    job_name         = Column(String(100), primary_key=True)
    lock_holder      = Column(String(64), nullable=True)
    lock_acquired_at = Column(DateTime, nullable=True)
    lock_expires_at  = Column(DateTime, nullable=True)
    last_run_at      = Column(DateTime, nullable=True)
    last_status      = Column(String(20), nullable=True)
    disabled         = Column(Boolean, nullable=False, default=False)
    disabled_reason  = Column(Text, nullable=True)
    disabled_at      = Column(DateTime, nullable=True)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id           = Column(Integer, primary_key=True)
    job_name     = Column(String(100), nullable=False)
    job_type     = Column(String(20), nullable=False)
    status       = Column(String(20), nullable=False)
    processed    = Column(Integer, default=0)
    succeeded    = Column(Integer, default=0)
    failed       = Column(Integer, default=0)
    skipped      = Column(Integer, default=0)
    cache_hits   = Column(Integer, default=0)
    duration_ms  = Column(Integer, nullable=True)
    error_detail = Column(Text, nullable=True)
    triggered_by = Column(String(50), default="scheduler")   # scheduler | manual
    created_at   = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_run_job", "job_name"),
        Index("ix_run_created", "created_at"),
    )
