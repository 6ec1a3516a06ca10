import structlog
import logging
import contextlib

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import HTTPException

from catalog_sync.config import settings
from catalog_sync.database import init_db, close_db
from catalog_sync.exceptions import AppError, app_error_handler, http_error_handler
from catalog_sync.middleware import LoggingMiddleware
from catalog_sync.routers.admin import router as admin_router
from catalog_sync.routers.errors import router as errors_router
from catalog_sync.routers.jobs import router as jobs_router
from catalog_sync.routers.mappings import router as mappings_router
from catalog_sync.services.product_api import init_product_api, close_product_api
from catalog_sync.services.scheduler import start_scheduler, stop_scheduler
from catalog_sync.signals import init_redis_pool, close_redis_pool

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)

log = structlog.get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    await init_product_api()
    start_scheduler()
    log.info("app.ready")
    yield
    log.info("app.shutting_down")
    stop_scheduler()
    await close_product_api()
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(LoggingMiddleware)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(admin_router)
app.include_router(mappings_router)
app.include_router(jobs_router)
app.include_router(errors_router)
