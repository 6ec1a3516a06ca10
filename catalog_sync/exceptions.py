from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class ValidationError(AppError):
    """Malformed input such as a bad external id. Never retried."""
    status_code = 422
    error_code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class StorageError(AppError):
    status_code = 503
    error_code = "STORAGE_ERROR"


class CacheError(AppError):
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


class JobDisabledError(AppError):
    status_code = 409
    error_code = "JOB_DISABLED"


# ── External product API failures ─────────────────────────────────────────────

class TransientError(AppError):
    """Timeouts, 5xx and other failures worth retrying under backoff."""
    status_code = 502
    error_code = "UPSTREAM_TRANSIENT"
    retryable = True


class RateLimitError(TransientError):
    status_code = 429
    error_code = "UPSTREAM_RATE_LIMITED"


class PermanentError(AppError):
    status_code = 502
    error_code = "UPSTREAM_PERMANENT"
    retryable = False


class ProductNotFoundError(PermanentError):
    error_code = "UPSTREAM_NOT_FOUND"


class AuthError(PermanentError):
    error_code = "UPSTREAM_UNAUTHORIZED"


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "detail": exc.detail,
            "context": exc.context,
        },
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "detail": exc.detail,
        },
    )
