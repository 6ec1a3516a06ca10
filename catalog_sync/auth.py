from __future__ import annotations

import hmac

import structlog
from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from catalog_sync.config import settings
from catalog_sync.exceptions import AppError

log = structlog.get_logger(__name__)

OPERATOR_KEY_HEADER = "X-Operator-Key"


class OperatorAuthError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


operator_key_header = APIKeyHeader(
    name=OPERATOR_KEY_HEADER,
    auto_error=False,
    description="Shared operator secret for the mapping, job and error routes",
)


def operator_key_valid(presented: str | None, expected: str | None = None) -> bool:
    expected = settings.OPERATOR_API_KEY if expected is None else expected
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


async def require_operator_key(
    request: Request,
    presented: str | None = Security(operator_key_header),
) -> str:
    """Route dependency for every operator surface; health stays open."""
    if not operator_key_valid(presented):
        log.warning(
            "operator.rejected",
            path=request.url.path,
            method=request.method,
            key_present=bool(presented),
        )
        raise OperatorAuthError(f"Missing or invalid {OPERATOR_KEY_HEADER} header")
    return presented
