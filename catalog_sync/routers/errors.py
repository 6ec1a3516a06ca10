from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.auth import require_operator_key
from catalog_sync.database import get_db
from catalog_sync.models import Severity
from catalog_sync.repositories.errors import ErrorLogRepository
from catalog_sync.schemas import ErrorFilters, ErrorLogOut, PaginatedErrors, ResolveRequest

router = APIRouter(
    prefix="/api/v1/errors",
    tags=["errors"],
    dependencies=[Depends(require_operator_key)],
)


@router.get("", response_model=PaginatedErrors)
async def query_errors(
    error_type: Optional[str] = Query(None),
    severity: Optional[Severity] = Query(None),
    resolved: Optional[bool] = Query(None),
    local_id: Optional[int] = Query(None),
    external_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    filters = ErrorFilters(
        error_type=error_type, severity=severity, resolved=resolved,
        local_id=local_id, external_id=external_id,
        date_from=date_from, date_to=date_to,
    )
    total, rows = await ErrorLogRepository(db).query(filters, page, page_size)
    return PaginatedErrors(
        total=total, page=page, page_size=page_size,
        items=[ErrorLogOut.model_validate(r) for r in rows],
    )


@router.get("/recent", response_model=List[ErrorLogOut])
async def recent_errors(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    rows = await ErrorLogRepository(db).recent(limit)
    return [ErrorLogOut.model_validate(r) for r in rows]


@router.post("/{entry_id}/resolve", response_model=ErrorLogOut)
async def resolve_error(
    entry_id: int,
    payload: ResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    row = await ErrorLogRepository(db).resolve(entry_id, payload.resolver)
    return ErrorLogOut.model_validate(row)
