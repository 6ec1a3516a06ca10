from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.auth import require_operator_key
from catalog_sync.config import settings
from catalog_sync.database import get_db
from catalog_sync.exceptions import NotFoundError
from catalog_sync.repositories.mappings import MappingRepository
from catalog_sync.repositories.price_history import PriceHistoryRepository
from catalog_sync.schemas import MappingIn, MappingOut, PriceObservationOut, PriceStats

router = APIRouter(
    prefix="/api/v1/mappings",
    tags=["mappings"],
    dependencies=[Depends(require_operator_key)],
)


@router.put("", response_model=MappingOut)
async def upsert_mapping(
    payload: MappingIn,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """201 on first import, 200 when an existing pair was updated."""
    repo = MappingRepository(db)
    result = await repo.upsert(payload)
    await db.commit()
    response.status_code = 201 if result.inserted else 200
    return MappingOut.model_validate(await repo.get_by_id(result.id))


@router.get("/local/{local_id}", response_model=MappingOut)
async def get_by_local_id(local_id: int, db: AsyncSession = Depends(get_db)):
    row = await MappingRepository(db).find_by_local_id(local_id)
    if not row:
        raise NotFoundError(f"No mapping for local id {local_id}", {"local_id": local_id})
    return MappingOut.model_validate(row)


@router.get("/external/{external_id}", response_model=MappingOut)
async def get_by_external_id(
    external_id: str,
    region: Optional[str] = Query(None, max_length=10),
    db: AsyncSession = Depends(get_db),
):
    row = await MappingRepository(db).find_by_external_id(external_id, region)
    if not row:
        raise NotFoundError(f"No mapping for {external_id}", {"external_id": external_id, "region": region})
    return MappingOut.model_validate(row)


@router.get("/local/{local_id}/prices", response_model=List[PriceObservationOut])
async def price_history(
    local_id: int,
    limit: int = Query(settings.PRICE_HISTORY_LIMIT, ge=1, le=settings.PRICE_HISTORY_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    rows = await PriceHistoryRepository(db, limit=settings.PRICE_HISTORY_LIMIT).history(local_id, limit)
    return [PriceObservationOut.model_validate(r) for r in rows]


@router.get("/local/{local_id}/price-stats", response_model=PriceStats)
async def price_stats(
    local_id: int,
    window_days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    stats = await PriceHistoryRepository(db).stats(local_id, window_days)
    if stats is None:
        raise NotFoundError(
            f"No price observations for local id {local_id} in the last {window_days} days",
            {"local_id": local_id, "window_days": window_days},
        )
    return stats
