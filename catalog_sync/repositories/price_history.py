from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.database import utcnow
from catalog_sync.exceptions import StorageError, ValidationError
from catalog_sync.models import PriceObservation
from catalog_sync.schemas import PriceChange, PriceStats

CENTS = Decimal("0.01")
# largest value NUMERIC(10, 2) holds
MAX_PRICE = Decimal("99999999.99")


def _money(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("price must be a decimal number", {"price": str(value)})
    if not amount.is_finite() or amount < 0:
        raise ValidationError("price must be a non-negative number", {"price": str(value)})
    if amount > MAX_PRICE:
        raise ValidationError(f"price must not exceed {MAX_PRICE}", {"price": str(value)})
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_change(previous: Optional[Decimal], current: Decimal):
    """(change, percent). Both None without a previous price; percent None when it was 0."""
    if previous is None:
        return None, None
    change = (current - previous).quantize(CENTS, rounding=ROUND_HALF_UP)
    if previous == 0:
        return change, None
    percent = (change / previous * 100).quantize(CENTS, rounding=ROUND_HALF_UP)
    return change, percent


class PriceHistoryRepository:
    """Bounded per-entry price ledger. Writes flush only; the caller commits."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        limit: int = 30,
    ):
        self.db = db
        self._clock = clock
        self.limit = limit

    async def latest(self, local_id: int) -> Optional[PriceObservation]:
        rows = await self.db.execute(
            select(PriceObservation)
            .where(PriceObservation.local_id == local_id)
            .order_by(PriceObservation.recorded_at.desc(), PriceObservation.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return rows.scalars().first()

    async def append(
        self,
        local_id: int,
        price,
        currency: str = "USD",
        external_id: Optional[str] = None,
    ) -> PriceChange:
        amount = _money(price)
        currency = (currency or "USD").upper()[:3]

        try:
            previous = await self.latest(local_id)
            prev_price = Decimal(str(previous.price)) if previous is not None else None
            change, percent = compute_change(prev_price, amount)

            self.db.add(
                PriceObservation(
                    local_id=local_id,
                    external_id=external_id,
                    price=amount,
                    currency=currency,
                    price_change=change,
                    price_change_percent=percent,
                    recorded_at=self._clock(),
                )
            )
            await self.db.flush()
            await self._trim(local_id)
        except SQLAlchemyError as exc:
            raise StorageError(
                "Could not append price observation",
                {"local_id": local_id, "error": str(exc)},
            ) from exc

        return PriceChange(
            price=amount,
            currency=currency,
            previous_price=prev_price,
            price_change=change,
            price_change_percent=percent,
        )

    async def _trim(self, local_id: int) -> None:
        rows = await self.db.execute(
            select(PriceObservation.id)
            .where(PriceObservation.local_id == local_id)
            .order_by(PriceObservation.recorded_at.desc(), PriceObservation.id.desc())
            .offset(self.limit)
        )
        evicted = [r[0] for r in rows.all()]
        if evicted:
            await self.db.execute(
                delete(PriceObservation)
                .where(PriceObservation.id.in_(evicted))
                .execution_options(synchronize_session=False)
            )

    async def delete_for_local_ids(self, local_ids) -> int:
        ids = list(local_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            delete(PriceObservation)
            .where(PriceObservation.local_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def history(self, local_id: int, limit: Optional[int] = None) -> List[PriceObservation]:
        """Oldest first."""
        rows = await self.db.execute(
            select(PriceObservation)
            .where(PriceObservation.local_id == local_id)
            .order_by(PriceObservation.recorded_at.desc(), PriceObservation.id.desc())
            .limit(limit or self.limit)
            .execution_options(populate_existing=True)
        )
        return list(reversed(rows.scalars().all()))

    async def stats(self, local_id: int, window_days: int = 30) -> Optional[PriceStats]:
        since = self._clock() - timedelta(days=window_days)
        rows = await self.db.execute(
            select(PriceObservation.price)
            .where(
                PriceObservation.local_id == local_id,
                PriceObservation.recorded_at >= since,
            )
            .order_by(PriceObservation.recorded_at, PriceObservation.id)
        )
        prices = [Decimal(str(r[0])) for r in rows.all()]
        if not prices:
            return None

        avg = (sum(prices) / len(prices)).quantize(CENTS, rounding=ROUND_HALF_UP)
        return PriceStats(
            min=min(prices),
            max=max(prices),
            avg=avg,
            first=prices[0],
            last=prices[-1],
            count=len(prices),
        )
