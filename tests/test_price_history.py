import pytest
from datetime import timedelta
from decimal import Decimal

from catalog_sync.exceptions import ValidationError
from catalog_sync.models import PriceObservation
from catalog_sync.repositories.price_history import CENTS, MAX_PRICE, PriceHistoryRepository, compute_change


def test_compute_change_without_previous():
    assert compute_change(None, Decimal("10.00")) == (None, None)


def test_compute_change_from_zero_has_no_percent():
    assert compute_change(Decimal("0.00"), Decimal("5.00")) == (Decimal("5.00"), None)


def test_percent_column_holds_the_widest_move():
    _, percent = compute_change(CENTS, MAX_PRICE)
    column = PriceObservation.__table__.c.price_change_percent.type
    assert len(percent.as_tuple().digits) <= column.precision
    assert -percent.as_tuple().exponent == column.scale


@pytest.mark.asyncio
async def test_large_move_is_recorded(db, clock):
    repo = PriceHistoryRepository(db, clock)
    await repo.append(1, "0.01", "USD")
    clock.advance(hours=1)
    change = await repo.append(1, "1000.00", "USD")

    assert change.price_change_percent == Decimal("9999900.00")
    rows = await repo.history(1)
    assert rows[-1].price_change_percent == Decimal("9999900.00")


@pytest.mark.asyncio
async def test_price_above_column_range_is_rejected(db, clock):
    with pytest.raises(ValidationError):
        await PriceHistoryRepository(db, clock).append(1, "100000000.00", "USD")


@pytest.mark.asyncio
async def test_first_observation_has_no_change(db, clock):
    change = await PriceHistoryRepository(db, clock).append(1, "10.00", "USD")
    assert change.price == Decimal("10.00")
    assert change.price_change is None
    assert change.price_change_percent is None
    assert not change.has_previous


@pytest.mark.asyncio
async def test_delta_against_previous(db, clock):
    repo = PriceHistoryRepository(db, clock)
    await repo.append(1, "10.00", "USD")
    clock.advance(hours=1)
    change = await repo.append(1, "12.00", "USD")

    assert change.previous_price == Decimal("10.00")
    assert change.price_change == Decimal("2.00")
    assert change.price_change_percent == Decimal("20.00")


@pytest.mark.asyncio
async def test_percent_is_rounded_to_cents(db, clock):
    repo = PriceHistoryRepository(db, clock)
    await repo.append(7, Decimal("29.99"), "USD", external_id="B08N5WRWNW")
    clock.advance(hours=6)
    change = await repo.append(7, Decimal("24.99"), "USD", external_id="B08N5WRWNW")

    assert change.price_change == Decimal("-5.00")
    assert change.price_change_percent == Decimal("-16.67")


@pytest.mark.asyncio
async def test_history_is_bounded_and_ordered(db, clock):
    repo = PriceHistoryRepository(db, clock, limit=30)
    for i in range(1, 36):
        await repo.append(1, Decimal(i), "USD")
        clock.advance(minutes=1)

    rows = await repo.history(1)
    assert len(rows) == 30
    assert [int(r.price) for r in rows] == list(range(6, 36))


@pytest.mark.asyncio
async def test_trim_is_per_entry(db, clock):
    repo = PriceHistoryRepository(db, clock, limit=3)
    for i in range(5):
        await repo.append(1, i + 1, "USD")
        await repo.append(2, i + 1, "USD")
    await repo.append(3, 1, "USD")

    assert len(await repo.history(1)) == 3
    assert len(await repo.history(2)) == 3
    assert len(await repo.history(3)) == 1


@pytest.mark.asyncio
async def test_stats_over_trailing_window(db, clock):
    repo = PriceHistoryRepository(db, clock)
    await repo.append(1, "50.00", "USD")
    clock.advance(days=30)
    await repo.append(1, "10.00", "USD")
    clock.advance(days=9)
    await repo.append(1, "14.00", "USD")
    clock.advance(days=1)
    await repo.append(1, "12.00", "USD")

    stats = await repo.stats(1, window_days=30)
    assert stats.count == 3
    assert stats.min == Decimal("10.00")
    assert stats.max == Decimal("14.00")
    assert stats.avg == Decimal("12.00")
    assert stats.first == Decimal("10.00")
    assert stats.last == Decimal("12.00")


@pytest.mark.asyncio
async def test_stats_empty_window(db, clock):
    repo = PriceHistoryRepository(db, clock)
    assert await repo.stats(1, 30) is None

    await repo.append(1, "10.00", "USD")
    clock.advance(days=31)
    assert await repo.stats(1, 30) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", ["-1.00", "abc", "NaN"])
async def test_invalid_price_rejected(db, clock, bad):
    with pytest.raises(ValidationError):
        await PriceHistoryRepository(db, clock).append(1, bad, "USD")
