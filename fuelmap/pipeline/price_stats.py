"""Summary statistics over merged station prices."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from fuelmap.common.deterministic import id_sort_key
from fuelmap.common.models import EnrichedStation, FuelType


@dataclass(frozen=True)
class PriceRange:
    min: float
    max: float


@dataclass(frozen=True)
class TrendDay:
    day: date
    price: float | None
    count: int

    def to_dict(self) -> dict:
        return {"day": self.day.isoformat(), "price": self.price, "count": self.count}


def _fuel_key(fuel_type: FuelType | str) -> str:
    return FuelType(fuel_type).value


def _current_prices(stations: Iterable[EnrichedStation], fuel_type: FuelType | str) -> list[float]:
    key = _fuel_key(fuel_type)
    return [station.prices[key] for station in stations if key in station.prices]


def average_price(stations: Iterable[EnrichedStation], fuel_type: FuelType | str) -> float | None:
    prices = _current_prices(stations, fuel_type)
    if not prices:
        return None
    return round(sum(prices) / len(prices), 1)


def price_range(stations: Iterable[EnrichedStation], fuel_type: FuelType | str) -> PriceRange | None:
    prices = _current_prices(stations, fuel_type)
    if not prices:
        return None
    return PriceRange(min=min(prices), max=max(prices))


def cheapest_stations(
    stations: Iterable[EnrichedStation],
    fuel_type: FuelType | str,
    limit: int = 5,
) -> list[EnrichedStation]:
    """Stations carrying ``fuel_type``, cheapest first; ties break on station id."""
    key = _fuel_key(fuel_type)
    priced = [station for station in stations if key in station.prices]
    priced.sort(key=lambda station: (station.prices[key], id_sort_key(station.id)))
    return priced[: max(limit, 0)]


def trend_series(
    stations: Iterable[EnrichedStation],
    fuel_type: FuelType | str,
    days: int = 7,
    today: date | None = None,
) -> list[TrendDay]:
    """Daily average of every recorded observation over the last ``days`` UTC days.

    Days without observations carry ``price=None`` rather than a guessed value.
    Undated observations are ignored.
    """
    key = _fuel_key(fuel_type)
    end = today or datetime.now(timezone.utc).date()
    window = [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    buckets: dict[date, list[float]] = {day: [] for day in window}

    for station in stations:
        for point in station.price_history.get(key, ()):
            if point.observed_at is None:
                continue
            day = point.observed_at.astimezone(timezone.utc).date()
            if day in buckets:
                buckets[day].append(point.price_cents)

    series: list[TrendDay] = []
    for day in window:
        values = buckets[day]
        price = round(sum(values) / len(values), 1) if values else None
        series.append(TrendDay(day=day, price=price, count=len(values)))
    return series
