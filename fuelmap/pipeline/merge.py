"""Join price observations onto stations."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from fuelmap.common.deterministic import canonical_json, id_key, id_sort_key, stable_sorted
from fuelmap.common.models import EnrichedStation, PricePoint, PriceRecord, StationRecord

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class MergeResult:
    stations: tuple[EnrichedStation, ...]
    dropped_price_count: int = 0
    matched_by_name: int = 0
    duplicate_stations: int = 0


def normalise_name(name: str | None) -> str | None:
    if not name:
        return None
    folded = " ".join(name.split()).lower()
    return folded or None


def price_order_key(price: PriceRecord) -> tuple:
    # Undated observations rank below dated ones; ties fall back to value and row id.
    observed = price.observed_at
    return (observed is not None, observed or _EARLIEST, price.price_cents, price.record_id)


def _station_rank(station: StationRecord) -> tuple[int, str]:
    return (0 if station.location_known else 1, canonical_json(station.to_dict()))


def _index_stations(stations: Iterable[StationRecord]) -> tuple[dict[str, StationRecord], int]:
    by_id: dict[str, StationRecord] = {}
    duplicates = 0
    for station in stations:
        key = id_key(station.id)
        current = by_id.get(key)
        if current is None:
            by_id[key] = station
            continue
        duplicates += 1
        if _station_rank(station) < _station_rank(current):
            by_id[key] = station
    return by_id, duplicates


def _index_names(by_id: dict[str, StationRecord]) -> dict[str, str | None]:
    """Map folded names to station keys; names shared by several stations map to ``None``."""
    by_name: dict[str, str | None] = {}
    for key, station in by_id.items():
        name = normalise_name(station.name)
        if name is None:
            continue
        by_name[name] = None if name in by_name else key
    return by_name


def merge_stations_with_prices(
    stations: Iterable[StationRecord],
    prices: Iterable[PriceRecord],
) -> MergeResult:
    """Merge prices onto stations by station id, falling back to station name.

    The newest observation per fuel type wins regardless of input order, and
    the output is sorted by station id, so permuted inputs merge to identical
    results. Prices that match no station are counted, not silently lost.
    """
    by_id, duplicates = _index_stations(stations)
    by_name = _index_names(by_id)

    observations: dict[str, dict[str, list[PriceRecord]]] = defaultdict(lambda: defaultdict(list))
    dropped = 0
    matched_by_name = 0

    for price in prices:
        key = None
        if price.station_id is not None and id_key(price.station_id) in by_id:
            key = id_key(price.station_id)
        else:
            name = normalise_name(price.station_name)
            if name is not None:
                key = by_name.get(name)
            if key is not None:
                matched_by_name += 1

        if key is None:
            dropped += 1
            continue
        observations[key][price.fuel_type.value].append(price)

    enriched: list[EnrichedStation] = []
    for key in stable_sorted(by_id, key=id_sort_key):
        latest: dict[str, float] = {}
        history: dict[str, tuple[PricePoint, ...]] = {}
        station_observations = observations.get(key, {})
        for fuel_type in sorted(station_observations):
            ordered = sorted(station_observations[fuel_type], key=price_order_key)
            latest[fuel_type] = ordered[-1].price_cents
            history[fuel_type] = tuple(PricePoint(record.observed_at, record.price_cents) for record in ordered)
        enriched.append(EnrichedStation.from_station(by_id[key], latest, history))

    return MergeResult(
        stations=tuple(enriched),
        dropped_price_count=dropped,
        matched_by_name=matched_by_name,
        duplicate_stations=duplicates,
    )
