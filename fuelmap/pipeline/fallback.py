"""Bundled static dataset served when the backend and the cache are both empty."""

from __future__ import annotations

import json
from pathlib import Path

from fuelmap.common.errors import FallbackUnavailableError
from fuelmap.common.models import FetchDiagnostics, StationSnapshot
from fuelmap.common.time_utils import utc_now
from fuelmap.pipeline.merge import merge_stations_with_prices
from fuelmap.pipeline.normalise import RecordNormaliser


def _read_dataset(path: Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as exc:
        raise FallbackUnavailableError(f"Fallback dataset not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise FallbackUnavailableError(f"Fallback dataset unreadable: {path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise FallbackUnavailableError(f"Fallback dataset must be a JSON object: {path}")
    for section in ("stations", "prices"):
        if not isinstance(payload.get(section, []), list):
            raise FallbackUnavailableError(f"Fallback dataset section {section!r} must be a list: {path}")
    return payload


def load_fallback_snapshot(path: Path, normaliser: RecordNormaliser) -> StationSnapshot:
    """Load ``{"stations": [...], "prices": [...]}`` through the live normalise and merge path."""
    payload = _read_dataset(path)
    normaliser.reset_stats()
    stations = normaliser.normalise_stations(payload.get("stations", []))
    prices = normaliser.normalise_prices(payload.get("prices", []))
    if not stations:
        raise FallbackUnavailableError(f"Fallback dataset holds no usable stations: {path}")

    merged = merge_stations_with_prices(stations, prices)
    stats = normaliser.stats
    return StationSnapshot(
        stations=merged.stations,
        fetched_at=utc_now(),
        diagnostics=FetchDiagnostics(
            station_rows=stats["station_rows"],
            price_rows=stats["price_rows"],
            skipped_rows=stats["skipped_rows"],
            invalid_coordinates=stats["invalid_coordinates"] + stats["coordinate_outliers"],
            dropped_price_count=stats["dropped_prices"] + merged.dropped_price_count,
            matched_by_name=merged.matched_by_name,
            duplicate_stations=merged.duplicate_stations,
        ),
    )
