"""Coordinate validation helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Bounds:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


def valid_lat_lon(lat: float | None, lon: float | None) -> bool:
    if lat is None or lon is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def check_coordinates(
    lat: float | None,
    lon: float | None,
    bounds: Bounds | None = None,
) -> tuple[float | None, float | None, str | None]:
    """Return ``(lat, lon, note)``; both coordinates are kept or both dropped."""
    if lat is None and lon is None:
        return None, None, "COORDINATES_MISSING"
    if not valid_lat_lon(lat, lon):
        return None, None, "COORDINATES_INVALID"
    if bounds is not None and not bounds.contains(lat, lon):
        return None, None, "COORDINATE_OUTLIER"
    return lat, lon, None
