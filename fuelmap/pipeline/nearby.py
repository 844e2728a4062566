"""Radius search over anything with ``latitude``/``longitude`` attributes."""

from __future__ import annotations

from typing import Iterable, TypeVar

from pyproj import Geod

from fuelmap.common.deterministic import id_sort_key
from fuelmap.common.geometry import valid_lat_lon

T = TypeVar("T")

WGS84 = Geod(ellps="WGS84")


def stations_within_radius(
    items: Iterable[T],
    latitude: float,
    longitude: float,
    radius_km: float,
) -> list[tuple[T, float]]:
    """Return ``(item, distance_km)`` pairs within ``radius_km``, nearest first.

    Distances are geodesic on the WGS84 ellipsoid. Items without a usable
    location are skipped.
    """
    if not valid_lat_lon(latitude, longitude):
        raise ValueError(f"Invalid search centre: {latitude}, {longitude}")
    if radius_km < 0:
        raise ValueError(f"Radius must not be negative: {radius_km}")

    located = [
        item
        for item in items
        if valid_lat_lon(getattr(item, "latitude", None), getattr(item, "longitude", None))
    ]
    if not located:
        return []

    count = len(located)
    _, _, distances_m = WGS84.inv(
        [longitude] * count,
        [latitude] * count,
        [item.longitude for item in located],
        [item.latitude for item in located],
    )

    matches = [
        (item, round(float(metres) / 1000.0, 3))
        for item, metres in zip(located, distances_m)
        if float(metres) / 1000.0 <= radius_km
    ]
    matches.sort(key=lambda pair: (pair[1], id_sort_key(getattr(pair[0], "id", ""))))
    return matches
