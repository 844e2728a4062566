import pytest

from fuelmap.common.models import EnrichedStation, SpatialPoint, StationRecord
from fuelmap.pipeline.nearby import stations_within_radius

CBD = (-37.8136, 144.9631)

POINTS = [
    SpatialPoint(id=1, name="Shell Melbourne CBD", latitude=-37.8136, longitude=144.9631),
    SpatialPoint(id=2, name="BP South Yarra", latitude=-37.8387, longitude=144.9924),
    SpatialPoint(id=3, name="Caltex Richmond", latitude=-37.8197, longitude=145.0058),
    SpatialPoint(id=9, name="Geelong", latitude=-38.1499, longitude=144.3617),
]


def test_stations_within_radius_sorted_by_distance():
    matches = stations_within_radius(POINTS, *CBD, radius_km=5)

    assert [point.id for point, _ in matches][0] == 1
    assert {point.id for point, _ in matches} == {1, 2, 3}
    assert matches[0][1] == 0.0
    assert all(3.0 < distance < 4.5 for _, distance in matches[1:])
    assert [distance for _, distance in matches] == sorted(distance for _, distance in matches)
    assert all(distance <= 5 for _, distance in matches)


def test_stations_within_radius_skips_unlocated_items():
    unlocated = EnrichedStation.from_station(StationRecord(id=5, name="No Pin"))
    located = EnrichedStation.from_station(StationRecord(id=6, name="Pinned", latitude=-37.81, longitude=144.96))

    matches = stations_within_radius([unlocated, located], *CBD, radius_km=2)

    assert [station.id for station, _ in matches] == [6]


def test_stations_within_radius_empty_and_invalid_input():
    assert stations_within_radius([], *CBD, radius_km=10) == []
    with pytest.raises(ValueError):
        stations_within_radius(POINTS, 120.0, 144.9, radius_km=10)
    with pytest.raises(ValueError):
        stations_within_radius(POINTS, *CBD, radius_km=-1)
