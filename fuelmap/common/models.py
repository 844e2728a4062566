"""Data models shared by the fetch, merge and cache layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Mapping, TypeVar

T = TypeVar("T")


class FuelType(str, Enum):
    UNLEADED = "unleaded"
    PREMIUM = "premium"
    PREMIUM98 = "premium98"
    DIESEL = "diesel"
    PREMIUM_DIESEL = "premium_diesel"
    LPG = "lpg"
    E10 = "e10"
    E85 = "e85"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class StationRecord:
    id: int | str
    name: str | None
    brand: str | None = None
    address: str | None = None
    suburb: str | None = None
    region: str | None = None
    postcode: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    amenities: frozenset[str] = frozenset()
    location_note: str | None = None

    @property
    def location_known(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["amenities"] = sorted(self.amenities)
        payload["location_known"] = self.location_known
        return payload


@dataclass(frozen=True)
class PriceRecord:
    station_id: int | str | None
    station_name: str | None
    fuel_type: FuelType
    price_cents: float
    observed_at: datetime | None = None
    record_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "station_id": self.station_id,
            "station_name": self.station_name,
            "fuel_type": self.fuel_type.value,
            "price_cents": self.price_cents,
            "observed_at": _iso(self.observed_at),
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class PricePoint:
    observed_at: datetime | None
    price_cents: float

    def to_dict(self) -> dict[str, Any]:
        return {"observed_at": _iso(self.observed_at), "price_cents": self.price_cents}


@dataclass(frozen=True)
class EnrichedStation:
    """A station with its merged prices.

    ``prices`` holds the newest observation per fuel type and
    ``price_history`` every observation in ascending time order. Both are
    keyed by ``FuelType`` value and exposed as read-only mappings.
    """

    id: int | str
    name: str | None
    brand: str | None
    address: str | None
    suburb: str | None
    region: str | None
    postcode: str | None
    latitude: float | None
    longitude: float | None
    amenities: frozenset[str]
    location_note: str | None
    prices: Mapping[str, float] = field(default_factory=dict)
    price_history: Mapping[str, tuple[PricePoint, ...]] = field(default_factory=dict)
    has_prices: bool = False
    price_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))
        object.__setattr__(self, "price_history", MappingProxyType(dict(self.price_history)))

    @classmethod
    def from_station(
        cls,
        station: StationRecord,
        prices: dict[str, float] | None = None,
        price_history: dict[str, tuple[PricePoint, ...]] | None = None,
    ) -> "EnrichedStation":
        prices = dict(prices or {})
        return cls(
            id=station.id,
            name=station.name,
            brand=station.brand,
            address=station.address,
            suburb=station.suburb,
            region=station.region,
            postcode=station.postcode,
            latitude=station.latitude,
            longitude=station.longitude,
            amenities=station.amenities,
            location_note=station.location_note,
            prices=prices,
            price_history=dict(price_history or {}),
            has_prices=bool(prices),
            price_count=len(prices),
        )

    @property
    def location_known(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "brand": self.brand,
            "address": self.address,
            "suburb": self.suburb,
            "region": self.region,
            "postcode": self.postcode,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_known": self.location_known,
            "location_note": self.location_note,
            "amenities": sorted(self.amenities),
            "prices": dict(sorted(self.prices.items())),
            "price_history": {
                fuel: [point.to_dict() for point in points]
                for fuel, points in sorted(self.price_history.items())
            },
            "has_prices": self.has_prices,
            "price_count": self.price_count,
        }


@dataclass(frozen=True)
class SpatialPoint:
    id: int | str
    name: str | None
    latitude: float
    longitude: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now >= self.stored_at + self.ttl


@dataclass(frozen=True)
class FetchDiagnostics:
    station_rows: int = 0
    price_rows: int = 0
    skipped_pages: int = 0
    skipped_rows: int = 0
    invalid_coordinates: int = 0
    dropped_price_count: int = 0
    matched_by_name: int = 0
    duplicate_stations: int = 0
    complete: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StationSnapshot:
    stations: tuple[EnrichedStation, ...]
    fetched_at: datetime
    diagnostics: FetchDiagnostics = field(default_factory=FetchDiagnostics)


@dataclass(frozen=True)
class DirectoryResult:
    stations: tuple[EnrichedStation, ...]
    source: str
    fetched_at: datetime
    dropped_price_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched_at": _iso(self.fetched_at),
            "dropped_price_count": self.dropped_price_count,
            "stations": [station.to_dict() for station in self.stations],
        }


@dataclass(frozen=True)
class SpatialResult:
    points: tuple[SpatialPoint, ...]
    source: str
    fetched_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "fetched_at": _iso(self.fetched_at),
            "points": [point.to_dict() for point in self.points],
        }
