"""Normalise raw backend rows into station and price records.

Source tables are inconsistent about column naming (human readable Baserow
names, snake_case exports, camelCase API payloads, raw ``field_<id>``
columns), so every logical field has an ordered list of candidate column
names. Candidates are matched case-insensitively with whitespace collapsed;
the first candidate with a non-blank value wins.

Values that fail to parse become ``None``. Missing coordinates and prices are
never replaced by zero.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Any, Iterable, Mapping

from fuelmap.common.errors import ValidationError
from fuelmap.common.geometry import Bounds, check_coordinates
from fuelmap.common.models import FuelType, PriceRecord, StationRecord
from fuelmap.common.time_utils import parse_timestamp

DEFAULT_STATION_FIELDS: dict[str, tuple[str, ...]] = {
    "id": ("id", "station_id", "Station ID", "site_id", "siteid"),
    "name": ("Station Name", "station_name", "name", "title", "field_5072130", "field5072130"),
    "brand": ("Brand", "station_owner", "operator", "owner"),
    "address": ("Address", "station_address", "street_address", "street", "field_5072131", "field5072131"),
    "suburb": ("Suburb", "City", "station_suburb", "locality", "town", "field_5072132", "field5072132"),
    "region": ("Region", "State", "station_state", "field_5072134", "field5072134"),
    "postcode": (
        "Postcode",
        "Postal Code",
        "station_postcode",
        "postal_code",
        "postalCode",
        "zip",
        "field_5072133",
        "field5072133",
    ),
    "latitude": ("Latitude", "lat", "Y", "field_5072136", "field5072136"),
    "longitude": ("Longitude", "lng", "lon", "long", "X", "field_5072137", "field5072137"),
    "amenities": ("Amenities", "Features", "facilities", "services"),
}

DEFAULT_PRICE_FIELDS: dict[str, tuple[str, ...]] = {
    "record_id": ("id", "price_id"),
    "station_id": ("Station ID", "station_id", "StationId", "Station", "site_id", "siteid", "station_code"),
    "station_name": ("Station Name", "station_name", "Station", "site_name"),
    "fuel_type": ("Fuel Type", "fuel_type", "FuelType", "fuel", "Type", "product"),
    "price": ("Price", "price_cents", "Price (cents)", "price_per_litre", "pricePerLiter", "amount"),
    "observed_at": (
        "Last Updated",
        "last_updated",
        "observed_at",
        "price_last_updated",
        "updated_at",
        "timestamp",
        "Date",
    ),
}

AMENITY_FLAG_FIELDS: dict[str, tuple[str, ...]] = {
    "car_wash": ("Car Wash", "hasCarWash"),
    "shop": ("Shop", "Convenience Store", "hasShop"),
    "atm": ("ATM", "hasATM"),
    "toilets": ("Toilets", "Restroom", "hasRestroom"),
    "air": ("Air", "Air Pump", "hasAirPump"),
    "ev_charging": ("EV Charging", "hasElectricCharging"),
    "cafe": ("Cafe", "hasCafe"),
    "parking": ("Parking", "hasParking"),
    "open_24_hours": ("Open 24 Hours", "isOpen24Hours", "24 Hours"),
}

AMENITY_TAG_ALIASES = {
    "carwash": "car_wash",
    "restroom": "toilets",
    "restrooms": "toilets",
    "toilet": "toilets",
    "air_pump": "air",
    "ev": "ev_charging",
    "electric_charging": "ev_charging",
    "convenience_store": "shop",
    "24_hours": "open_24_hours",
    "24_7": "open_24_hours",
    "open_24_7": "open_24_hours",
}

FUEL_TYPE_ALIASES: dict[str, FuelType] = {
    "unleaded": FuelType.UNLEADED,
    "unleaded91": FuelType.UNLEADED,
    "ulp": FuelType.UNLEADED,
    "u91": FuelType.UNLEADED,
    "regular": FuelType.UNLEADED,
    "premium": FuelType.PREMIUM,
    "premiumunleaded": FuelType.PREMIUM,
    "premium95": FuelType.PREMIUM,
    "premiumunleaded95": FuelType.PREMIUM,
    "unleaded95": FuelType.PREMIUM,
    "pulp": FuelType.PREMIUM,
    "p95": FuelType.PREMIUM,
    "u95": FuelType.PREMIUM,
    "premium98": FuelType.PREMIUM98,
    "premiumunleaded98": FuelType.PREMIUM98,
    "unleaded98": FuelType.PREMIUM98,
    "p98": FuelType.PREMIUM98,
    "u98": FuelType.PREMIUM98,
    "diesel": FuelType.DIESEL,
    "dl": FuelType.DIESEL,
    "b7": FuelType.DIESEL,
    "premiumdiesel": FuelType.PREMIUM_DIESEL,
    "pdl": FuelType.PREMIUM_DIESEL,
    "sdv": FuelType.PREMIUM_DIESEL,
    "lpg": FuelType.LPG,
    "gas": FuelType.LPG,
    "autogas": FuelType.LPG,
    "e10": FuelType.E10,
    "unleadede10": FuelType.E10,
    "e85": FuelType.E85,
}

_TRUTHY = {"1", "true", "yes", "y", "t"}
_NUMERIC_NOISE_RE = re.compile(r"[\s$¢]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def fold_key(key: str) -> str:
    return " ".join(str(key).split()).lower()


def _is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


def _fold_row(row: Mapping[str, Any]) -> dict[str, Any]:
    folded: dict[str, Any] = {}
    for key, value in row.items():
        folded.setdefault(fold_key(key), value)
    return folded


def lookup_first(folded_row: Mapping[str, Any], candidates: Iterable[str]) -> Any:
    for key in candidates:
        value = folded_row.get(key)
        if not _is_blank(value):
            return value
    return None


def unwrap(value: Any, *, prefer: str = "value") -> Any:
    """Collapse Baserow link-row and select values to a scalar.

    ``[{"id": 1, "value": "Shell"}]`` and ``{"id": 1, "value": "Shell"}``
    become ``"Shell"`` (or ``1`` with ``prefer="id"``).
    """
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    if isinstance(value, dict):
        if prefer in value:
            return value[prefer]
        return value.get("value", value.get("id"))
    return value


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = _NUMERIC_NOISE_RE.sub("", value)
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def coerce_text(value: Any) -> str | None:
    value = unwrap(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = " ".join(str(value).split())
    return text or None


def coerce_identifier(value: Any) -> int | str | None:
    value = unwrap(value, prefer="id")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else str(value)
    text = str(value).strip()
    return text or None


def parse_fuel_type(value: Any) -> FuelType:
    label = coerce_text(value)
    if label is None:
        raise ValidationError("missing fuel type")
    fuel_type = FUEL_TYPE_ALIASES.get(_NON_ALNUM_RE.sub("", label.lower()))
    if fuel_type is None:
        raise ValidationError(f"unknown fuel type {label!r}")
    return fuel_type


def parse_price_cents(value: Any, *, price_unit: str = "cents") -> float:
    if _is_blank(value):
        raise ValidationError("missing price")
    price = coerce_float(unwrap(value))
    if price is None:
        raise ValidationError(f"unparseable price {value!r}")
    if price <= 0:
        raise ValidationError(f"non-positive price {price}")
    if price_unit == "dollars":
        price = round(price * 100, 4)
    return price


def _slug(label: str) -> str:
    return _NON_ALNUM_RE.sub("_", label.lower()).strip("_")


def _is_truthy(value: Any) -> bool:
    value = unwrap(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


def _merge_candidates(
    defaults: Mapping[str, tuple[str, ...]],
    overrides: Mapping[str, Iterable[str]] | None,
) -> dict[str, tuple[str, ...]]:
    merged: dict[str, tuple[str, ...]] = {}
    for logical, names in defaults.items():
        extra = tuple((overrides or {}).get(logical, ()))
        ordered = dict.fromkeys(fold_key(name) for name in (*extra, *names))
        merged[logical] = tuple(ordered)
    return merged


class RecordNormaliser:
    """Turn raw rows into :class:`StationRecord` and :class:`PriceRecord` lists.

    ``stats`` accumulates counters across calls (rows seen, rows skipped,
    coordinates rejected, prices dropped by reason). Call :meth:`reset_stats`
    between fetch cycles.
    """

    def __init__(
        self,
        *,
        bounds: Bounds | None = None,
        price_unit: str = "cents",
        field_overrides: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.bounds = bounds
        self.price_unit = price_unit
        self.station_fields = _merge_candidates(DEFAULT_STATION_FIELDS, field_overrides)
        self.price_fields = _merge_candidates(DEFAULT_PRICE_FIELDS, field_overrides)
        self.amenity_flags = {tag: tuple(fold_key(n) for n in names) for tag, names in AMENITY_FLAG_FIELDS.items()}
        self.stats: Counter[str] = Counter()

    def reset_stats(self) -> None:
        self.stats = Counter()

    def _amenities(self, folded: Mapping[str, Any]) -> frozenset[str]:
        tags: set[str] = set()
        listed = lookup_first(folded, self.station_fields["amenities"])
        if isinstance(listed, str):
            items: Iterable[Any] = listed.split(",")
        elif isinstance(listed, (list, tuple)):
            items = listed
        else:
            items = ()
        for item in items:
            label = coerce_text(item)
            if label:
                slug = _slug(label)
                if slug:
                    tags.add(AMENITY_TAG_ALIASES.get(slug, slug))

        for tag, candidates in self.amenity_flags.items():
            flag = lookup_first(folded, candidates)
            if flag is not None and _is_truthy(flag):
                tags.add(tag)
        return frozenset(tags)

    def normalise_station(self, row: Mapping[str, Any]) -> StationRecord:
        folded = _fold_row(row)
        fields = self.station_fields

        station_id = coerce_identifier(lookup_first(folded, fields["id"]))
        if station_id is None:
            raise ValidationError("station row has no id")

        raw_lat = coerce_float(unwrap(lookup_first(folded, fields["latitude"])))
        raw_lon = coerce_float(unwrap(lookup_first(folded, fields["longitude"])))
        lat, lon, note = check_coordinates(raw_lat, raw_lon, self.bounds)

        return StationRecord(
            id=station_id,
            name=coerce_text(lookup_first(folded, fields["name"])),
            brand=coerce_text(lookup_first(folded, fields["brand"])),
            address=coerce_text(lookup_first(folded, fields["address"])),
            suburb=coerce_text(lookup_first(folded, fields["suburb"])),
            region=coerce_text(lookup_first(folded, fields["region"])),
            postcode=coerce_text(lookup_first(folded, fields["postcode"])),
            latitude=lat,
            longitude=lon,
            amenities=self._amenities(folded),
            location_note=note,
        )

    def normalise_stations(self, rows: Iterable[Any]) -> list[StationRecord]:
        records: list[StationRecord] = []
        for row in rows:
            self.stats["station_rows"] += 1
            if not isinstance(row, Mapping):
                self.stats["skipped_rows"] += 1
                continue
            try:
                record = self.normalise_station(row)
            except ValidationError:
                self.stats["skipped_rows"] += 1
                continue
            if record.location_note == "COORDINATES_INVALID":
                self.stats["invalid_coordinates"] += 1
            elif record.location_note == "COORDINATE_OUTLIER":
                self.stats["coordinate_outliers"] += 1
            elif record.location_note == "COORDINATES_MISSING":
                self.stats["missing_coordinates"] += 1
            records.append(record)
        return records

    def normalise_price(self, row: Mapping[str, Any]) -> PriceRecord:
        folded = _fold_row(row)
        fields = self.price_fields

        station_ref = lookup_first(folded, fields["station_id"])
        station_id = coerce_identifier(station_ref)
        station_name = coerce_text(lookup_first(folded, fields["station_name"]))
        if station_id is None and station_name is None:
            raise ValidationError("price row references no station")

        record_id = coerce_identifier(lookup_first(folded, fields["record_id"]))
        return PriceRecord(
            station_id=station_id,
            station_name=station_name,
            fuel_type=parse_fuel_type(lookup_first(folded, fields["fuel_type"])),
            price_cents=parse_price_cents(lookup_first(folded, fields["price"]), price_unit=self.price_unit),
            observed_at=parse_timestamp(unwrap(lookup_first(folded, fields["observed_at"]))),
            record_id="" if record_id is None else str(record_id),
        )

    def normalise_prices(self, rows: Iterable[Any]) -> list[PriceRecord]:
        records: list[PriceRecord] = []
        for row in rows:
            self.stats["price_rows"] += 1
            if not isinstance(row, Mapping):
                self.stats["dropped_prices"] += 1
                continue
            try:
                records.append(self.normalise_price(row))
            except ValidationError:
                self.stats["dropped_prices"] += 1
        return records
