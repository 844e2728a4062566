from __future__ import annotations

import logging
import threading
from pathlib import Path

import pytest

from fuelmap.common.config_loader import AggregatorConfig, BackendConfig
from fuelmap.common.constants import BUNDLED_FALLBACK_PATH
from fuelmap.common.errors import AuthError, FallbackUnavailableError, TransientFetchError
from fuelmap.common.geometry import Bounds
from fuelmap.harvest.table_client import TableFetch
from fuelmap.pipeline.aggregator import SourceAggregator, SourceState

pytestmark = pytest.mark.integration

STATIONS_TABLE = 11
PRICES_TABLE = 12

STATION_ROWS = [
    {"id": 1, "Station Name": "Shell Melbourne CBD", "Latitude": "-37.8136", "Longitude": "144.9631"},
    {"id": 2, "Station Name": "Broken Pin", "Latitude": "invalid", "Longitude": "144.9"},
]
PRICE_ROWS = [
    {"id": 10, "StationId": 1, "FuelType": "unleaded", "Price": 189.9},
    {"id": 11, "StationId": 1, "FuelType": "diesel", "Price": -5},
]


class FakeClock:
    def __init__(self, now: float = 5000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTableClient:
    def __init__(self, tables: dict | None = None):
        self.tables = tables or {STATIONS_TABLE: STATION_ROWS, PRICES_TABLE: PRICE_ROWS}
        self.fetches: dict = {}
        self.check_result = {"connected": True, "status": "ok", "table_id": STATIONS_TABLE}
        self.error: Exception | None = None
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.calls: list = []
        self._lock = threading.Lock()

    def fetch_table(self, table_id):
        with self._lock:
            self.calls.append(table_id)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        if table_id in self.fetches:
            return self.fetches[table_id]
        return TableFetch(table_id=table_id, rows=list(self.tables[table_id]), pages=1)

    def check_table(self, table_id):
        self.calls.append(("check", table_id))
        return dict(self.check_result, table_id=table_id)


def _config(**overrides) -> AggregatorConfig:
    values = {
        "backend": BackendConfig(
            api_url="https://rows.example.test/api",
            stations_table_id=STATIONS_TABLE,
            prices_table_id=PRICES_TABLE,
            rate_limit_per_sec=0,
        ),
        "cache_ttl": 300.0,
        "retry_interval": 0.0,
        "bounds": Bounds(min_lat=-45.0, max_lat=-10.0, min_lon=110.0, max_lon=155.0),
        "fallback_dataset_path": BUNDLED_FALLBACK_PATH,
    }
    values.update(overrides)
    return AggregatorConfig(**values)


def _aggregator(client: FakeTableClient | None = None, **overrides) -> tuple[SourceAggregator, FakeTableClient, FakeClock]:
    client = client or FakeTableClient()
    clock = FakeClock()
    return SourceAggregator(_config(**overrides), client, clock=clock), client, clock


def test_primary_fetch_serves_both_projections_from_one_snapshot():
    aggregator, client, _clock = _aggregator()

    directory = aggregator.get_directory_projection()
    spatial = aggregator.get_spatial_projection()

    assert directory.source == "primary"
    assert spatial.source == "primary"
    assert directory.fetched_at == spatial.fetched_at
    assert sorted(client.calls) == [STATIONS_TABLE, PRICES_TABLE]
    assert aggregator.state is SourceState.PRIMARY

    by_id = {station.id: station for station in directory.stations}
    assert by_id[1].latitude == -37.8136 and by_id[1].longitude == 144.9631
    assert by_id[1].prices == {"unleaded": 189.9}
    assert by_id[1].has_prices is True
    assert by_id[2].location_known is False
    assert [point.id for point in spatial.points] == [1]
    assert directory.dropped_price_count == 1


def test_cache_hit_does_not_refetch_until_ttl_expires():
    aggregator, client, clock = _aggregator()

    aggregator.get_directory_projection()
    aggregator.get_spatial_projection()
    assert len(client.calls) == 2

    clock.advance(301)
    aggregator.get_directory_projection()
    assert len(client.calls) == 4


def test_force_refresh_refetches_fresh_cache():
    aggregator, client, _clock = _aggregator()
    aggregator.get_directory_projection()
    aggregator.get_directory_projection(force_refresh=True)
    assert len(client.calls) == 4


def test_failure_with_expired_cache_serves_degraded_cache():
    aggregator, client, clock = _aggregator()
    first = aggregator.get_directory_projection()

    clock.advance(600)
    client.error = TransientFetchError("backend timed out")
    degraded = aggregator.get_directory_projection()

    assert aggregator.state is SourceState.DEGRADED
    assert degraded.source == "degraded-cache"
    assert degraded.stations == first.stations
    assert aggregator.get_spatial_projection().source == "degraded-cache"
    assert aggregator.status()["last_error"]["error_code"] == "TRANSIENT_FETCH_ERROR"


def test_failure_with_empty_cache_serves_bundled_fallback():
    client = FakeTableClient()
    client.error = TransientFetchError("backend unreachable")
    aggregator, _client, _clock = _aggregator(client)

    directory = aggregator.get_directory_projection()

    assert aggregator.state is SourceState.FALLBACK
    assert directory.source == "fallback"
    assert {station.name for station in directory.stations} >= {"Shell Melbourne CBD", "BP South Yarra"}
    assert all(station.has_prices for station in directory.stations)


def test_recovery_returns_to_primary():
    client = FakeTableClient()
    client.error = TransientFetchError("down")
    aggregator, _client, _clock = _aggregator(client)
    assert aggregator.get_directory_projection().source == "fallback"

    client.error = None
    result = aggregator.get_directory_projection()

    assert result.source == "primary"
    assert aggregator.state is SourceState.PRIMARY
    assert aggregator.status()["last_error"] is None


def test_retry_interval_holds_off_the_backend_after_failure():
    client = FakeTableClient()
    client.error = TransientFetchError("down")
    aggregator, _client, clock = _aggregator(client, retry_interval=30.0)

    aggregator.get_directory_projection()
    calls_after_failure = len(client.calls)
    clock.advance(10)
    assert aggregator.get_spatial_projection().source == "fallback"
    assert len(client.calls) == calls_after_failure

    client.error = None
    clock.advance(25)
    assert aggregator.get_directory_projection().source == "primary"
    assert len(client.calls) > calls_after_failure


def test_auth_error_degrades_and_logs_error(caplog):
    aggregator, client, clock = _aggregator()
    aggregator.get_directory_projection()
    clock.advance(301)
    client.error = AuthError("Authentication rejected", status=401)

    with caplog.at_level(logging.INFO, logger="fuelmap"):
        result = aggregator.get_directory_projection()

    assert result.source == "degraded-cache"
    assert aggregator.state is SourceState.DEGRADED
    assert aggregator.status()["last_error"]["error_code"] == "AUTH_ERROR"
    auth_records = [r for r in caplog.records if getattr(r, "error_code", None) == "AUTH_ERROR"]
    assert auth_records and auth_records[0].levelno == logging.ERROR
    events = {getattr(r, "event", None) for r in caplog.records}
    assert {"STATE_CHANGE", "SERVE_DEGRADED"} <= events


def test_missing_fallback_dataset_raises(tmp_path: Path):
    client = FakeTableClient()
    client.error = TransientFetchError("down")
    aggregator, _client, _clock = _aggregator(client, fallback_dataset_path=tmp_path / "missing.json")

    with pytest.raises(FallbackUnavailableError):
        aggregator.get_directory_projection()


def test_waiter_timeout_serves_fallback_without_changing_state():
    client = FakeTableClient()
    client.gate = threading.Event()
    aggregator, _client, _clock = _aggregator(client)

    results = []
    leader = threading.Thread(target=lambda: results.append(aggregator.get_directory_projection()))
    leader.start()
    assert client.started.wait(5)

    waited = aggregator.get_spatial_projection(timeout=0.05)
    assert waited.source == "fallback"
    assert aggregator.state is SourceState.PRIMARY

    client.gate.set()
    leader.join(5)
    assert results[0].source == "primary"
    assert aggregator.get_spatial_projection().source == "primary"


def test_status_and_invalidate():
    aggregator, client, _clock = _aggregator()
    aggregator.get_directory_projection()

    status = aggregator.status()
    assert status["state"] == "primary"
    assert status["cache_valid"] is True
    assert status["cached_stations"] == 2
    assert status["diagnostics"]["dropped_price_count"] == 1
    assert status["loading"] is False

    aggregator.invalidate()
    assert aggregator.status()["cache_valid"] is False
    aggregator.get_directory_projection()
    assert len(client.calls) == 4


def test_projection_invariants_hold_for_every_source():
    aggregator, client, clock = _aggregator()
    results = [aggregator.get_directory_projection()]
    clock.advance(301)
    client.error = TransientFetchError("down")
    results.append(aggregator.get_directory_projection())

    fallback_client = FakeTableClient()
    fallback_client.error = TransientFetchError("down")
    fallback_aggregator, _c, _k = _aggregator(fallback_client)
    results.append(fallback_aggregator.get_directory_projection())

    assert [result.source for result in results] == ["primary", "degraded-cache", "fallback"]
    for result in results:
        for station in result.stations:
            assert (station.latitude is None) == (station.longitude is None)
            assert all(price > 0 for price in station.prices.values())
            assert station.has_prices == bool(station.prices)


def test_fetch_with_only_malformed_pages_keeps_last_good_snapshot():
    aggregator, client, clock = _aggregator()
    first = aggregator.get_directory_projection()

    clock.advance(301)
    client.fetches[STATIONS_TABLE] = TableFetch(table_id=STATIONS_TABLE, rows=[], pages=1, skipped_pages=1)
    result = aggregator.get_directory_projection()

    assert result.source == "degraded-cache"
    assert result.stations == first.stations
    assert aggregator.state is SourceState.DEGRADED
    assert aggregator.status()["last_error"]["error_code"] == "MALFORMED_RESPONSE"


def test_fetch_with_only_malformed_pages_and_no_cache_serves_fallback():
    client = FakeTableClient()
    client.fetches[PRICES_TABLE] = TableFetch(table_id=PRICES_TABLE, rows=[], pages=2, skipped_pages=2)
    aggregator, _client, _clock = _aggregator(client)

    assert aggregator.get_directory_projection().source == "fallback"
    assert aggregator.state is SourceState.FALLBACK


def test_partially_skipped_fetch_is_served_with_short_cache_lifetime():
    client = FakeTableClient()
    client.fetches[STATIONS_TABLE] = TableFetch(
        table_id=STATIONS_TABLE, rows=list(STATION_ROWS), pages=2, skipped_pages=1
    )
    aggregator, _client, clock = _aggregator(client)

    result = aggregator.get_directory_projection()
    assert result.source == "primary"
    assert aggregator.status()["diagnostics"]["complete"] is False

    clock.advance(61)
    assert aggregator.status()["cache_valid"] is False
    del client.fetches[STATIONS_TABLE]
    aggregator.get_directory_projection()
    assert len(client.calls) == 4
    assert aggregator.status()["diagnostics"]["complete"] is True


def test_first_caller_timeout_serves_fallback_while_fetch_finishes():
    client = FakeTableClient()
    client.gate = threading.Event()
    aggregator, _client, _clock = _aggregator(client)

    result = aggregator.get_directory_projection(timeout=0.05)
    assert result.source == "fallback"
    assert aggregator.state is SourceState.PRIMARY

    client.gate.set()
    assert aggregator.get_directory_projection(timeout=5).source == "primary"
    assert len(client.calls) == 2


def test_connection_check_does_not_touch_cache_or_state():
    aggregator, client, _clock = _aggregator()

    assert aggregator.test_connection() == {"connected": True, "status": "ok", "table_id": STATIONS_TABLE}
    client.check_result = {"connected": False, "error": "refused", "error_code": "TRANSIENT_FETCH_ERROR"}
    assert aggregator.test_connection()["connected"] is False

    assert client.calls == [("check", STATIONS_TABLE), ("check", STATIONS_TABLE)]
    assert aggregator.state is SourceState.PRIMARY
    assert aggregator.status()["cached_stations"] == 0
    assert aggregator.status()["last_error"] is None
