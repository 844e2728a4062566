"""Fetch, merge and cache station data, falling back when the backend fails."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable

from fuelmap.common.config_loader import AggregatorConfig
from fuelmap.common.constants import (
    INCOMPLETE_SNAPSHOT_TTL,
    SOURCE_DEGRADED,
    SOURCE_FALLBACK,
    SOURCE_PRIMARY,
    STATIONS_CACHE_KEY,
)
from fuelmap.common.errors import AuthError, CacheLoadTimeout, MalformedResponseError
from fuelmap.common.logging import get_logger, log_event
from fuelmap.common.models import (
    DirectoryResult,
    FetchDiagnostics,
    SpatialPoint,
    SpatialResult,
    StationSnapshot,
)
from fuelmap.common.time_utils import utc_now
from fuelmap.harvest.table_client import RemoteTableClient
from fuelmap.pipeline.cache import CacheStore
from fuelmap.pipeline.fallback import load_fallback_snapshot
from fuelmap.pipeline.merge import merge_stations_with_prices
from fuelmap.pipeline.normalise import RecordNormaliser

logger = get_logger("aggregator")


class SourceState(str, Enum):
    PRIMARY = "primary"
    DEGRADED = "degraded"
    FALLBACK = "fallback"


def _error_code(exc: BaseException) -> str:
    return getattr(exc, "error_code", "UNEXPECTED_ERROR")


class SourceAggregator:
    """Single entry point for station data consumers.

    Both projections resolve through one cached :class:`StationSnapshot`.
    When a fetch fails the last cached snapshot is served as
    ``degraded-cache``, expired or not; with nothing cached the bundled
    dataset is served as ``fallback``. After a failure, calls within
    ``retry_interval`` seconds skip the backend entirely.

    A table that answered only malformed pages counts as a failed fetch.
    A snapshot built from a partly skipped fetch is served but cached for
    at most ``INCOMPLETE_SNAPSHOT_TTL`` seconds.

    Only :class:`FallbackUnavailableError` is raised to callers.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        table_client: RemoteTableClient,
        *,
        cache: CacheStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        fallback_loader: Callable[[], StationSnapshot] | None = None,
    ) -> None:
        self.config = config
        self.table_client = table_client
        self.clock = clock
        self.cache = cache or CacheStore(default_ttl=config.cache_ttl, clock=clock)
        self._fallback_loader = fallback_loader or self._load_bundled_fallback
        self._lock = threading.Lock()
        self._state = SourceState.PRIMARY
        self._last_error: dict[str, Any] | None = None
        self._last_failure_at: float | None = None
        self._last_fetch_at: str | None = None
        self._last_diagnostics: FetchDiagnostics | None = None
        self._fallback: StationSnapshot | None = None

    @property
    def state(self) -> SourceState:
        with self._lock:
            return self._state

    def _new_normaliser(self) -> RecordNormaliser:
        return RecordNormaliser(
            bounds=self.config.bounds,
            price_unit=self.config.price_unit,
            field_overrides=self.config.field_overrides,
        )

    def _fetch_snapshot(self) -> StationSnapshot:
        backend = self.config.backend
        started = time.monotonic()
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="fuelmap-fetch") as pool:
            stations_future = pool.submit(self.table_client.fetch_table, backend.stations_table_id)
            prices_future = pool.submit(self.table_client.fetch_table, backend.prices_table_id)
            wait([stations_future, prices_future])
        station_fetch = stations_future.result()
        price_fetch = prices_future.result()
        for fetch in (station_fetch, price_fetch):
            if not fetch.complete and not fetch.rows:
                raise MalformedResponseError(
                    f"Table {fetch.table_id} returned no usable rows ({fetch.skipped_pages} malformed page(s))"
                )

        normaliser = self._new_normaliser()
        stations = normaliser.normalise_stations(station_fetch.rows)
        prices = normaliser.normalise_prices(price_fetch.rows)
        merged = merge_stations_with_prices(stations, prices)
        stats = normaliser.stats

        diagnostics = FetchDiagnostics(
            station_rows=stats["station_rows"],
            price_rows=stats["price_rows"],
            skipped_pages=station_fetch.skipped_pages + price_fetch.skipped_pages,
            skipped_rows=stats["skipped_rows"] + station_fetch.skipped_rows + price_fetch.skipped_rows,
            invalid_coordinates=stats["invalid_coordinates"] + stats["coordinate_outliers"],
            dropped_price_count=stats["dropped_prices"] + merged.dropped_price_count,
            matched_by_name=merged.matched_by_name,
            duplicate_stations=merged.duplicate_stations,
            complete=station_fetch.complete and price_fetch.complete,
        )
        log_event(
            logger,
            f"merged {len(prices)} prices onto {len(merged.stations)} stations",
            component="aggregator",
            event="MERGE_OK",
            status="ok" if diagnostics.complete else "partial",
            source=SOURCE_PRIMARY,
            duration_ms=int((time.monotonic() - started) * 1000),
            rows_in=diagnostics.station_rows + diagnostics.price_rows,
            rows_out=len(merged.stations),
        )
        return StationSnapshot(stations=merged.stations, fetched_at=utc_now(), diagnostics=diagnostics)

    def _load_primary(self) -> StationSnapshot:
        try:
            snapshot = self._fetch_snapshot()
        except Exception as exc:
            self._record_failure(exc)
            raise
        self._record_success(snapshot)
        return snapshot

    def _snapshot_ttl(self, snapshot: StationSnapshot) -> float:
        if snapshot.diagnostics.complete:
            return self.config.cache_ttl
        return min(self.config.cache_ttl, INCOMPLETE_SNAPSHOT_TTL)

    def _load_bundled_fallback(self) -> StationSnapshot:
        return load_fallback_snapshot(self.config.fallback_dataset_path, self._new_normaliser())

    def _fallback_snapshot(self) -> StationSnapshot:
        with self._lock:
            if self._fallback is not None:
                return self._fallback
        snapshot = self._fallback_loader()
        with self._lock:
            if self._fallback is None:
                self._fallback = snapshot
            return self._fallback

    def _transition(self, new_state: SourceState, reason: str) -> None:
        with self._lock:
            old_state = self._state
            self._state = new_state
        if old_state is not new_state:
            log_event(
                logger,
                f"source state {old_state.value} -> {new_state.value}: {reason}",
                level=logging.INFO if new_state is SourceState.PRIMARY else logging.WARNING,
                component="aggregator",
                event="STATE_CHANGE",
                status=new_state.value,
            )

    def _record_success(self, snapshot: StationSnapshot) -> None:
        with self._lock:
            self._last_error = None
            self._last_failure_at = None
            self._last_fetch_at = snapshot.fetched_at.isoformat()
            self._last_diagnostics = snapshot.diagnostics
        self._transition(SourceState.PRIMARY, "fetch succeeded")

    def _record_failure(self, exc: Exception) -> None:
        code = _error_code(exc)
        log_event(
            logger,
            f"station fetch failed: {exc}",
            level=logging.ERROR if isinstance(exc, AuthError) else logging.WARNING,
            component="aggregator",
            event="FETCH_FAILED",
            status="error",
            error_code=code,
        )
        with self._lock:
            self._last_failure_at = self.clock()
            self._last_error = {
                "error_code": code,
                "message": str(exc),
                "timestamp": utc_now().isoformat(),
            }
        has_cache = self.cache.get_entry(STATIONS_CACHE_KEY, allow_expired=True) is not None
        self._transition(SourceState.DEGRADED if has_cache else SourceState.FALLBACK, f"{code}: {exc}")

    def _holding_off(self) -> bool:
        interval = self.config.retry_interval
        with self._lock:
            failed_at = self._last_failure_at
        return interval > 0 and failed_at is not None and self.clock() - failed_at < interval

    def _serve_without_primary(self, reason: str) -> tuple[StationSnapshot, str]:
        entry = self.cache.get_entry(STATIONS_CACHE_KEY, allow_expired=True)
        if entry is not None:
            log_event(
                logger,
                f"serving last cached station data: {reason}",
                level=logging.WARNING,
                component="aggregator",
                event="SERVE_DEGRADED",
                status="degraded",
                source=SOURCE_DEGRADED,
                rows_out=len(entry.value.stations),
            )
            return entry.value, SOURCE_DEGRADED

        snapshot = self._fallback_snapshot()
        log_event(
            logger,
            f"serving bundled fallback dataset: {reason}",
            level=logging.WARNING,
            component="aggregator",
            event="SERVE_FALLBACK",
            status="fallback",
            source=SOURCE_FALLBACK,
            rows_out=len(snapshot.stations),
        )
        return snapshot, SOURCE_FALLBACK

    def _resolve(self, force_refresh: bool, timeout: float | None) -> tuple[StationSnapshot, str]:
        if not force_refresh:
            cached, hit = self.cache.get(STATIONS_CACHE_KEY)
            if hit:
                source = SOURCE_PRIMARY if self.state is SourceState.PRIMARY else SOURCE_DEGRADED
                log_event(logger, "station cache hit", component="aggregator", event="CACHE_HIT", source=source)
                return cached, source
            if self._holding_off():
                return self._serve_without_primary("backend retry interval not elapsed")

        log_event(logger, "station cache miss", component="aggregator", event="CACHE_MISS")
        try:
            snapshot = self.cache.get_or_load(
                STATIONS_CACHE_KEY,
                self._snapshot_ttl,
                self._load_primary,
                force=force_refresh,
                timeout=timeout,
            )
        except CacheLoadTimeout as exc:
            return self._serve_without_primary(str(exc))
        except Exception as exc:
            return self._serve_without_primary(f"{_error_code(exc)}: {exc}")

        return snapshot, SOURCE_PRIMARY

    def get_directory_projection(self, force_refresh: bool = False, timeout: float | None = None) -> DirectoryResult:
        snapshot, source = self._resolve(force_refresh, timeout)
        return DirectoryResult(
            stations=snapshot.stations,
            source=source,
            fetched_at=snapshot.fetched_at,
            dropped_price_count=snapshot.diagnostics.dropped_price_count,
        )

    def get_spatial_projection(self, force_refresh: bool = False, timeout: float | None = None) -> SpatialResult:
        snapshot, source = self._resolve(force_refresh, timeout)
        points = tuple(
            SpatialPoint(id=station.id, name=station.name, latitude=station.latitude, longitude=station.longitude)
            for station in snapshot.stations
            if station.location_known
        )
        return SpatialResult(points=points, source=source, fetched_at=snapshot.fetched_at)

    def test_connection(self) -> dict[str, Any]:
        """Check the stations table answers one page; cache and source state are untouched."""
        return self.table_client.check_table(self.config.backend.stations_table_id)

    def invalidate(self) -> None:
        self.cache.invalidate(STATIONS_CACHE_KEY)
        with self._lock:
            self._last_failure_at = None

    def status(self) -> dict[str, Any]:
        entry = self.cache.get_entry(STATIONS_CACHE_KEY, allow_expired=True)
        now = self.clock()
        with self._lock:
            diagnostics = self._last_diagnostics
            return {
                "state": self._state.value,
                "loading": self.cache.is_loading(STATIONS_CACHE_KEY),
                "last_fetch_at": self._last_fetch_at,
                "cache_valid": entry is not None and not entry.is_expired(now),
                "cached_stations": len(entry.value.stations) if entry is not None else 0,
                "last_error": dict(self._last_error) if self._last_error else None,
                "diagnostics": diagnostics.to_dict() if diagnostics is not None else None,
            }
