"""In-memory TTL cache with single-flight loading."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from fuelmap.common.constants import DEFAULT_CACHE_TTL
from fuelmap.common.errors import CacheLoadTimeout
from fuelmap.common.models import CacheEntry


class _InFlight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


class CacheStore:
    """Thread-safe key/value cache.

    Expired entries read as a miss through :meth:`get` but stay in the store
    until replaced or invalidated, so callers can still reach them with
    ``get_entry(key, allow_expired=True)``.
    """

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._inflight: dict[str, _InFlight] = {}

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self.clock()):
                return None, False
            return entry.value, True

    def get_entry(self, key: str, *, allow_expired: bool = False) -> CacheEntry[Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not allow_expired and entry.is_expired(self.clock()):
                return None
            return entry

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def _store(self, key: str, value: Any, ttl: float | None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self.clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def is_loading(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    def get_or_load(
        self,
        key: str,
        ttl: float | Callable[[Any], float] | None,
        loader: Callable[[], Any],
        *,
        force: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Return the fresh value for ``key``, loading it at most once at a time.

        The first caller for a missing or expired key starts ``loader`` on a
        worker thread; every caller, the first included, then waits for the
        same outcome, value or exception. ``force`` skips the freshness check
        but still joins a running load. ``timeout`` bounds how long any caller
        blocks before :class:`CacheLoadTimeout`; the load itself keeps going
        and stores its value when it finishes. ``ttl`` may be a callable that
        picks the lifetime from the loaded value.
        """
        with self._lock:
            entry = self._entries.get(key)
            if not force and entry is not None and not entry.is_expired(self.clock()):
                return entry.value
            flight = self._inflight.get(key)
            if flight is None:
                flight = _InFlight()
                self._inflight[key] = flight
                threading.Thread(
                    target=self._run_load,
                    args=(key, ttl, loader, flight),
                    name=f"fuelmap-cache-load-{key}",
                    daemon=True,
                ).start()

        if not flight.done.wait(timeout):
            raise CacheLoadTimeout(f"Timed out after {timeout}s waiting for {key!r} to load")
        if flight.error is not None:
            raise flight.error
        return flight.value

    def _run_load(
        self,
        key: str,
        ttl: float | Callable[[Any], float] | None,
        loader: Callable[[], Any],
        flight: _InFlight,
    ) -> None:
        try:
            value = loader()
            lifetime = ttl(value) if callable(ttl) else ttl
        except BaseException as exc:
            flight.error = exc
            with self._lock:
                self._inflight.pop(key, None)
            flight.done.set()
            return

        flight.value = value
        with self._lock:
            self._store(key, value, lifetime)
            self._inflight.pop(key, None)
        flight.done.set()
