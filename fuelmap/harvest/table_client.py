"""Paginated row reader for the remote station tables."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any
from urllib.parse import urljoin

from fuelmap.common.config_loader import BackendConfig
from fuelmap.common.constants import CONNECTION_CHECK_TIMEOUT
from fuelmap.common.errors import FetchError, MalformedResponseError
from fuelmap.common.http import HttpClient, RetryConfig, TimeoutConfig
from fuelmap.common.logging import get_logger, log_event

logger = get_logger("table_client")


@dataclass(frozen=True)
class TableFetch:
    table_id: int | str
    rows: list[dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    skipped_pages: int = 0
    skipped_rows: int = 0

    @property
    def complete(self) -> bool:
        return self.skipped_pages == 0


class RemoteTableClient:
    """Reads every row of a backend table by following ``next`` page links."""

    def __init__(
        self,
        backend: BackendConfig,
        http_client: HttpClient | None = None,
        *,
        timeout: TimeoutConfig | None = None,
    ) -> None:
        self.backend = backend
        self.timeout = timeout
        self._owns_client = http_client is None
        self.http_client = http_client or HttpClient(rate_limit_per_sec=backend.rate_limit_per_sec)

    @classmethod
    def from_settings(
        cls,
        backend: BackendConfig,
        *,
        fetch_timeout: float,
        retry: RetryConfig,
    ) -> "RemoteTableClient":
        timeout = TimeoutConfig.from_seconds(fetch_timeout)
        client = HttpClient(timeout=timeout, retry=retry, rate_limit_per_sec=backend.rate_limit_per_sec)
        table_client = cls(backend, client, timeout=timeout)
        table_client._owns_client = True
        return table_client

    def close(self) -> None:
        if self._owns_client:
            self.http_client.close()

    def __enter__(self) -> "RemoteTableClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _table_url(self, table_id: int | str) -> str:
        return f"{self.backend.api_url}/database/rows/table/{table_id}/"

    def _headers(self) -> dict[str, str]:
        if self.backend.public_token or not self.backend.token:
            return {}
        return {"Authorization": f"{self.backend.auth_scheme} {self.backend.token}"}

    def _first_page_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"user_field_names": "true", "size": self.backend.page_size}
        if self.backend.public_token:
            params["public_token"] = self.backend.public_token
        return params

    def _next_page_params(self, next_url: str) -> dict[str, Any] | None:
        # Backends drop the public token from their own next links.
        if self.backend.public_token and "public_token=" not in next_url:
            return {"public_token": self.backend.public_token}
        return None

    def fetch_table(self, table_id: int | str) -> TableFetch:
        started = time.monotonic()
        url: str | None = self._table_url(table_id)
        params: dict[str, Any] | None = self._first_page_params()
        headers = self._headers()

        rows: list[dict[str, Any]] = []
        seen_urls: set[str] = set()
        pages = 0
        skipped_pages = 0
        skipped_rows = 0

        log_event(logger, f"fetching table {table_id}", component="table_client", event="FETCH_START", table_id=table_id)

        while url is not None:
            page_key = f"{url}?{sorted((params or {}).items())}"
            if page_key in seen_urls:
                raise MalformedResponseError(f"Pagination loop detected for table {table_id} at {url}")
            seen_urls.add(page_key)
            if pages >= self.backend.max_pages:
                raise MalformedResponseError(
                    f"Table {table_id} exceeded {self.backend.max_pages} pages without reaching the end"
                )

            payload = self.http_client.get_json(url, params=params, headers=headers, timeout=self.timeout)
            pages += 1

            if isinstance(payload, list):
                # Unpaginated endpoints answer with a bare row list.
                results: object = payload
                next_url = None
            elif isinstance(payload, dict):
                results = payload.get("results")
                next_url = payload.get("next")
            else:
                raise MalformedResponseError(f"Unexpected page payload type {type(payload).__name__} for table {table_id}")

            if next_url is not None and not isinstance(next_url, str):
                raise MalformedResponseError(f"Unexpected next link {next_url!r} for table {table_id}")

            if isinstance(results, list):
                for item in results:
                    if isinstance(item, dict):
                        rows.append(item)
                    else:
                        skipped_rows += 1
            else:
                skipped_pages += 1
                log_event(
                    logger,
                    f"skipping page {pages} of table {table_id}: results is not a list",
                    level=logging.WARNING,
                    component="table_client",
                    event="PAGE_SKIPPED",
                    status="partial",
                    table_id=table_id,
                    error_code=MalformedResponseError.error_code,
                )

            if next_url:
                url = urljoin(url, next_url)
                params = self._next_page_params(url)
            else:
                url = None

        fetch = TableFetch(
            table_id=table_id,
            rows=rows,
            pages=pages,
            skipped_pages=skipped_pages,
            skipped_rows=skipped_rows,
        )
        log_event(
            logger,
            f"fetched {len(rows)} rows from table {table_id}",
            component="table_client",
            event="FETCH_OK",
            status="ok" if fetch.complete else "partial",
            table_id=table_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            rows_out=len(rows),
        )
        return fetch

    def fetch_all_rows(self, table_id: int | str) -> list[dict[str, Any]]:
        """Every row of ``table_id``; raises when any page had to be skipped."""
        fetch = self.fetch_table(table_id)
        if not fetch.complete:
            raise MalformedResponseError(
                f"Table {table_id} skipped {fetch.skipped_pages} malformed page(s); rows are incomplete"
            )
        return fetch.rows

    def check_table(self, table_id: int | str, *, timeout_seconds: float = CONNECTION_CHECK_TIMEOUT) -> dict[str, Any]:
        """Request one single-row page of ``table_id`` without retrying."""
        started = time.monotonic()
        params = self._first_page_params()
        params["size"] = 1
        try:
            self.http_client.get_json(
                self._table_url(table_id),
                params=params,
                headers=self._headers(),
                timeout=TimeoutConfig.from_seconds(timeout_seconds),
                max_attempts=1,
            )
        except FetchError as exc:
            log_event(
                logger,
                f"connection check failed for table {table_id}: {exc}",
                level=logging.WARNING,
                component="table_client",
                event="CONNECTION_CHECK",
                status="error",
                table_id=table_id,
                error_code=exc.error_code,
            )
            return {
                "connected": False,
                "error": str(exc),
                "error_code": exc.error_code,
                "table_id": table_id,
            }

        duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            logger,
            f"connection check ok for table {table_id}",
            component="table_client",
            event="CONNECTION_CHECK",
            status="ok",
            table_id=table_id,
            duration_ms=duration_ms,
        )
        return {"connected": True, "status": "ok", "table_id": table_id, "duration_ms": duration_ms}
