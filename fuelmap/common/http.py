"""HTTP client with retries, timeouts, and host-aware rate limiting."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Callable
from urllib.parse import urlparse

import requests
from tenacity import RetryCallState, retry, retry_if_exception, stop_after_attempt, wait_exponential

from fuelmap.common.constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RATE_LIMIT_PER_SEC,
    USER_AGENT,
)
from fuelmap.common.errors import AuthError, HttpRequestError, MalformedResponseError, TransientFetchError
from fuelmap.common.logging import get_logger, log_event

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}

logger = get_logger("http")


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 5.0
    read: float = DEFAULT_FETCH_TIMEOUT

    @classmethod
    def from_seconds(cls, seconds: float) -> "TimeoutConfig":
        return cls(connect=min(5.0, seconds), read=seconds)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_wait: float = DEFAULT_BACKOFF_MAX


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientFetchError)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


class TokenBucket:
    """Smooths request bursts to ``rate_per_sec``, allowing up to ``capacity`` at once."""

    def __init__(
        self,
        rate_per_sec: float,
        capacity: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate_per_sec = rate_per_sec
        self.capacity = max(capacity if capacity is not None else rate_per_sec, 1.0)
        self.clock = clock
        self.sleep = sleep
        self._available = self.capacity
        self._refilled_at = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        self._available = min(self.capacity, self._available + (now - self._refilled_at) * self.rate_per_sec)
        self._refilled_at = now

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            with self._lock:
                self._refill()
                shortfall = tokens - self._available
                if shortfall <= 0:
                    self._available -= tokens
                    return
            self.sleep(max(shortfall / self.rate_per_sec, 0.01))


class HostRateLimiter:
    """One token bucket per host; a non-positive rate disables limiting."""

    def __init__(self, default_rate_per_sec: float) -> None:
        self.default_rate_per_sec = default_rate_per_sec
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def acquire(self, host: str, tokens: float = 1.0) -> None:
        if self.default_rate_per_sec <= 0:
            return
        with self._lock:
            bucket = self._buckets.get(host)
            if bucket is None:
                bucket = self._buckets[host] = TokenBucket(self.default_rate_per_sec)
        bucket.acquire(tokens=tokens)


class HttpClient:
    """JSON-over-HTTP client shared by every remote fetch.

    All retrying happens in :meth:`request_json`; ``retryable`` decides which
    failures are worth another attempt, everything else is raised at once.
    """

    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        rate_limit_per_sec: float = DEFAULT_RATE_LIMIT_PER_SEC,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.retryable = retryable
        self.sleep = sleep
        self.session = requests.Session()
        self.limiter = HostRateLimiter(default_rate_per_sec=rate_limit_per_sec)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _host(self, url: str) -> str:
        return urlparse(url).netloc

    def _headers(self, headers: dict[str, str] | None) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise TransientFetchError(f"Retryable HTTP status {status} from {url}", status=status, retry_after=retry_after)
        if status in AUTH_STATUS_CODES:
            raise AuthError(f"Authentication rejected with HTTP status {status} by {url}", status=status)
        if status >= 400:
            raise HttpRequestError(f"HTTP status {status} from {url}", status=status)

    def _wait(self) -> Callable[[RetryCallState], float]:
        backoff = wait_exponential(
            multiplier=self.retry.backoff_base,
            exp_base=self.retry.backoff_factor,
            max=self.retry.max_wait,
        )

        def _wait_for(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                return min(float(retry_after), self.retry.max_wait)
            return backoff(retry_state)

        return _wait_for

    def _log_retry(self, url: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            log_event(
                logger,
                f"retrying {url}: {exc}",
                level=logging.WARNING,
                component="http",
                event="RETRY",
                status="retry",
                attempt=retry_state.attempt_number,
                error_code=getattr(exc, "error_code", None),
            )

        return _before_sleep

    def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> Any:
        req_timeout = timeout or self.timeout
        self.limiter.acquire(self._host(url))

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                headers=self._headers(headers),
                timeout=(req_timeout.connect, req_timeout.read),
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientFetchError(f"{type(exc).__name__} while requesting {url}") from exc
        except requests.RequestException as exc:
            raise HttpRequestError(f"Request to {url} failed: {exc}") from exc

        self._raise_for_status(response, url)

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Invalid JSON payload from {url}", status=response.status_code) from exc

    def request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        @retry(
            stop=stop_after_attempt(max_attempts or self.retry.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception(self.retryable),
            before_sleep=self._log_retry(url),
            sleep=self.sleep,
            reraise=True,
        )
        def _wrapped() -> Any:
            return self._request_json(
                method,
                url,
                params=params,
                headers=headers,
                timeout=timeout,
            )

        return _wrapped()

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        return self.request_json(
            "GET",
            url,
            params=params,
            headers=headers,
            timeout=timeout,
            max_attempts=max_attempts,
        )
