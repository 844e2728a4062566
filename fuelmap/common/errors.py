"""Domain errors and failure typing."""

from __future__ import annotations


class StationDataError(Exception):
    """Base class for station data failures."""

    error_code = "STATION_DATA_ERROR"


class ConfigError(StationDataError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class FetchError(StationDataError):
    """Raised when the remote backend could not deliver a table."""

    error_code = "FETCH_ERROR"


class HttpRequestError(FetchError):
    error_code = "HTTP_ERROR"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientFetchError(HttpRequestError):
    """Timeouts, connection failures, 408/425/429 and 5xx responses."""

    error_code = "TRANSIENT_FETCH_ERROR"

    def __init__(self, message: str, *, status: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class AuthError(HttpRequestError):
    """Raised for 401/403. Never retried."""

    error_code = "AUTH_ERROR"


class MalformedResponseError(HttpRequestError):
    """Raised when a payload cannot be decoded or paged through."""

    error_code = "MALFORMED_RESPONSE"


class ValidationError(StationDataError):
    """Raised for a single bad record value; callers drop or flag the record."""

    error_code = "VALIDATION_ERROR"


class CacheLoadTimeout(StationDataError):
    """Raised to a single-flight waiter that stopped waiting."""

    error_code = "CACHE_WAIT_TIMEOUT"


class FallbackUnavailableError(StationDataError):
    """Raised when the bundled fallback dataset cannot be read."""

    error_code = "FALLBACK_UNAVAILABLE"
