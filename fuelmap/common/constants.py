"""Application constants."""

from pathlib import Path

USER_AGENT = "fuelmap/0.3 (+station-directory; contact: configured-email)"

SOURCE_PRIMARY = "primary"
SOURCE_DEGRADED = "degraded-cache"
SOURCE_FALLBACK = "fallback"

STATIONS_CACHE_KEY = "stations:enriched"

DEFAULT_CACHE_TTL = 300.0
DEFAULT_FETCH_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_MAX = 4.0
DEFAULT_RETRY_INTERVAL = 30.0
DEFAULT_PAGE_SIZE = 200
DEFAULT_MAX_PAGES = 500
DEFAULT_RATE_LIMIT_PER_SEC = 5.0
CONNECTION_CHECK_TIMEOUT = 5.0
INCOMPLETE_SNAPSHOT_TTL = 60.0

BUNDLED_FALLBACK_PATH = Path(__file__).resolve().parent.parent / "data" / "fallback_stations.json"
CONFIG_FILENAME = "fuelmap.yml"
CONFIG_DIR_ENV = "FUELMAP_CONFIG_DIR"

JSON_LOG_FIELDS = (
    "timestamp",
    "component",
    "event",
    "status",
    "source",
    "table_id",
    "attempt",
    "duration_ms",
    "rows_in",
    "rows_out",
    "error_code",
    "message",
)
