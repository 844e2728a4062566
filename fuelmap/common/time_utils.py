"""UTC-focused helpers for fetch timestamps and duration settings."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

from fuelmap.common.errors import ConfigError

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_timestamp_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds")


def parse_duration(value: object, *, field: str = "duration") -> float:
    """Seconds from a number or a string such as ``"15s"``, ``"5m"`` or ``"1h"``."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {field}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ConfigError(f"Invalid {field}: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
    else:
        raise ConfigError(f"Invalid {field}: {value!r}")
    if seconds < 0:
        raise ConfigError(f"{field} must not be negative")
    return seconds


def parse_timestamp(value: object) -> datetime | None:
    """Aware UTC datetime from ISO strings, plain dates or epoch numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # Millisecond epochs are common in JS-fed tables.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
