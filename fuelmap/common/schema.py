"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from fuelmap.common.errors import ConfigError

SECTION_KEYS = {
    "backend": {
        "api_url",
        "stations_table_id",
        "prices_table_id",
        "token_env",
        "auth_scheme",
        "public_token",
        "page_size",
        "max_pages",
        "rate_limit_per_sec",
    },
    "cache": {"ttl"},
    "fetch": {"timeout", "max_retries", "backoff_base", "backoff_factor", "backoff_max", "retry_interval"},
    "fallback": {"dataset_path"},
    "validation": {"bounds", "price_unit"},
    "fields": None,
}
REQUIRED_BACKEND_KEYS = {"api_url", "stations_table_id", "prices_table_id"}
BOUNDS_KEYS = {"min_lat", "max_lat", "min_lon", "max_lon"}
PRICE_UNITS = {"cents", "dollars"}


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_mapping(value: object, ctx: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    return value


def validate_aggregator_config(cfg: dict | None, *, allow_unknown: bool = False) -> dict:
    cfg = _assert_mapping(cfg, "fuelmap config")
    _assert_required_keys(cfg, {"backend"}, "fuelmap config")
    _assert_no_unknown_keys(cfg, set(SECTION_KEYS), "fuelmap config", allow_unknown)

    for section, known in SECTION_KEYS.items():
        body = _assert_mapping(cfg.get(section), section)
        if section in cfg:
            cfg[section] = body
        if known is not None:
            _assert_no_unknown_keys(body, known, section, allow_unknown)

    _assert_required_keys(cfg["backend"], REQUIRED_BACKEND_KEYS, "backend")

    validation = _assert_mapping(cfg.get("validation"), "validation")
    bounds = validation.get("bounds")
    if bounds is not None:
        bounds = _assert_mapping(bounds, "validation.bounds")
        _assert_required_keys(bounds, BOUNDS_KEYS, "validation.bounds")
        if not all(isinstance(bounds[key], (int, float)) and not isinstance(bounds[key], bool) for key in BOUNDS_KEYS):
            raise ConfigError("validation.bounds values must be numbers")
        if bounds["min_lat"] > bounds["max_lat"] or bounds["min_lon"] > bounds["max_lon"]:
            raise ConfigError("validation.bounds minimum exceeds maximum")

    price_unit = validation.get("price_unit", "cents")
    if price_unit not in PRICE_UNITS:
        raise ConfigError(f"validation.price_unit must be one of: {', '.join(sorted(PRICE_UNITS))}")

    for logical, candidates in _assert_mapping(cfg.get("fields"), "fields").items():
        if not isinstance(candidates, list) or not all(isinstance(c, str) for c in candidates):
            raise ConfigError(f"fields.{logical} must be a list of field names")

    return cfg
