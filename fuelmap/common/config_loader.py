"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from fuelmap.common.constants import (
    BUNDLED_FALLBACK_PATH,
    CONFIG_FILENAME,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_CACHE_TTL,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RATE_LIMIT_PER_SEC,
    DEFAULT_RETRY_INTERVAL,
)
from fuelmap.common.errors import ConfigError
from fuelmap.common.geometry import Bounds
from fuelmap.common.schema import validate_aggregator_config
from fuelmap.common.time_utils import parse_duration


@dataclass(frozen=True)
class BackendConfig:
    api_url: str
    stations_table_id: int | str
    prices_table_id: int | str
    token: str | None = None
    auth_scheme: str = "Bearer"
    public_token: str | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    rate_limit_per_sec: float = DEFAULT_RATE_LIMIT_PER_SEC


@dataclass(frozen=True)
class AggregatorConfig:
    backend: BackendConfig
    cache_ttl: float = DEFAULT_CACHE_TTL
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    backoff_max: float = DEFAULT_BACKOFF_MAX
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    fallback_dataset_path: Path = BUNDLED_FALLBACK_PATH
    bounds: Bounds | None = None
    price_unit: str = "cents"
    field_overrides: dict[str, list[str]] = field(default_factory=dict)


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _read_yaml(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    base = _read_yaml(path) or {}
    if overlay_path is None or not overlay_path.exists():
        return base
    overlay = _read_yaml(overlay_path)
    if not overlay:
        return base
    return _deep_merge(base, overlay)


def _positive_int(value: object, ctx: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{ctx} must be an integer") from exc
    if number < 1:
        raise ConfigError(f"{ctx} must be at least 1")
    return number


def _resolve_dataset_path(value: str | None, config_dir: Path) -> Path:
    if not value:
        return BUNDLED_FALLBACK_PATH
    path = Path(value)
    if not path.is_absolute():
        path = config_dir / path
    return path


def build_config(cfg: dict, *, config_dir: Path, environ: Mapping[str, str] | None = None) -> AggregatorConfig:
    env = os.environ if environ is None else environ
    backend = cfg["backend"]
    cache = cfg.get("cache") or {}
    fetch = cfg.get("fetch") or {}
    fallback = cfg.get("fallback") or {}
    validation = cfg.get("validation") or {}

    token_env = backend.get("token_env")
    token = env.get(token_env) if token_env else None

    backend_config = BackendConfig(
        api_url=str(backend["api_url"]).rstrip("/"),
        stations_table_id=backend["stations_table_id"],
        prices_table_id=backend["prices_table_id"],
        token=token or None,
        auth_scheme=str(backend.get("auth_scheme") or "Bearer"),
        public_token=backend.get("public_token") or None,
        page_size=_positive_int(backend.get("page_size", DEFAULT_PAGE_SIZE), "backend.page_size"),
        max_pages=_positive_int(backend.get("max_pages", DEFAULT_MAX_PAGES), "backend.max_pages"),
        rate_limit_per_sec=float(backend.get("rate_limit_per_sec", DEFAULT_RATE_LIMIT_PER_SEC)),
    )

    bounds_cfg = validation.get("bounds")
    bounds = None
    if bounds_cfg is not None:
        bounds = Bounds(
            min_lat=float(bounds_cfg["min_lat"]),
            max_lat=float(bounds_cfg["max_lat"]),
            min_lon=float(bounds_cfg["min_lon"]),
            max_lon=float(bounds_cfg["max_lon"]),
        )

    return AggregatorConfig(
        backend=backend_config,
        cache_ttl=parse_duration(cache.get("ttl", DEFAULT_CACHE_TTL), field="cache.ttl"),
        fetch_timeout=parse_duration(fetch.get("timeout", DEFAULT_FETCH_TIMEOUT), field="fetch.timeout"),
        max_retries=_positive_int(fetch.get("max_retries", DEFAULT_MAX_RETRIES), "fetch.max_retries"),
        backoff_base=parse_duration(fetch.get("backoff_base", DEFAULT_BACKOFF_BASE), field="fetch.backoff_base"),
        backoff_factor=float(fetch.get("backoff_factor", DEFAULT_BACKOFF_FACTOR)),
        backoff_max=parse_duration(fetch.get("backoff_max", DEFAULT_BACKOFF_MAX), field="fetch.backoff_max"),
        retry_interval=parse_duration(
            fetch.get("retry_interval", DEFAULT_RETRY_INTERVAL),
            field="fetch.retry_interval",
        ),
        fallback_dataset_path=_resolve_dataset_path(fallback.get("dataset_path"), config_dir),
        bounds=bounds,
        price_unit=validation.get("price_unit", "cents"),
        field_overrides={key: list(value) for key, value in (cfg.get("fields") or {}).items()},
    )


def load_config(
    config_dir: Path,
    *,
    allow_unknown: bool = False,
    overlay_config_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AggregatorConfig:
    overlay_path = None
    if overlay_config_dir is not None:
        overlay_path = overlay_config_dir / CONFIG_FILENAME
    raw = _load_yaml_with_overlay(config_dir / CONFIG_FILENAME, overlay_path)
    validated = validate_aggregator_config(raw, allow_unknown=allow_unknown)
    return build_config(validated, config_dir=config_dir, environ=environ)
