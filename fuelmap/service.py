"""Wire a :class:`SourceAggregator` from the YAML configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from fuelmap.common.config_loader import load_config
from fuelmap.common.constants import CONFIG_DIR_ENV
from fuelmap.common.http import RetryConfig
from fuelmap.common.logging import build_logger
from fuelmap.harvest.table_client import RemoteTableClient
from fuelmap.pipeline.aggregator import SourceAggregator

DEFAULT_CONFIG_DIR = Path("./config")


def resolve_config_dir(config_dir: Path | str | None, environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    if config_dir is not None:
        return Path(config_dir)
    if env.get(CONFIG_DIR_ENV):
        return Path(env[CONFIG_DIR_ENV])
    return DEFAULT_CONFIG_DIR


def build_aggregator(
    config_dir: Path | str | None = None,
    *,
    overlay_config_dir: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
    log_level: str | None = None,
    log_path: Path | None = None,
) -> SourceAggregator:
    """Load config and return a ready aggregator.

    ``config_dir`` defaults to ``$FUELMAP_CONFIG_DIR``, then ``./config``.
    Passing ``log_level`` also installs the JSON log handlers.
    """
    if log_level is not None:
        build_logger(level=log_level, log_path=log_path)

    config = load_config(
        resolve_config_dir(config_dir, environ),
        overlay_config_dir=Path(overlay_config_dir) if overlay_config_dir is not None else None,
        environ=environ,
    )
    retry = RetryConfig(
        max_attempts=config.max_retries,
        backoff_base=config.backoff_base,
        backoff_factor=config.backoff_factor,
        max_wait=config.backoff_max,
    )
    table_client = RemoteTableClient.from_settings(config.backend, fetch_timeout=config.fetch_timeout, retry=retry)
    return SourceAggregator(config, table_client)
