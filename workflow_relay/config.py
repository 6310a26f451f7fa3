"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ConfigError,
    LoggingConfig,
    RelayConfig,
    ServerConfig,
    StorageConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "workflow-relay.yaml",
    "workflow-relay.yml",
    "workflow-relay.json",
]

# Environment overrides for deployments that inject the upstream location
BASE_URL_ENV = "DIFY_API_URL"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_upstream(raw: dict[str, Any]) -> UpstreamConfig:
    defaults = UpstreamConfig()
    api_key_env = raw.get("api_key_env", defaults.api_key_env)
    return UpstreamConfig(
        base_url=os.environ.get(BASE_URL_ENV) or raw.get("base_url", defaults.base_url),
        api_key=raw.get("api_key") or os.environ.get(api_key_env, ""),
        api_key_env=api_key_env,
        buffered_timeout=float(raw.get("buffered_timeout", defaults.buffered_timeout)),
        streaming_timeout=float(raw.get("streaming_timeout", defaults.streaming_timeout)),
        connect_timeout=float(raw.get("connect_timeout", defaults.connect_timeout)),
        validate_before_reuse=bool(raw.get("validate_before_reuse", defaults.validate_before_reuse)),
        default_user=raw.get("default_user", defaults.default_user),
    )


def _build_config(raw: dict[str, Any]) -> RelayConfig:
    """Build a RelayConfig from a raw dict."""
    upstream = _parse_upstream(raw.get("upstream") or {})

    storage_raw = raw.get("storage") or {}
    storage = StorageConfig(
        backend=storage_raw.get("backend", "sqlite"),
        sqlite_path=storage_raw.get("sqlite_path", StorageConfig().sqlite_path),
    )

    server_raw = raw.get("server") or {}
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 8080)),
    )

    logging_raw = raw.get("logging") or {}
    logging_config = LoggingConfig(level=str(logging_raw.get("level", "INFO")).upper())

    return RelayConfig(
        version=str(raw.get("version", "0.1")),
        engine=raw.get("engine", "dify"),
        upstream=upstream,
        storage=storage,
        server=server,
        logging=logging_config,
    )


def validate_config(config: RelayConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    up = config.upstream

    if not config.engine or "/" in config.engine:
        errors.append(f"engine must be a single path segment, got {config.engine!r}")

    if not up.base_url:
        errors.append("upstream.base_url must be set")
    elif not up.base_url.startswith(("http://", "https://")):
        errors.append(f"upstream.base_url must be an http(s) URL, got {up.base_url!r}")

    if not up.api_key:
        errors.append(
            f"No upstream API key: set upstream.api_key or the {up.api_key_env} env var"
        )

    for name in ("buffered_timeout", "streaming_timeout", "connect_timeout"):
        if getattr(up, name) <= 0:
            errors.append(f"upstream.{name} must be > 0")

    if up.streaming_timeout <= up.buffered_timeout:
        errors.append(
            f"streaming_timeout ({up.streaming_timeout}) must be > "
            f"buffered_timeout ({up.buffered_timeout})"
        )

    if config.storage.backend != "sqlite":
        errors.append(f"Unknown storage backend '{config.storage.backend}'")

    if config.logging.level not in _LOG_LEVELS:
        errors.append(f"Invalid logging.level '{config.logging.level}'")

    return errors


def configure_logging(config: RelayConfig) -> None:
    """Apply ``logging.level`` to the root logger."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> RelayConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    return _build_config(raw)
