"""Configuration for the punch sync worker and agent."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    CONF_BASE_URL,
    CONF_LOG_LEVEL,
    CONF_MAX_QUEUE_BYTES,
    CONF_MAX_QUEUE_ITEMS,
    CONF_PORTAL_CACHE_PATHS,
    CONF_PROBE_INTERVAL,
    CONF_PROBE_PATH,
    CONF_QUEUE_PATHS,
    CONF_REQUEST_TIMEOUT,
    CONF_RETRY_STATUSES,
    CONF_STOP_ON_NETWORK_ERROR,
    CONF_STORE_PATH,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_QUEUE_BYTES,
    DEFAULT_MAX_QUEUE_ITEMS,
    DEFAULT_PORTAL_CACHE_PATHS,
    DEFAULT_PROBE_INTERVAL,
    DEFAULT_PROBE_PATH,
    DEFAULT_QUEUE_PATHS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_STATUSES,
    DEFAULT_STORE_PATH,
    MIN_PROBE_INTERVAL,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class SyncConfigError(ValueError):
    """Raised when configuration cannot be loaded or fails validation."""


def _path_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    paths = vol.Schema([vol.All(str, vol.Length(min=1))])(value)
    return ["/" + path.lstrip("/") for path in paths]


def _url(value: Any) -> str:
    text = str(value or "").strip().rstrip("/")
    if not text.startswith(("http://", "https://")):
        raise vol.Invalid(f"expected an http(s) URL, got {value!r}")
    return text


CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_BASE_URL): _url,
        vol.Optional(CONF_STORE_PATH, default=DEFAULT_STORE_PATH): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_MAX_QUEUE_ITEMS, default=DEFAULT_MAX_QUEUE_ITEMS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_MAX_QUEUE_BYTES, default=DEFAULT_MAX_QUEUE_BYTES): vol.All(
            vol.Coerce(int), vol.Range(min=1024)
        ),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional(CONF_PROBE_PATH, default=DEFAULT_PROBE_PATH): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_PROBE_INTERVAL, default=DEFAULT_PROBE_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=MIN_PROBE_INTERVAL)
        ),
        vol.Optional(CONF_STOP_ON_NETWORK_ERROR, default=True): vol.Boolean(),
        vol.Optional(CONF_RETRY_STATUSES, default=list(DEFAULT_RETRY_STATUSES)): [
            vol.All(vol.Coerce(int), vol.Range(min=400, max=599))
        ],
        vol.Optional(CONF_QUEUE_PATHS, default=list(DEFAULT_QUEUE_PATHS)): _path_list,
        vol.Optional(CONF_PORTAL_CACHE_PATHS, default=list(DEFAULT_PORTAL_CACHE_PATHS)): _path_list,
        vol.Optional(CONF_LOG_LEVEL, default=DEFAULT_LOG_LEVEL): vol.All(vol.Upper, vol.In(LOG_LEVELS)),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Validated settings for a worker context."""

    base_url: str
    store_path: str = DEFAULT_STORE_PATH
    max_queue_items: int = DEFAULT_MAX_QUEUE_ITEMS
    max_queue_bytes: int = DEFAULT_MAX_QUEUE_BYTES
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    probe_path: str = DEFAULT_PROBE_PATH
    probe_interval: int = DEFAULT_PROBE_INTERVAL
    stop_on_network_error: bool = True
    retry_statuses: tuple[int, ...] = DEFAULT_RETRY_STATUSES
    queue_paths: tuple[str, ...] = DEFAULT_QUEUE_PATHS
    portal_cache_paths: tuple[str, ...] = DEFAULT_PORTAL_CACHE_PATHS
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> SyncConfig:
        try:
            data = CONFIG_SCHEMA(dict(options))
        except vol.Invalid as err:
            raise SyncConfigError(f"invalid punch sync configuration: {err}") from err
        return cls(
            base_url=data[CONF_BASE_URL],
            store_path=data[CONF_STORE_PATH],
            max_queue_items=data[CONF_MAX_QUEUE_ITEMS],
            max_queue_bytes=data[CONF_MAX_QUEUE_BYTES],
            request_timeout=data[CONF_REQUEST_TIMEOUT],
            probe_path=data[CONF_PROBE_PATH],
            probe_interval=data[CONF_PROBE_INTERVAL],
            stop_on_network_error=data[CONF_STOP_ON_NETWORK_ERROR],
            retry_statuses=tuple(data[CONF_RETRY_STATUSES]),
            queue_paths=tuple(data[CONF_QUEUE_PATHS]),
            portal_cache_paths=tuple(data[CONF_PORTAL_CACHE_PATHS]),
            log_level=data[CONF_LOG_LEVEL],
        )

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def to_options(self) -> dict[str, Any]:
        return {
            CONF_BASE_URL: self.base_url,
            CONF_STORE_PATH: self.store_path,
            CONF_MAX_QUEUE_ITEMS: self.max_queue_items,
            CONF_MAX_QUEUE_BYTES: self.max_queue_bytes,
            CONF_REQUEST_TIMEOUT: self.request_timeout,
            CONF_PROBE_PATH: self.probe_path,
            CONF_PROBE_INTERVAL: self.probe_interval,
            CONF_STOP_ON_NETWORK_ERROR: self.stop_on_network_error,
            CONF_RETRY_STATUSES: list(self.retry_statuses),
            CONF_QUEUE_PATHS: list(self.queue_paths),
            CONF_PORTAL_CACHE_PATHS: list(self.portal_cache_paths),
            CONF_LOG_LEVEL: self.log_level,
        }


def load_config(path: str | Path, overrides: Mapping[str, Any] | None = None) -> SyncConfig:
    """Read a YAML config file and apply non-empty ``overrides`` on top."""

    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as err:
        raise SyncConfigError(f"cannot read {config_path}: {err}") from err
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as err:
        raise SyncConfigError(f"invalid YAML in {config_path}: {err}") from err
    if not isinstance(raw, Mapping):
        raise SyncConfigError(f"{config_path} must contain a mapping")
    options = dict(raw)
    for key, value in (overrides or {}).items():
        if value is not None:
            options[key] = value
    return SyncConfig.from_options(options)


__all__ = ["CONFIG_SCHEMA", "SyncConfig", "SyncConfigError", "load_config"]
