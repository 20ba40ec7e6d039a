"""Job configuration loaded from a JSON file."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError
from .models import DEFAULT_ID_COLUMN, DEFAULT_PAYLOAD_COLUMN, DEFAULT_VERIFICATION_COLUMN
from .utils import (
    DEFAULT_CONVERSION_TIMEOUT_S,
    DEFAULT_CONVERTER,
    DEFAULT_RESULTS_FILE,
    DEFAULT_STAGING_DIR,
)

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config.json")
STORAGE_BACKENDS = ("firebase", "s3")


def require_config(cfg: Mapping[str, Any], key: str, path: str) -> Any:
    """Return ``cfg[key]``, raising ``ConfigError`` if it is absent or empty."""
    if key not in cfg or cfg[key] is None or cfg[key] == "":
        raise ConfigError(f"Missing required config: {path}.{key}")
    return cfg[key]


def _require_mapping(cfg: Mapping[str, Any], key: str, path: str) -> Mapping[str, Any]:
    value = require_config(cfg, key, path)
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config {path}.{key} must be an object")
    return value


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Config {name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config {name} must be an integer") from exc


@dataclass(frozen=True)
class DatabaseConfig:
    query: str
    url: Optional[str] = None
    connection_parameters: Mapping[str, Any] = field(default_factory=dict)
    id_column: str = DEFAULT_ID_COLUMN
    payload_column: str = DEFAULT_PAYLOAD_COLUMN
    verification_column: str = DEFAULT_VERIFICATION_COLUMN

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DatabaseConfig:
        query = require_config(raw, "query", "database")
        url = raw.get("url")
        params = raw.get("connection_parameters") or raw.get("connectionParameters") or {}
        if not url and not params:
            raise ConfigError(
                "Missing required config: database.url or database.connection_parameters"
            )
        if not isinstance(params, Mapping):
            raise ConfigError("Config database.connection_parameters must be an object")
        return cls(
            query=str(query),
            url=url,
            connection_parameters=dict(params),
            id_column=raw.get("id_column", DEFAULT_ID_COLUMN),
            payload_column=raw.get("payload_column", DEFAULT_PAYLOAD_COLUMN),
            verification_column=raw.get("verification_column", DEFAULT_VERIFICATION_COLUMN),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Remote store settings.

    ``options`` keeps the backend-specific keys (bucket, credentials,
    endpoint) exactly as they appear in the file.
    """

    backend: str
    file_retention: int
    prefix: str
    options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> StorageConfig:
        backend = str(require_config(raw, "backend", "storage")).lower()
        if backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Config storage.backend must be one of {', '.join(STORAGE_BACKENDS)}, got {backend!r}"
            )
        retention = _as_int(require_config(raw, "file_retention", "storage"), "storage.file_retention")
        if retention < 0:
            raise ConfigError("Config storage.file_retention must not be negative")
        prefix = raw.get("prefix") or raw.get("folder") or raw.get("defaultPrefix")
        if not prefix:
            raise ConfigError("Missing required config: storage.prefix")
        known = {"backend", "file_retention", "prefix", "folder", "defaultPrefix"}
        options = {k: v for k, v in raw.items() if k not in known}
        return cls(
            backend=backend,
            file_retention=retention,
            prefix=str(prefix).strip("/"),
            options=options,
        )


@dataclass(frozen=True)
class JobConfig:
    crypto_key: str
    database: DatabaseConfig
    storage: StorageConfig
    staging_dir: Path = Path(DEFAULT_STAGING_DIR)
    results_file: Path = Path(DEFAULT_RESULTS_FILE)
    converter: str = DEFAULT_CONVERTER
    conversion_timeout_s: Optional[float] = DEFAULT_CONVERSION_TIMEOUT_S

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> JobConfig:
        crypto_key = require_config(raw, "crypto_key", "config")
        timeout = raw.get("conversion_timeout_s", DEFAULT_CONVERSION_TIMEOUT_S)
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError) as exc:
                raise ConfigError("Config conversion_timeout_s must be a number") from exc
        return cls(
            crypto_key=str(crypto_key),
            database=DatabaseConfig.from_dict(_require_mapping(raw, "database", "config")),
            storage=StorageConfig.from_dict(_require_mapping(raw, "storage", "config")),
            staging_dir=Path(raw.get("staging_dir") or DEFAULT_STAGING_DIR),
            results_file=Path(raw.get("results_file") or DEFAULT_RESULTS_FILE),
            converter=str(raw.get("converter") or DEFAULT_CONVERTER),
            conversion_timeout_s=timeout,
        )

    def with_overrides(
        self,
        *,
        staging_dir: Optional[Path] = None,
        results_file: Optional[Path] = None,
    ) -> JobConfig:
        changes: dict[str, Any] = {}
        if staging_dir is not None:
            changes["staging_dir"] = staging_dir
        if results_file is not None:
            changes["results_file"] = results_file
        return replace(self, **changes) if changes else self


def load_config(path: Path) -> JobConfig:
    """Read and validate the JSON configuration file at *path*."""
    log.info('Reading configuration file: "%s"', path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read configuration file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")
    config = JobConfig.from_dict(raw)
    log.info("Configuration file loaded.")
    return config
