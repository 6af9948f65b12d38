"""fieldlog configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: FIELDLOG_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class StorageConfig:
    backend: str = "file"  # "file" or "memory"
    base_dir: str = "data/local"
    quota_bytes: int = 5 * 1024 * 1024
    records_key: str = "observations"


@dataclass
class ReferenceConfig:
    db_path: str = "data/species.sqlite3"
    data_url: str = ""  # base URL serving species-data-<i>.json
    data_dir: str = "data/species"  # used when data_url is empty
    partition_count: int = 10
    data_version: str = "2023-09-28"
    fetch_timeout_s: float = 60.0


@dataclass
class RemoteConfig:
    base_url: str = "http://localhost:5000/api"
    timeout_s: float = 20.0
    auth_token: str = ""
    probe_interval_s: float = 30.0  # 0 disables the connectivity probe


@dataclass
class SyncConfig:
    max_attempts: int = 5
    base_delay_s: float = 5.0
    max_delay_s: float = 300.0
    retry_interval_s: float = 15.0  # 0 disables the retry loop
    start_online: bool = True


@dataclass
class SearchConfig:
    limit: int = 20
    fuzzy_threshold: float = 0.3


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"
    file: str = ""


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "FIELDLOG_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "FIELDLOG_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "FIELDLOG_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "FIELDLOG_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "FIELDLOG_STORAGE_BASE_DIR": lambda v: setattr(config.storage, "base_dir", v),
        "FIELDLOG_STORAGE_QUOTA_BYTES": lambda v: setattr(config.storage, "quota_bytes", int(v)),
        "FIELDLOG_STORAGE_RECORDS_KEY": lambda v: setattr(config.storage, "records_key", v),
        "FIELDLOG_REFERENCE_DB_PATH": lambda v: setattr(config.reference, "db_path", v),
        "FIELDLOG_REFERENCE_DATA_URL": lambda v: setattr(config.reference, "data_url", v),
        "FIELDLOG_REFERENCE_DATA_DIR": lambda v: setattr(config.reference, "data_dir", v),
        "FIELDLOG_REFERENCE_PARTITION_COUNT": lambda v: setattr(config.reference, "partition_count", int(v)),
        "FIELDLOG_REFERENCE_DATA_VERSION": lambda v: setattr(config.reference, "data_version", v),
        "FIELDLOG_REFERENCE_FETCH_TIMEOUT_S": lambda v: setattr(config.reference, "fetch_timeout_s", float(v)),
        "FIELDLOG_REMOTE_BASE_URL": lambda v: setattr(config.remote, "base_url", v),
        "FIELDLOG_REMOTE_TIMEOUT_S": lambda v: setattr(config.remote, "timeout_s", float(v)),
        "FIELDLOG_REMOTE_AUTH_TOKEN": lambda v: setattr(config.remote, "auth_token", v),
        "FIELDLOG_REMOTE_PROBE_INTERVAL_S": lambda v: setattr(config.remote, "probe_interval_s", float(v)),
        "FIELDLOG_SYNC_MAX_ATTEMPTS": lambda v: setattr(config.sync, "max_attempts", int(v)),
        "FIELDLOG_SYNC_BASE_DELAY_S": lambda v: setattr(config.sync, "base_delay_s", float(v)),
        "FIELDLOG_SYNC_MAX_DELAY_S": lambda v: setattr(config.sync, "max_delay_s", float(v)),
        "FIELDLOG_SYNC_RETRY_INTERVAL_S": lambda v: setattr(config.sync, "retry_interval_s", float(v)),
        "FIELDLOG_SYNC_START_ONLINE": lambda v: setattr(config.sync, "start_online", _bool(v)),
        "FIELDLOG_SEARCH_LIMIT": lambda v: setattr(config.search, "limit", int(v)),
        "FIELDLOG_SEARCH_FUZZY_THRESHOLD": lambda v: setattr(config.search, "fuzzy_threshold", float(v)),
        "FIELDLOG_LOGGING_LEVEL": lambda v: setattr(config.logging, "level", v),
        "FIELDLOG_LOGGING_FORMAT": lambda v: setattr(config.logging, "format", v),
        "FIELDLOG_LOGGING_FILE": lambda v: setattr(config.logging, "file", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("FIELDLOG_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in ("server", "storage", "reference", "remote", "sync", "search", "logging"):
            if section in raw:
                target = getattr(config, section)
                for k, v in (raw[section] or {}).items():
                    if hasattr(target, k):
                        setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
