"""YAML configuration for newsdesk.

Example config.yaml:

    api:
      base_url: https://api.currentsapi.services/v1
      api_key: ${CURRENTS_API_KEY}
      language: en
      page_size: 12
    storage:
      db_path: data/newsdesk.db
      quota_mb: 50
      retention_days: 30
      search_ttl_minutes: 30
      max_search_entries: 200
    download:
      auto_pages: 2
      storage_ceiling_percent: 80
      manual_max_pages: 20
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from newsdesk.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/newsdesk.db"
DEFAULT_BASE_URL = "https://api.currentsapi.services/v1"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


@dataclass
class ApiSettings:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    language: str = "en"
    page_size: int = 12
    timeout_seconds: float = 30.0
    min_request_interval: float = 0.1


@dataclass
class StorageSettings:
    db_path: str = DEFAULT_DB_PATH
    quota_mb: float = 50.0
    retention_days: int = 30
    search_ttl_minutes: float = 30.0
    max_search_entries: int = 200


@dataclass
class DownloadSettings:
    auto_pages: int = 2
    storage_ceiling_percent: float = 80.0
    manual_max_pages: int = 20


@dataclass
class Settings:
    """Top-level settings tree built from config.yaml."""

    api: ApiSettings = field(default_factory=ApiSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    download: DownloadSettings = field(default_factory=DownloadSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Settings:
        try:
            return cls(
                api=ApiSettings(**_resolve_env(data.get("api") or {})),
                storage=StorageSettings(**(data.get("storage") or {})),
                download=DownloadSettings(**(data.get("download") or {})),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown or invalid setting: {e}") from e


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from YAML. A missing file yields defaults."""
    config_path = Path(path or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        logger.info("Config %s not found, using defaults", config_path)
        return Settings()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed config {config_path}: {e}") from e

    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigError(f"Config {config_path} must be a mapping")
    return Settings.from_dict(data)


def _resolve_env(section: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve ${ENV_VAR} inside string values; unset variables become empty."""
    out: Dict[str, Any] = {}
    for k, v in section.items():
        if isinstance(v, str):
            v = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), v).strip()
        out[k] = v
    return out
