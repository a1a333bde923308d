"""
Configuration loading: YAML file plus environment overrides.
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

# environment variable -> settings key
ENV_OVERRIDES = {
    "FILE_STORAGE": "storage_root",
    "FILECACHE_DB": "db_path",
    "CACHING_MAX_RETRIES": "max_retries",
    "CACHING_PENDING_TIMEOUT": "pending_timeout_seconds",
    "CACHING_INTERVAL_SECONDS": "interval_seconds",
    "CACHING_CRON_PATTERN": "cron",
    "CACHING_MAX_CONCURRENCY": "max_concurrency",
    "CACHING_REQUEST_TIMEOUT": "request_timeout",
}


class Settings(BaseModel):
    """Runtime settings for the cache service."""
    storage_root: Path = Path("/data/files")
    db_path: str = "filecache.db"
    max_retries: int = Field(default=3, ge=1)
    pending_timeout_seconds: float = Field(default=600, gt=0)
    interval_seconds: int = Field(default=30, gt=0)
    cron: Optional[str] = None
    max_concurrency: Optional[int] = Field(default=None, gt=0)
    request_timeout: float = Field(default=300, gt=0)
    default_extension: str = "bin"
    default_content_type: str = "application/octet-stream"
    user_agent: str = "file-address-cache/0.1"
    host: str = "0.0.0.0"
    port: int = 80
    status_base_uri: str = "http://data.lblod.info/file-address-cache-statuses"
    file_base_uri: str = "http://data.lblod.info/files"

    @field_validator("cron", "max_concurrency", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def pending_timeout(self) -> timedelta:
        return timedelta(seconds=self.pending_timeout_seconds)


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Load settings from YAML, then apply environment overrides."""
    path = path or os.getenv("FILECACHE_CONFIG", DEFAULT_CONFIG_PATH)
    env = os.environ if env is None else env

    data: Dict[str, Any] = {}
    config_file = Path(path)
    if config_file.exists():
        with config_file.open() as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
    else:
        logger.warning(f"Config file not found: {path} - using defaults")

    for var, key in ENV_OVERRIDES.items():
        if var in env:
            data[key] = env[var]

    return Settings(**data)
