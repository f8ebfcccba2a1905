"""Image converter application configuration.

Settings are read from an optional YAML file (converter.settings.yaml in the
working directory) and then overridden by environment variables, so a plain
``PORT=8080 CORS_ORIGIN=https://example.com`` deployment works without any
file at all. A local ``.env`` file is honoured as well.

Environment overrides:
  * PORT, HOST, CORS_ORIGIN           -> server
  * UPLOAD_DIR, MAX_FILE_SIZE_BYTES   -> uploads
  * LOG_LEVEL                         -> logging
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from app.images.schemas import MAX_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("converter.settings.yaml")

# env var -> (section, key)
_ENV_OVERRIDES = {
    "HOST":                ("server",  "host"),
    "PORT":                ("server",  "port"),
    "CORS_ORIGIN":         ("server",  "cors_origin"),
    "UPLOAD_DIR":          ("uploads", "upload_dir"),
    "MAX_FILE_SIZE_BYTES": ("uploads", "max_file_size_bytes"),
    "LOG_LEVEL":           ("logging", "level"),
}

_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("Config file not found: %s (using defaults)", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        data.setdefault(section, {})
        data[section][key] = value
    return data


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3001
    cors_origin:     str       = "http://localhost:3000"
    allowed_methods: List[str] = Field(default_factory=lambda: ["GET", "POST"])
    allowed_headers: List[str] = Field(default_factory=lambda: ["Content-Type"])

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {value}")
        return value


class UploadSettings(BaseModel):
    """Scratch directory for uploads and derived files; never durable storage."""
    upload_dir:          str = "uploads"
    max_file_size_bytes: int = MAX_FILE_SIZE_BYTES

    @field_validator("max_file_size_bytes")
    @classmethod
    def _check_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_file_size_bytes must be positive")
        return value

    def upload_path(self) -> Path:
        return Path(self.upload_dir).resolve()


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.lower()
        if value not in _LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}")
        return value


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    uploads: UploadSettings  = Field(default_factory=UploadSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Load settings from YAML, then apply environment overrides."""
    load_dotenv()
    path = Path(settings_path) if settings_path else SETTINGS_FILE
    data = _apply_env_overrides(_load_yaml(path))

    config = AppConfig(**data)
    logger.info(
        "Settings loaded (server=%s:%s, cors_origin=%s, upload_dir=%s, max_file_size=%d)",
        config.server.host,
        config.server.port,
        config.server.cors_origin,
        config.uploads.upload_dir,
        config.uploads.max_file_size_bytes,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (for testing)."""
    global _config
    _config = None
