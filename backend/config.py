"""
Process configuration.

Settings are read once from $CONFIG_DIR/settings.json (if present) and then
overridden by environment variables. Components receive the values they
need through their constructors.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator


logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"

# Environment variable -> settings field
ENV_OVERRIDES = {
    "SERVER_NAME": "server_name",
    "SERVER_USERNAME": "server_username",
    "SERVER_PASSWORD": "server_password",
    "DOMAIN_NAME": "domain_name",
    "HTTP_PORT": "http_port",
    "HTTPS_PORT": "https_port",
    "CACHE_DIR": "cache_dir",
    "LOG_LEVEL": "log_level",
}


class ConfigurationError(Exception):
    """Required settings are missing or invalid."""

    pass


class Settings(BaseModel):
    """Server configuration."""

    # Credential/naming service (host name or full base URL)
    server_name: str = ""
    server_username: str = "alley-oop"
    server_password: str = ""

    # Parent domain for the default domain map (e.g., lan.example.com)
    domain_name: str = ""
    # Explicit hostname -> address map; overrides the default map when set
    domains: dict[str, str] = {}

    host: str = "0.0.0.0"
    http_port: int = 1080
    https_port: int = 10443

    request_timeout_seconds: float = 10.0
    handshake_timeout_seconds: float = 10.0

    # Raw credential cache directory; empty disables it
    cache_dir: str = ""

    # Extra fetch attempts for retryable credential errors
    fetch_retries: int = 0
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 5.0

    log_level: str = "INFO"

    @field_validator("server_name", "domain_name")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("domains")
    @classmethod
    def normalize_domains(cls, v: dict[str, str]) -> dict[str, str]:
        return {k.strip().rstrip(".").lower(): addr.strip() for k, addr in v.items()}

    @field_validator("http_port", "https_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v

    def missing_required(self) -> list[str]:
        """Names of required settings that are not set."""
        missing = []
        if not self.server_name:
            missing.append("server_name")
        if not self.server_password:
            missing.append("server_password")
        if not self.domain_name and not self.domains:
            missing.append("domain_name or domains")
        return missing

    def is_configured(self) -> bool:
        return not self.missing_required()


# In-memory cache of settings
_cached_settings: Optional[Settings] = None


def _env_overrides() -> dict:
    return {
        field: os.environ[env]
        for env, field in ENV_OVERRIDES.items()
        if os.environ.get(env)
    }


def load_settings(config_file: Optional[Path] = None) -> Settings:
    """
    Load settings from file and environment.

    Raises:
        ConfigurationError: If the file or a value cannot be parsed
    """
    path = config_file or CONFIG_FILE
    data: dict = {}

    if path.exists():
        logger.info("[CONFIG] Loading settings from %s", path)
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e
    else:
        logger.info("[CONFIG] No settings file at %s, using environment only", path)

    data.update(_env_overrides())
    try:
        return Settings(**data)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def get_settings() -> Settings:
    """Get the process settings, loading them on first use."""
    global _cached_settings

    if _cached_settings is None:
        _cached_settings = load_settings()
    return _cached_settings


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
