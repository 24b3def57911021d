"""
Process configuration from environment variables.

The API profiles and template variables live in the section-based config
file (see services/config_loader.py); this module only covers the knobs
needed to find that file and to bind the listener.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

SERVICE_NAME = "htmz-proxy"
PROXY_VERSION = "1.0.0"


class AppConfig(BaseSettings):
    htmz_config: str = "htmz.toml"
    htmz_secret_file: str = ".htmz-secret"
    # Listener overrides; None means "use the [proxy] section of the config file"
    htmz_host: Optional[str] = None
    htmz_port: Optional[int] = None
    htmz_socket: Optional[str] = None
    # Watch the config file and hot-reload it on change
    htmz_dev: bool = False
    htmz_log_level: str = "INFO"
    # Seconds between config file polls in dev mode
    htmz_reload_interval: float = 1.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()
