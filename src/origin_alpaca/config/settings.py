from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the Origin Alpaca server."""

    model_config = SettingsConfigDict(env_prefix="ORIGIN_ALPACA_", env_file=".env", extra="allow")

    http_host: str = "0.0.0.0"
    http_port: int = 11111
    http_scheme: str = "http"
    enable_https: bool = False
    tls_certfile: Optional[Path] = None
    tls_keyfile: Optional[Path] = None
    http_advertise_host: Optional[str] = None

    discovery_enabled: bool = True
    discovery_interface: str = "0.0.0.0"
    discovery_port: int = 32227

    state_directory: Path = Path("var")

    origin_host: str = "192.168.1.169"
    origin_port: int = 80
    origin_image_port: int = 80

    origin_connect_timeout_seconds: float = 10.0
    origin_receive_timeout_seconds: float = 0.0
    image_fetch_timeout_seconds: float = 30.0
    image_wait_timeout_seconds: float = 60.0

    poll_interval_seconds: float = 1.0
    max_frames_per_poll: int = 256
    auto_reconnect: bool = True
    reconnect_interval_seconds: float = 5.0

    default_iso: int = 200
    image_suffix: str = ".tiff"


def load_settings(config_path: Optional[str]) -> Settings:
    """Load settings optionally layering a YAML profile file."""
    settings = Settings()
    if config_path:
        from .yaml_loader import load_yaml_settings

        return load_yaml_settings(settings, config_path)
    return settings
