from __future__ import annotations

from pathlib import Path

import yaml

from .settings import Settings


def load_yaml_settings(base_settings: Settings, config_path: str | Path) -> Settings:
    """Overlay settings from a YAML file onto the base `Settings` instance."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with path.open("r", encoding="utf-8") as stream:
        data = yaml.safe_load(stream) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")

    # the file may nest everything under an ``origin_alpaca`` key
    nested = data.get("origin_alpaca")
    if isinstance(nested, dict):
        data = nested

    merged = base_settings.model_dump()
    merged.update(data)
    return Settings(**merged)
