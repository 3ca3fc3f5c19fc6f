"""Configuration loading and saving."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from psgate.config.schema import Config
from psgate.utils.helpers import (
    camel_to_snake,
    convert_keys,
    convert_to_camel,
    ensure_dir,
    snake_to_camel,
)

__all__ = [
    "camel_to_snake",
    "convert_keys",
    "convert_to_camel",
    "get_config_path",
    "load_config",
    "save_config",
    "snake_to_camel",
]


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".psgate" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from a camelCase JSON file.

    Missing, empty or invalid files fall back to defaults; environment
    variables (PSGATE_*) still apply on top of the file.
    """
    path = config_path or get_config_path()

    if not path.exists():
        return Config()

    try:
        raw = path.read_text(encoding="utf-8")
        if not raw.strip():
            return Config()
        data = json.loads(raw)
        return Config(**convert_keys(data))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        logger.warning("Using default configuration.")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration as camelCase JSON."""
    path = config_path or get_config_path()
    ensure_dir(path.parent)

    data = convert_to_camel(config.model_dump())
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
