"""Configuration module for psgate."""

from psgate.config.loader import load_config, get_config_path
from psgate.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
