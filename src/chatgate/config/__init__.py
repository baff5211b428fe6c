"""Configuration management."""

from chatgate.config.schema import Config
from chatgate.config.loader import load_config, save_config

__all__ = ["Config", "load_config", "save_config"]
