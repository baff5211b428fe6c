"""
Config loading and saving.
"""

import json
import logging
from pathlib import Path

from chatgate.config.schema import Config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.chatgate/config.json").expanduser()


def load_config(path: Path | None = None) -> Config:
    """
    Load configuration from JSON file.

    Environment variables (CHATGATE_*) are applied by pydantic-settings
    on top of defaults; values from the file take precedence over both.

    Args:
        path: Config file path. Defaults to ~/.chatgate/config.json

    Returns:
        Validated Config object.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return Config()

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return Config(**data)


def save_config(config: Config, path: Path | None = None) -> None:
    """
    Save configuration to JSON file.

    Args:
        config: Config object to save
        path: Config file path. Defaults to ~/.chatgate/config.json
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(mode="json"), f, indent=2)
