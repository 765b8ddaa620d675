"""Loading of the release configuration from YAML.

Example:
    >>> config = load_release_config("release.yaml")
    >>> [env.name for env in config.ordered_environments]
    ['dev', 'staging', 'production']
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from shiplane.errors import ConfigurationError
from shiplane.schemas.promotion import ReleaseConfig

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "SHIPLANE_CONFIG"
"""Environment variable naming the configuration file."""

DEFAULT_CONFIG_PATH = "release.yaml"


def default_config_path() -> Path:
    """Path from SHIPLANE_CONFIG, falling back to ./release.yaml."""
    return Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)


def parse_release_config(data: dict[str, Any] | None) -> ReleaseConfig:
    """Validate a parsed YAML document.

    An empty document yields the default configuration.

    Raises:
        ConfigurationError: If the document is not a mapping or fails validation.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"top-level YAML must be a mapping, got {type(data).__name__}"
        )
    try:
        return ReleaseConfig.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(details) from e


def load_release_config(path: str | Path | None = None) -> ReleaseConfig:
    """Load and validate a release configuration file.

    Args:
        path: YAML file to load. Defaults to ``default_config_path()``.

    Returns:
        Validated ReleaseConfig.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or
            fails validation.
    """
    config_path = Path(path) if path is not None else default_config_path()
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse YAML in {config_path}: {e}") from e

    config = parse_release_config(data)
    logger.debug(
        "release_config_loaded",
        path=str(config_path),
        environments=len(config.environments),
        services=len(config.services),
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "default_config_path",
    "load_release_config",
    "parse_release_config",
]
