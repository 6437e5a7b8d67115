"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import SyswatchConfig

ENV_PLACEHOLDER = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


class ConfigLoader:
    """Load and validate exporter configuration."""

    @staticmethod
    def load_from_file(config_path: str, required: bool = False) -> SyswatchConfig:
        """
        Load configuration from YAML file with environment variable substitution.

        Args:
            config_path: Path to YAML configuration file
            required: Raise if the file is missing instead of using defaults

        Returns:
            SyswatchConfig: Validated configuration object

        Raises:
            ConfigError: If the file is required but missing, unparseable, or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            if required:
                raise ConfigError(f"Configuration file not found: {config_path}")
            return SyswatchConfig()

        try:
            with open(config_file, 'r') as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

        return ConfigLoader.load_from_dict(raw_config or {}, source=config_path)

    @staticmethod
    def load_from_dict(raw_config: Any, source: str = "<dict>") -> SyswatchConfig:
        """Validate an already parsed configuration mapping."""
        if not isinstance(raw_config, dict):
            raise ConfigError(f"{source}: top level must be a mapping")

        raw_config = ConfigLoader._substitute_env_vars(raw_config)

        try:
            return SyswatchConfig(**raw_config)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {source}: {e}") from e

    @staticmethod
    def _substitute_env_vars(obj: Any) -> Any:
        """
        Replace ${VAR} and ${VAR:-default} placeholders in every string value.

        Unset variables without a default become empty strings, which the
        models then reject where a value is required.
        """
        if isinstance(obj, str):
            return ENV_PLACEHOLDER.sub(
                lambda m: os.environ.get(m.group(1), m.group(2) or ''), obj
            )
        if isinstance(obj, dict):
            return {key: ConfigLoader._substitute_env_vars(value) for key, value in obj.items()}
        if isinstance(obj, list):
            return [ConfigLoader._substitute_env_vars(value) for value in obj]
        return obj
