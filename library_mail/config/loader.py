"""Configuration loader for the library mail worker."""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .models import AppConfig
from .validators import check_for_warnings, emit_warnings

DEFAULT_CONFIG_CANDIDATES = (
    Path("config.yaml"),
    Path("config") / "config.yaml",
)


def load_app_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load and validate the YAML application configuration.

    Every section is optional, so a missing default config file yields the
    built-in defaults. An explicitly requested file must exist.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Validated AppConfig

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    config_file = _find_config_file(config_path)
    if config_file is None:
        return AppConfig()

    try:
        with open(config_file, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            suggestions=[
                "Check YAML syntax in your config file",
                "Ensure proper indentation (use spaces, not tabs)",
            ],
        )
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            suggestions=[f"Ensure {config_file} is readable"],
        )

    if config_dict is None:
        config_dict = {}

    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping at the top level",
            suggestions=["Review config.example.yaml for the expected layout"],
        )

    warnings = check_for_warnings(config_dict)
    if warnings:
        emit_warnings(warnings)

    try:
        return AppConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError.from_validation_error(e) from e


def load_config(config_path: Optional[Path] = None) -> tuple[AppConfig, EnvironmentConfig]:
    """
    Load application configuration and environment variables.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If either source is invalid
    """
    app_config = load_app_config(config_path)
    env_config = load_environment_config()
    return app_config, env_config


def _find_config_file(config_path: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the configuration file.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Path to the configuration file, or None when no default file exists

    Raises:
        ConfigurationError: If an explicit path does not exist
    """
    if config_path:
        if not config_path.exists():
            raise ConfigurationError(
                f"Specified configuration file not found: {config_path}",
                suggestions=[
                    f"Ensure {config_path} exists",
                    "Copy config.example.yaml to config.yaml",
                ],
            )
        return config_path

    for candidate in DEFAULT_CONFIG_CANDIDATES:
        if candidate.exists():
            return candidate

    return None
