"""Configuration management module for the library mail worker."""

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_app_config, load_config
from .models import (
    AppConfig,
    EmailConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    PolicyConfig,
    QueueConfig,
    ReminderConfig,
    RetryConfig,
    default_config,
)

__all__ = [
    # Loader functions
    "load_config",
    "load_app_config",
    "load_environment_config",
    "default_config",
    # Configuration models
    "AppConfig",
    "QueueConfig",
    "RetryConfig",
    "ReminderConfig",
    "PolicyConfig",
    "EmailConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
]
