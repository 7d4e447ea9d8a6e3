"""Environment variable loading and validation."""

import os
from typing import Optional

from email_validator import EmailNotValidError, validate_email

from .exceptions import ConfigurationError

DEFAULT_QUEUE_DATABASE_URL = "sqlite:///./data/library_mail.db"
DEFAULT_EMAIL_API_URL = "https://api.resend.com"
DEFAULT_EMAIL_FROM = "Library <onboarding@resend.dev>"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        email_api_key: str,
        email_from: Optional[str] = None,
        email_api_url: Optional[str] = None,
        queue_database_url: Optional[str] = None,
        library_database_url: Optional[str] = None,
        log_level: Optional[str] = None,
    ):
        self.email_api_key = email_api_key
        self.email_from = email_from or DEFAULT_EMAIL_FROM
        self.email_api_url = (email_api_url or DEFAULT_EMAIL_API_URL).rstrip("/")
        self.queue_database_url = queue_database_url or DEFAULT_QUEUE_DATABASE_URL
        # Borrowings live in the queue database unless pointed elsewhere
        self.library_database_url = library_database_url or self.queue_database_url
        self.log_level = log_level


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    Required environment variables:
    - EMAIL_API_KEY: API key for the transactional email provider

    Optional environment variables:
    - EMAIL_FROM: Sender, e.g. "City Library <noreply@library.example>"
    - EMAIL_API_URL: Provider base URL (default: https://api.resend.com)
    - QUEUE_DATABASE_URL: Durable job store (default: sqlite:///./data/library_mail.db)
    - LIBRARY_DATABASE_URL: Borrowing data store (default: same as QUEUE_DATABASE_URL)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If required variables are missing or invalid
    """
    errors = []

    email_api_key = os.getenv("EMAIL_API_KEY")
    email_from = os.getenv("EMAIL_FROM")
    email_api_url = os.getenv("EMAIL_API_URL")
    queue_database_url = os.getenv("QUEUE_DATABASE_URL")
    library_database_url = os.getenv("LIBRARY_DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL")

    if not email_api_key:
        errors.append("Missing required environment variable: EMAIL_API_KEY")

    if email_from and not _is_valid_sender(email_from):
        errors.append(f"Invalid sender address in EMAIL_FROM: '{email_from}'")

    if email_api_url and not email_api_url.startswith(("http://", "https://")):
        errors.append(f"Invalid EMAIL_API_URL: '{email_api_url}'. Must be an http(s) URL.")

    if log_level and log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and fill in your credentials",
                "Ensure all required environment variables are set",
            ],
        )

    return EnvironmentConfig(
        email_api_key=email_api_key,
        email_from=email_from,
        email_api_url=email_api_url,
        queue_database_url=queue_database_url,
        library_database_url=library_database_url,
        log_level=log_level.upper() if log_level else None,
    )


def _is_valid_sender(sender: str) -> bool:
    """
    Validate a sender, either a bare address or "Name <address>".

    Args:
        sender: Sender string from EMAIL_FROM

    Returns:
        True if valid, False otherwise
    """
    address = sender.strip()
    if address.endswith(">") and "<" in address:
        address = address[address.rindex("<") + 1 : -1]

    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True
