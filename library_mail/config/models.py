"""Configuration schema models using Pydantic."""

from datetime import timedelta, tzinfo
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


class QueueConfig(BaseModel):
    """Job queue and worker pool settings."""

    concurrency: int = Field(5, ge=1, le=64, description="Simultaneous in-flight deliveries")
    poll_interval_seconds: float = Field(
        1.0, gt=0, le=60, description="How often idle workers look for due jobs"
    )
    lease_timeout_seconds: int = Field(
        300,
        ge=30,
        description="Jobs active longer than this are considered abandoned and re-queued",
    )
    keep_completed: int = Field(100, ge=0, description="Completed jobs kept for inspection")
    keep_failed: int = Field(50, ge=0, description="Failed jobs kept for inspection")


class RetryConfig(BaseModel):
    """Delivery retry policy."""

    max_attempts: int = Field(3, ge=1, le=10, description="Total delivery attempts per job")
    base_delay_seconds: float = Field(
        1.0, gt=0, le=3600, description="Delay before the first retry"
    )
    backoff_multiplier: float = Field(
        2.0, ge=1.0, le=10.0, description="Factor applied to the delay on each retry"
    )
    max_delay_seconds: float = Field(300.0, gt=0, description="Upper bound for any retry delay")

    @model_validator(mode="after")
    def check_delay_bounds(self):
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class ReminderConfig(BaseModel):
    """Daily reminder scan and due-reminder timing."""

    enabled: bool = Field(True, description="Register the daily reminder scan")
    hour: int = Field(9, ge=0, le=23, description="Wall-clock hour of the daily scan")
    minute: int = Field(0, ge=0, le=59, description="Wall-clock minute of the daily scan")
    timezone: str = Field("UTC", description="IANA timezone for the scan and calendar days")
    lead_hours: int = Field(
        24, ge=1, le=168, description="How long before the due date a due-reminder fires"
    )
    dedupe_due_soon: bool = Field(
        True,
        description="Route the scan's due-soon reminders through the per-borrowing key",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    @property
    def lead_time(self) -> timedelta:
        return timedelta(hours=self.lead_hours)


class PolicyConfig(BaseModel):
    """Borrowing policy defaults for libraries without a policy row."""

    borrow_duration_days: int = Field(14, ge=1, le=365)
    extension_duration_days: int = Field(7, ge=1, le=365)
    max_books_per_member: int = Field(5, ge=1)


class EmailConfig(BaseModel):
    """Email provider HTTP settings."""

    request_timeout_seconds: int = Field(
        30, ge=1, le=300, description="Timeout for a single provider API call"
    )
    user_agent: str = Field("LibraryMail/1.0", min_length=1)

    @field_validator("user_agent")
    @classmethod
    def strip_user_agent(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("user_agent cannot be empty")
        return stripped


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object for the library mail worker."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_lease_covers_request(self):
        """Ensure a single provider call always finishes inside the job lease."""
        if self.queue.lease_timeout_seconds <= self.email.request_timeout_seconds:
            raise ValueError(
                "queue.lease_timeout_seconds must exceed email.request_timeout_seconds, "
                "otherwise in-flight deliveries would be re-queued"
            )
        return self


def default_config() -> AppConfig:
    """Configuration with every default applied."""
    return AppConfig()
