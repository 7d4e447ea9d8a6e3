"""Declarative retry policy for notification delivery."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from library_mail.config.models import RetryConfig


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between delivery attempts.

    The delay before attempt ``n + 1`` is
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay``.
    With the defaults (3 attempts, 1s base, x2) a job is tried at t, t+1s
    and t+3s before it is failed.

    Attributes:
        max_attempts: Total attempts, including the first one
        base_delay: Delay after the first failed attempt
        multiplier: Growth factor per further failure
        max_delay: Upper bound for any single delay
    """

    max_attempts: int = 3
    base_delay: timedelta = timedelta(seconds=1)
    multiplier: float = 2.0
    max_delay: timedelta = timedelta(minutes=5)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=timedelta(seconds=config.base_delay_seconds),
            multiplier=config.backoff_multiplier,
            max_delay=timedelta(seconds=config.max_delay_seconds),
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        exponent = max(attempt, 1) - 1
        seconds = self.base_delay.total_seconds() * (self.multiplier**exponent)
        return min(timedelta(seconds=seconds), self.max_delay)

    def should_retry(
        self, attempts: int, max_attempts: Optional[int] = None, retryable: bool = True
    ) -> bool:
        """Decide whether a failed job gets another attempt.

        Args:
            attempts: Attempts made so far
            max_attempts: Per-job limit (defaults to the policy's)
            retryable: Whether the failure could be transient
        """
        limit = max_attempts if max_attempts is not None else self.max_attempts
        return retryable and attempts < limit
