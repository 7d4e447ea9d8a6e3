"""Unit tests for the delivery retry policy."""

from datetime import timedelta

import pytest

from library_mail.config.models import RetryConfig
from library_mail.worker.retry import RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_backoff(self):
        """Test the default schedule: 1s after the first failure, then 2s."""
        policy = RetryPolicy()

        assert policy.delay_for(1) == timedelta(seconds=1)
        assert policy.delay_for(2) == timedelta(seconds=2)
        assert policy.delay_for(3) == timedelta(seconds=4)

    def test_delay_is_capped(self):
        """Test no delay exceeds max_delay."""
        policy = RetryPolicy(base_delay=timedelta(seconds=10), max_delay=timedelta(seconds=30))

        assert policy.delay_for(5) == timedelta(seconds=30)

    def test_attempt_zero_treated_as_first(self):
        """Test out-of-range attempt numbers fall back to the base delay."""
        assert RetryPolicy().delay_for(0) == timedelta(seconds=1)

    def test_should_retry_within_limit(self):
        """Test retryable failures are retried until attempts run out."""
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_should_retry_uses_job_limit(self):
        """Test a per-job limit overrides the policy's."""
        policy = RetryPolicy(max_attempts=3)

        assert not policy.should_retry(1, max_attempts=1)
        assert policy.should_retry(4, max_attempts=5)

    def test_non_retryable_never_retried(self):
        """Test permanent failures are not retried regardless of attempts."""
        assert not RetryPolicy().should_retry(1, retryable=False)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"multiplier": 0.5}],
    )
    def test_invalid_policy(self, kwargs):
        """Test nonsensical policies are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_from_config(self):
        """Test building the policy from the retry config section."""
        policy = RetryPolicy.from_config(
            RetryConfig(
                max_attempts=5,
                base_delay_seconds=2,
                backoff_multiplier=3,
                max_delay_seconds=60,
            )
        )

        assert policy.max_attempts == 5
        assert policy.delay_for(2) == timedelta(seconds=6)
        assert policy.max_delay == timedelta(seconds=60)
