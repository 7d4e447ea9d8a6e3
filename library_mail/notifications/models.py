"""Data models and exceptions for notification rendering and delivery.

This module defines result types and custom exceptions used by the
template renderer, the delivery adapter and the worker pool.
"""

from dataclasses import dataclass
from typing import Optional


class NotificationError(Exception):
    """Base exception for notification-related errors."""

    pass


class NotificationTemplateError(NotificationError):
    """Raised when template rendering fails due to configuration or missing variables."""

    pass


class DeliveryError(NotificationError):
    """Raised when the delivery adapter is misconfigured or given an invalid recipient."""

    pass


@dataclass
class RenderedEmail:
    """Subject and bodies produced for one notification."""

    subject: str
    html_body: str
    text_body: str


@dataclass
class DeliveryResult:
    """Outcome of a single delivery attempt against the email provider.

    The adapter never raises for provider-side failures; it reports them
    here and the worker pool decides whether to retry.

    Attributes:
        success: Whether the provider accepted the message
        message_id: Provider-assigned message id on success
        error: Error description on failure
        status_code: HTTP status of the provider response, if one was received
        retryable: Whether a later attempt could succeed
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    retryable: bool = True

    @classmethod
    def sent(cls, message_id: Optional[str], status_code: Optional[int] = None) -> "DeliveryResult":
        return cls(success=True, message_id=message_id, status_code=status_code, retryable=False)

    @classmethod
    def failed(
        cls, error: str, status_code: Optional[int] = None, retryable: bool = True
    ) -> "DeliveryResult":
        return cls(success=False, error=error, status_code=status_code, retryable=retryable)


@dataclass
class JobOutcome:
    """What the worker pool did with one claimed job.

    Attributes:
        job_key: Key of the processed job
        kind: Notification kind
        attempts: Attempts made so far, including this one
        status: "sent", "retrying", "failed" or "stale"
        error: Error message for unsuccessful outcomes
        message_id: Provider message id when sent
    """

    job_key: str
    kind: str
    attempts: int
    status: str  # "sent", "retrying", "failed", "stale"
    error: Optional[str] = None
    message_id: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == "sent"

    def is_permanent_failure(self) -> bool:
        return self.status == "failed"
