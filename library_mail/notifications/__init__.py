"""Notification rendering and delivery.

This module provides the last stage of the notification pipeline:
- TemplateRenderer: Jinja2-based subject/HTML/text rendering per kind
- build_template_context: Payload to template variables, with defaults
- EmailDeliveryClient: One-shot delivery through the email provider API
- DeliveryResult / JobOutcome: Result data structures

Retries are not handled here; the worker pool owns them.
"""

from .delivery import EmailDeliveryClient, is_retryable_status, validate_recipient
from .models import (
    DeliveryError,
    DeliveryResult,
    JobOutcome,
    NotificationError,
    NotificationTemplateError,
    RenderedEmail,
)
from .payloads import build_template_context
from .templates import TemplateRenderer

__all__ = [
    # Components
    "TemplateRenderer",
    "EmailDeliveryClient",
    # Models and results
    "RenderedEmail",
    "DeliveryResult",
    "JobOutcome",
    # Exceptions
    "NotificationError",
    "NotificationTemplateError",
    "DeliveryError",
    # Utilities
    "build_template_context",
    "validate_recipient",
    "is_retryable_status",
]
