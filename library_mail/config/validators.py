"""Additional validation utilities for configuration."""

import warnings
from typing import Any, Dict, List


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check configuration for settings that are legal but probably unintended.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    reminders = config_dict.get("reminders", {})
    if isinstance(reminders, dict):
        if reminders.get("enabled") is False:
            warning_messages.append(
                "Daily reminder scan is disabled; overdue members will not be reminded"
            )
        if reminders.get("dedupe_due_soon") is False:
            warning_messages.append(
                "dedupe_due_soon is off; members may receive two due reminders per borrowing"
            )

    queue = config_dict.get("queue", {})
    if isinstance(queue, dict):
        concurrency = queue.get("concurrency", 5)
        if isinstance(concurrency, int) and concurrency > 20:
            warning_messages.append(
                f"High queue.concurrency ({concurrency}) may exceed email provider rate limits"
            )

    retry = config_dict.get("retry", {})
    if isinstance(retry, dict):
        max_attempts = retry.get("max_attempts", 3)
        if max_attempts == 1:
            warning_messages.append(
                "retry.max_attempts is 1; transient provider errors will not be retried"
            )

    policy = config_dict.get("policy", {})
    if isinstance(policy, dict):
        borrow_days = policy.get("borrow_duration_days", 14)
        if isinstance(borrow_days, int) and borrow_days <= 1:
            warning_messages.append(
                "policy.borrow_duration_days is 1 day or less; "
                "due reminders will never be scheduled at issue time"
            )

    return warning_messages


def emit_warnings(warning_messages: List[str]) -> None:
    """
    Emit warning messages using Python's warnings module.

    Args:
        warning_messages: List of warning messages to emit
    """
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
