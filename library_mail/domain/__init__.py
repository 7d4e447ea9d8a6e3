"""Domain models for the notification pipeline."""

from .models import (
    BorrowedPayload,
    Borrowing,
    BorrowingPolicy,
    DueReminderPayload,
    ExtendedPayload,
    JobStatus,
    NotificationJob,
    NotificationKind,
    NotificationPayload,
    OverdueReminderPayload,
    ReturnedPayload,
    dump_payload,
    parse_payload,
)

__all__ = [
    "NotificationKind",
    "JobStatus",
    "NotificationPayload",
    "BorrowedPayload",
    "ReturnedPayload",
    "ExtendedPayload",
    "DueReminderPayload",
    "OverdueReminderPayload",
    "NotificationJob",
    "Borrowing",
    "BorrowingPolicy",
    "parse_payload",
    "dump_payload",
]
