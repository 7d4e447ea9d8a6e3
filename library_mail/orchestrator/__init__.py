"""Borrowing-event to notification-job orchestration."""

from .service import DispatchResult, NotificationOrchestrator, due_reminder_key

__all__ = ["NotificationOrchestrator", "DispatchResult", "due_reminder_key"]
