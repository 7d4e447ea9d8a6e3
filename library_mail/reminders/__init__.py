"""Daily overdue / due-soon reminder scan."""

from .service import TRIGGER_ID, ReminderScheduler, ScanResult

__all__ = ["ReminderScheduler", "ScanResult", "TRIGGER_ID"]
