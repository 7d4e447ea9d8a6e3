"""Notification orchestration for borrowing lifecycle events.

The circulation layer calls one ``on_*`` method right after it commits a
borrowing change. The orchestrator turns the event into queue operations:

    issued    -> book-borrowed now, due-reminder at (due - lead) if still ahead
    returned  -> cancel due-reminder, book-returned now
    extended  -> cancel due-reminder, new due-reminder if still ahead,
                 book-extended now

At most one due-reminder is pending per borrowing because every such job
is keyed by ``due_reminder_key`` and every reschedule cancels first.
Notification is best-effort: queue failures are logged and reported on the
returned ``DispatchResult``, never raised to the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional

from library_mail.domain.models import (
    BorrowedPayload,
    DueReminderPayload,
    ExtendedPayload,
    NotificationPayload,
    ReturnedPayload,
)
from library_mail.logging import get_logger
from library_mail.logging.context import log_context
from library_mail.queue import JobQueue
from library_mail.utils.timestamps import Clock, ensure_utc, format_display_date, utc_now

logger = get_logger(__name__, component="orchestrator")

DUE_REMINDER_PREFIX = "due-reminder-"


def _clean_id(borrowing_id) -> str:
    return "" if borrowing_id is None else str(borrowing_id).strip()


def due_reminder_key(borrowing_id) -> str:
    """Job key of the due-reminder for a borrowing.

    Every producer of due-reminder jobs must derive the key here.
    """
    borrowing_id = _clean_id(borrowing_id)
    if not borrowing_id:
        raise ValueError("borrowing_id cannot be empty")
    return f"{DUE_REMINDER_PREFIX}{borrowing_id}"


@dataclass
class DispatchResult:
    """Queue operations performed for one borrowing event.

    Attributes:
        event: Event name ("book_issued", "book_returned", "borrowing_extended")
        borrowing_id: Borrowing the event refers to
        enqueued: Keys of jobs added to the queue
        cancelled: Keys of pending jobs removed from the queue
        skipped: Human-readable reasons for jobs deliberately not created
        errors: Queue failures that were caught
    """

    event: str
    borrowing_id: str
    enqueued: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class NotificationOrchestrator:
    """Translates borrowing events into notification jobs."""

    def __init__(
        self,
        queue: JobQueue,
        clock: Clock = utc_now,
        lead_time: timedelta = timedelta(hours=24),
        display_tz: Optional[tzinfo] = None,
    ):
        """
        Args:
            queue: Job queue to enqueue into
            clock: Source of "now" (injectable for tests)
            lead_time: How long before the due date the due-reminder fires
            display_tz: Timezone used to format dates shown to members
        """
        self.queue = queue
        self.clock = clock
        self.lead_time = lead_time
        self.display_tz = display_tz

    def on_book_issued(
        self,
        borrowing_id: str,
        member_email: Optional[str],
        member_name: Optional[str],
        book_title: Optional[str],
        book_author: Optional[str],
        library_name: Optional[str],
        due_date: datetime,
    ) -> DispatchResult:
        """Send the borrowed confirmation and schedule the due-reminder."""
        borrowing_id = _clean_id(borrowing_id)
        result = DispatchResult(event="book_issued", borrowing_id=borrowing_id)
        if not self._has_borrowing_id(result):
            return self._finish(result)

        with log_context(borrowing_id=borrowing_id, recipient=member_email):
            if not self._has_recipient(member_email, result):
                return self._finish(result)

            formatted_due = format_display_date(due_date, self.display_tz)
            common = self._common_fields(
                borrowing_id, member_email, member_name, book_title, book_author, library_name
            )

            self._enqueue(result, BorrowedPayload(**common, due_date=formatted_due))
            self._schedule_due_reminder(
                result, DueReminderPayload(**common, due_date=formatted_due), due_date
            )

        return self._finish(result)

    def on_book_returned(
        self,
        borrowing_id: str,
        member_email: Optional[str],
        member_name: Optional[str],
        book_title: Optional[str],
        book_author: Optional[str],
        library_name: Optional[str],
    ) -> DispatchResult:
        """Cancel the pending due-reminder and send the returned confirmation."""
        borrowing_id = _clean_id(borrowing_id)
        result = DispatchResult(event="book_returned", borrowing_id=borrowing_id)
        if not self._has_borrowing_id(result):
            return self._finish(result)

        with log_context(borrowing_id=borrowing_id, recipient=member_email):
            self._cancel(result, due_reminder_key(borrowing_id))

            if self._has_recipient(member_email, result):
                common = self._common_fields(
                    borrowing_id, member_email, member_name, book_title, book_author, library_name
                )
                self._enqueue(result, ReturnedPayload(**common))

        return self._finish(result)

    def on_borrowing_extended(
        self,
        borrowing_id: str,
        member_email: Optional[str],
        member_name: Optional[str],
        book_title: Optional[str],
        book_author: Optional[str],
        library_name: Optional[str],
        new_due_date: datetime,
    ) -> DispatchResult:
        """Move the due-reminder to the new due date and send the extended confirmation."""
        borrowing_id = _clean_id(borrowing_id)
        result = DispatchResult(event="borrowing_extended", borrowing_id=borrowing_id)
        if not self._has_borrowing_id(result):
            return self._finish(result)

        with log_context(borrowing_id=borrowing_id, recipient=member_email):
            self._cancel(result, due_reminder_key(borrowing_id))

            if not self._has_recipient(member_email, result):
                return self._finish(result)

            formatted_due = format_display_date(new_due_date, self.display_tz)
            common = self._common_fields(
                borrowing_id, member_email, member_name, book_title, book_author, library_name
            )

            self._schedule_due_reminder(
                result, DueReminderPayload(**common, due_date=formatted_due), new_due_date
            )
            self._enqueue(result, ExtendedPayload(**common, new_due_date=formatted_due))

        return self._finish(result)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _common_fields(
        borrowing_id, member_email, member_name, book_title, book_author, library_name
    ) -> dict:
        return {
            "to": member_email,
            "member_name": member_name,
            "book_title": book_title,
            "book_author": book_author,
            "library_name": library_name,
            "borrowing_id": borrowing_id,
        }

    def _has_borrowing_id(self, result: DispatchResult) -> bool:
        if result.borrowing_id:
            return True
        result.errors.append("borrowing id is empty")
        logger.error(
            f"Cannot handle {result.event} without a borrowing id; notifications skipped",
            extra={"event": "orchestrator.borrowing_id.missing", "borrowing_event": result.event},
        )
        return False

    def _has_recipient(self, member_email: Optional[str], result: DispatchResult) -> bool:
        if member_email and member_email.strip():
            return True
        result.skipped.append("member has no email address")
        logger.warning(
            f"No email address for borrowing {result.borrowing_id}; notifications skipped",
            extra={"event": "orchestrator.recipient.missing", "borrowing_event": result.event},
        )
        return False

    def _schedule_due_reminder(
        self, result: DispatchResult, payload: DueReminderPayload, due_date: datetime
    ) -> None:
        fire_at = ensure_utc(due_date) - self.lead_time
        now = self.clock()

        if fire_at <= now:
            result.skipped.append("due-reminder time already passed")
            logger.info(
                f"Due-reminder for borrowing {result.borrowing_id} not scheduled: "
                f"reminder time {fire_at.isoformat()} is not in the future",
                extra={
                    "event": "orchestrator.reminder.skipped",
                    "fire_at": fire_at.isoformat(),
                    "reason": "reminder_time_passed",
                },
            )
            return

        self._enqueue(result, payload, key=due_reminder_key(result.borrowing_id), fire_at=fire_at)

    def _enqueue(
        self,
        result: DispatchResult,
        payload: NotificationPayload,
        key: Optional[str] = None,
        fire_at: Optional[datetime] = None,
    ) -> None:
        try:
            job = self.queue.enqueue(payload, key=key, fire_at=fire_at)
        except Exception as e:
            result.errors.append(f"enqueue {payload.kind}: {e}")
            logger.error(
                f"Failed to enqueue {payload.kind} for borrowing {result.borrowing_id}: {e}",
                exc_info=True,
                extra={
                    "event": "orchestrator.enqueue.failed",
                    "kind": payload.kind,
                    "error_type": type(e).__name__,
                },
            )
            return
        result.enqueued.append(job.key)

    def _cancel(self, result: DispatchResult, key: str) -> None:
        try:
            removed = self.queue.cancel(key)
        except Exception as e:
            result.errors.append(f"cancel {key}: {e}")
            logger.error(
                f"Failed to cancel {key}: {e}",
                exc_info=True,
                extra={
                    "event": "orchestrator.cancel.failed",
                    "job_key": key,
                    "error_type": type(e).__name__,
                },
            )
            return
        if removed:
            result.cancelled.append(key)

    def _finish(self, result: DispatchResult) -> DispatchResult:
        logger.info(
            f"Handled {result.event} for borrowing {result.borrowing_id}: "
            f"{len(result.enqueued)} enqueued, {len(result.cancelled)} cancelled, "
            f"{len(result.errors)} error(s)",
            extra={
                "event": f"orchestrator.{result.event}",
                "enqueued": result.enqueued,
                "cancelled": result.cancelled,
                "skipped": result.skipped,
                "error_count": len(result.errors),
            },
        )
        return result
