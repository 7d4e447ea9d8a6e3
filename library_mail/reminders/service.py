"""Daily reminder scan for overdue and due-soon borrowings.

Wraps APScheduler to fire one scan per day at a fixed wall-clock time. Each
scan enqueues an overdue-reminder for every unreturned borrowing past its
due date, and a due-reminder for every borrowing due within the lead
window. The scan never cancels anything.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from library_mail.circulation.repository import BorrowingRepository
from library_mail.config.models import ReminderConfig
from library_mail.domain.models import (
    Borrowing,
    DueReminderPayload,
    JobStatus,
    OverdueReminderPayload,
)
from library_mail.logging import get_logger
from library_mail.logging.context import log_context
from library_mail.orchestrator import due_reminder_key
from library_mail.persistence import Database, PersistenceError
from library_mail.queue import JobQueue, QueueError
from library_mail.utils.timestamps import (
    Clock,
    calendar_days_between,
    format_display_date,
    local_date,
    utc_now,
)

logger = get_logger(__name__, component="reminders")

TRIGGER_ID = "daily-reminder-scan"

UNKNOWN_BOOK_FIELD = "Unknown"
DEFAULT_LIBRARY_NAME = "Library"


@dataclass
class ScanResult:
    """Outcome of one reminder scan.

    Attributes:
        run_key: Local date the scan ran for
        started_at: Scan start (UTC)
        finished_at: Scan end (UTC)
        overdue_enqueued: Overdue-reminder jobs created
        due_soon_enqueued: Due-reminder jobs created or moved forward
        skipped: Borrowings left out (no email, reminder already sent)
        errors: Failures that were caught and logged
        claimed: False when another process already ran this day's scan
    """

    run_key: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    overdue_enqueued: int = 0
    due_soon_enqueued: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    claimed: bool = True

    @property
    def total_enqueued(self) -> int:
        return self.overdue_enqueued + self.due_soon_enqueued


class ReminderScheduler:
    """Registers and runs the daily reminder scan."""

    def __init__(
        self,
        queue: JobQueue,
        database: Database,
        config: Optional[ReminderConfig] = None,
        clock: Clock = utc_now,
        shutdown_event: Optional[threading.Event] = None,
        owner: Optional[str] = None,
    ):
        """
        Args:
            queue: Job queue reminders are enqueued into
            database: Store holding the borrowings table
            config: Scan time, timezone, lead window and dedupe setting
            clock: Source of "now" (injectable for tests)
            shutdown_event: Optional event to set on shutdown for coordination
            owner: Identifier recorded when claiming a day's run
        """
        self.queue = queue
        self.database = database
        self.config = config or ReminderConfig()
        self.clock = clock
        self.shutdown_event = shutdown_event
        self.owner = owner or f"scheduler-{uuid.uuid4().hex[:8]}"
        self._lock = threading.Lock()

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,  # Prevent overlapping runs
                "coalesce": True,  # Collapse missed fires into one
                "misfire_grace_time": 3600,
            },
            timezone=self.config.tz,
        )

    def start(self) -> None:
        """Register the daily trigger and start the scheduler thread."""
        trigger = CronTrigger(
            hour=self.config.hour,
            minute=self.config.minute,
            timezone=self.config.tz,
        )

        self.scheduler.add_job(
            func=self.run_scan,
            trigger=trigger,
            id=TRIGGER_ID,
            name="Daily reminder scan",
            replace_existing=True,
        )
        self.scheduler.start()

        next_run = self.get_next_run_time()
        logger.info(
            f"Reminder scan scheduled daily at {self.config.hour:02d}:{self.config.minute:02d} "
            f"{self.config.timezone}",
            extra={
                "event": "reminders.scheduler.started",
                "trigger_id": TRIGGER_ID,
                "next_run_time": next_run.isoformat() if next_run else None,
            },
        )

    def shutdown(self, wait: bool = False) -> None:
        """Stop the scheduler.

        Args:
            wait: If True, wait for a running scan to complete before returning
        """
        logger.info(
            "Shutting down reminder scheduler",
            extra={"event": "reminders.scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        if self.shutdown_event:
            self.shutdown_event.set()

        logger.info("Reminder scheduler stopped", extra={"event": "reminders.scheduler.stopped"})

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        """Next scheduled scan, or None if not scheduled."""
        job = self.scheduler.get_job(TRIGGER_ID)
        return job.next_run_time if job else None

    def trigger_now(self) -> ScanResult:
        """Run a scan synchronously in the current thread, bypassing the daily claim."""
        logger.info("Triggering immediate reminder scan", extra={"event": "reminders.trigger_now"})
        return self.run_scan(force=True)

    def run_scan(self, force: bool = False) -> ScanResult:
        """Run one scan: overdue reminders first, then due-soon reminders.

        Unless ``force`` is set, the scan first claims today's run in the
        shared job store; a process that loses the claim does nothing.

        Args:
            force: Skip the once-per-day claim

        Returns:
            ScanResult with counts and caught errors
        """
        now = self.clock()
        result = self._new_result(now)
        run_key = result.run_key

        if not self._lock.acquire(blocking=False):
            logger.warning(
                "Reminder scan skipped: previous scan still in progress",
                extra={"event": "reminders.scan.skipped", "reason": "lock_held"},
            )
            result.claimed = False
            result.finished_at = self.clock()
            return result

        try:
            with log_context(scan_run=run_key, scan_id=uuid.uuid4().hex[:12]):
                if not force and not self._claim_run(run_key, result):
                    result.finished_at = self.clock()
                    return result

                logger.info(
                    f"Reminder scan started for {run_key}",
                    extra={"event": "reminders.scan.started", "forced": force},
                )

                self.scan_overdue(now, result)
                self.scan_due_soon(now, result)

                result.finished_at = self.clock()
                logger.info(
                    f"Reminder scan finished: {result.overdue_enqueued} overdue, "
                    f"{result.due_soon_enqueued} due soon, {result.skipped} skipped, "
                    f"{len(result.errors)} error(s)",
                    extra={
                        "event": "reminders.scan.completed",
                        "overdue_enqueued": result.overdue_enqueued,
                        "due_soon_enqueued": result.due_soon_enqueued,
                        "skipped": result.skipped,
                        "error_count": len(result.errors),
                    },
                )
                return result
        finally:
            self._lock.release()

    def _new_result(self, now: datetime) -> ScanResult:
        return ScanResult(run_key=local_date(now, self.config.tz).isoformat(), started_at=now)

    def _claim_run(self, run_key: str, result: ScanResult) -> bool:
        try:
            claimed = self.queue.claim_trigger_run(TRIGGER_ID, run_key, owner=self.owner)
        except QueueError as e:
            result.claimed = False
            result.errors.append(f"claim run: {e}")
            logger.error(
                f"Could not claim reminder scan for {run_key}: {e}",
                extra={"event": "reminders.scan.claim_failed", "error_type": type(e).__name__},
            )
            return False

        if not claimed:
            result.claimed = False
            logger.info(
                f"Reminder scan for {run_key} already claimed by another process",
                extra={"event": "reminders.scan.skipped", "reason": "already_claimed"},
            )
        return claimed

    def _load(self, query: str, now: datetime, result: ScanResult) -> List[Borrowing]:
        try:
            with self.database.session() as session:
                repo = BorrowingRepository(session)
                if query == "overdue":
                    return repo.list_overdue(now)
                return repo.list_due_between(now, now + self.config.lead_time)
        except PersistenceError as e:
            result.errors.append(f"load {query} borrowings: {e}")
            logger.error(
                f"Failed to load {query} borrowings: {e}",
                extra={"event": "reminders.scan.query_failed", "query": query},
            )
            return []

    def scan_overdue(self, now: datetime, result: Optional[ScanResult] = None) -> ScanResult:
        """Enqueue an immediate overdue-reminder for every overdue borrowing.

        Not deduplicated: a borrowing overdue for several days gets one
        reminder per scan until it is returned.
        """
        result = result or self._new_result(now)
        borrowings = self._load("overdue", now, result)

        logger.info(
            f"Found {len(borrowings)} overdue borrowing(s)",
            extra={"event": "reminders.overdue.found", "count": len(borrowings)},
        )

        for borrowing in borrowings:
            if not borrowing.member_email:
                result.skipped += 1
                continue

            days_overdue = max(calendar_days_between(borrowing.due_date, now, self.config.tz), 1)
            payload = OverdueReminderPayload(
                to=borrowing.member_email,
                member_name=borrowing.member_name,
                book_title=borrowing.book_title or UNKNOWN_BOOK_FIELD,
                book_author=borrowing.book_author or UNKNOWN_BOOK_FIELD,
                library_name=borrowing.library_name or DEFAULT_LIBRARY_NAME,
                due_date=format_display_date(borrowing.due_date, self.config.tz),
                days_overdue=days_overdue,
                borrowing_id=borrowing.id,
            )
            if self._enqueue(payload, borrowing, result):
                result.overdue_enqueued += 1

        return result

    def scan_due_soon(self, now: datetime, result: Optional[ScanResult] = None) -> ScanResult:
        """Enqueue an immediate due-reminder for borrowings due within the lead window.

        With ``dedupe_due_soon`` the job goes under the borrowing's
        due-reminder key: a pending delayed reminder is moved to now, and a
        reminder already sent (or being sent) for the same due date is not
        repeated.
        """
        result = result or self._new_result(now)
        borrowings = self._load("due-soon", now, result)

        logger.info(
            f"Found {len(borrowings)} borrowing(s) due within {self.config.lead_hours}h",
            extra={"event": "reminders.due_soon.found", "count": len(borrowings)},
        )

        for borrowing in borrowings:
            if not borrowing.member_email:
                result.skipped += 1
                continue

            payload = DueReminderPayload(
                to=borrowing.member_email,
                member_name=borrowing.member_name,
                book_title=borrowing.book_title or UNKNOWN_BOOK_FIELD,
                book_author=borrowing.book_author or UNKNOWN_BOOK_FIELD,
                library_name=borrowing.library_name or DEFAULT_LIBRARY_NAME,
                due_date=format_display_date(borrowing.due_date, self.config.tz),
                borrowing_id=borrowing.id,
            )

            key = None
            if self.config.dedupe_due_soon:
                key = due_reminder_key(borrowing.id)
                if self._already_reminded(key, payload, result):
                    result.skipped += 1
                    continue

            if self._enqueue(payload, borrowing, result, key=key):
                result.due_soon_enqueued += 1

        return result

    def _already_reminded(self, key: str, payload: DueReminderPayload, result: ScanResult) -> bool:
        try:
            existing = self.queue.get(key)
        except QueueError as e:
            result.errors.append(f"lookup {key}: {e}")
            logger.error(
                f"Failed to look up {key}: {e}",
                extra={"event": "reminders.lookup.failed", "job_key": key},
            )
            return False

        if existing is None or existing.status not in (JobStatus.ACTIVE, JobStatus.COMPLETED):
            return False

        same_due_date = getattr(existing.payload, "due_date", None) == payload.due_date
        if same_due_date:
            logger.debug(
                f"Due-reminder {key} already {existing.status.value}; not repeated",
                extra={"event": "reminders.due_soon.deduplicated", "job_key": key},
            )
        return same_due_date

    def _enqueue(
        self,
        payload,
        borrowing: Borrowing,
        result: ScanResult,
        key: Optional[str] = None,
    ) -> bool:
        try:
            self.queue.enqueue(payload, key=key)
        except QueueError as e:
            result.errors.append(f"enqueue {payload.kind} for {borrowing.id}: {e}")
            logger.error(
                f"Failed to enqueue {payload.kind} for borrowing {borrowing.id}: {e}",
                extra={
                    "event": "reminders.enqueue.failed",
                    "kind": payload.kind,
                    "borrowing_id": borrowing.id,
                    "recipient": borrowing.member_email,
                },
            )
            return False
        return True
