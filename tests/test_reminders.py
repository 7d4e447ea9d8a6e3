"""Tests for the daily reminder scan and its scheduler wiring."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger

from library_mail.config.models import ReminderConfig
from library_mail.domain.models import DueReminderPayload, JobStatus, NotificationKind
from library_mail.orchestrator import due_reminder_key
from library_mail.persistence import PersistenceError
from library_mail.queue import JobQueue, QueueUnavailableError
from library_mail.reminders import TRIGGER_ID, ReminderScheduler, ScanResult
from tests.helpers import FakeClock, make_database, seed_borrowing, seed_library


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = make_database()
    yield db
    db.close()


@pytest.fixture
def queue(database, clock):
    return JobQueue(database, clock=clock)


@pytest.fixture
def seeded(database):
    return seed_library(database)


@pytest.fixture
def scheduler(queue, database, clock):
    reminder_scheduler = ReminderScheduler(queue, database, config=ReminderConfig(), clock=clock)
    yield reminder_scheduler
    if reminder_scheduler.is_running():
        reminder_scheduler.shutdown()


def jobs_of(queue, kind):
    return queue.list_jobs(kind=kind)


class TestOverdueScan:
    """Tests for overdue reminders."""

    def test_overdue_borrowing_gets_reminder(self, scheduler, queue, database, seeded, clock):
        """Test an overdue borrowing produces an immediate overdue reminder."""
        borrowing_id = seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(days=3)
        )

        result = scheduler.scan_overdue(clock.now)

        assert result.overdue_enqueued == 1
        job = jobs_of(queue, NotificationKind.OVERDUE_REMINDER)[0]
        assert job.fire_at == clock.now
        assert job.borrowing_id == borrowing_id
        assert job.payload.days_overdue == 3
        assert job.payload.due_date == "February 27, 2026"
        assert job.payload.book_title == "The Left Hand of Darkness"

    def test_days_overdue_is_at_least_one(self, scheduler, queue, database, seeded, clock):
        """Test a borrowing due earlier today counts as one day overdue."""
        seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(hours=2)
        )

        scheduler.scan_overdue(clock.now)

        assert jobs_of(queue, NotificationKind.OVERDUE_REMINDER)[0].payload.days_overdue == 1

    def test_overdue_reminder_repeats_daily(self, scheduler, queue, database, seeded, clock):
        """Test a borrowing still out gets another reminder on every scan."""
        seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(days=1)
        )

        scheduler.scan_overdue(clock.now)
        clock.advance(days=1)
        scheduler.scan_overdue(clock.now)

        days = sorted(j.payload.days_overdue for j in jobs_of(queue, NotificationKind.OVERDUE_REMINDER))
        assert days == [1, 2]

    def test_returned_and_future_borrowings_ignored(self, scheduler, queue, database, seeded, clock):
        """Test returned and not-yet-due borrowings get no overdue reminder."""
        book, member = seeded["book_id"], seeded["member_id"]
        seed_borrowing(
            database,
            book,
            member,
            due_date=clock.now - timedelta(days=4),
            returned_at=clock.now - timedelta(days=1),
        )
        seed_borrowing(database, book, member, due_date=clock.now + timedelta(days=4))

        result = scheduler.scan_overdue(clock.now)

        assert result.overdue_enqueued == 0
        assert queue.count() == 0

    def test_member_without_email_skipped(self, scheduler, queue, database, clock):
        """Test borrowings whose member has no email are counted as skipped."""
        ids = seed_library(database, member_email=None)
        seed_borrowing(database, ids["book_id"], ids["member_id"], due_date=clock.now - timedelta(days=1))

        result = scheduler.scan_overdue(clock.now)

        assert result.skipped == 1
        assert queue.count() == 0

    def test_missing_display_fields_fall_back(self, scheduler, queue, database, clock):
        """Test unknown author and blank library name are replaced with placeholders."""
        ids = seed_library(database, library_name=None, book_author=None)
        seed_borrowing(database, ids["book_id"], ids["member_id"], due_date=clock.now - timedelta(days=1))

        scheduler.scan_overdue(clock.now)

        payload = jobs_of(queue, NotificationKind.OVERDUE_REMINDER)[0].payload
        assert payload.book_author == "Unknown"
        assert payload.library_name == "Library"

    def test_timezone_changes_day_count(self, queue, database, seeded):
        """Test calendar days are counted in the configured timezone."""
        clock = FakeClock(datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc))
        scheduler = ReminderScheduler(
            JobQueue(database, clock=clock),
            database,
            config=ReminderConfig(timezone="America/New_York"),
            clock=clock,
        )
        # Due 18:30 local on Feb 28, now 20:00 local on Mar 1 (two UTC dates apart)
        seed_borrowing(
            database,
            seeded["book_id"],
            seeded["member_id"],
            due_date=datetime(2026, 2, 28, 23, 30, tzinfo=timezone.utc),
        )

        scheduler.scan_overdue(clock.now)

        payload = jobs_of(queue, NotificationKind.OVERDUE_REMINDER)[0].payload
        assert payload.days_overdue == 1
        assert payload.due_date == "February 28, 2026"


class TestDueSoonScan:
    """Tests for due-soon reminders."""

    def test_due_soon_uses_reminder_key(self, scheduler, queue, database, seeded, clock):
        """Test a borrowing due within the lead window gets an immediate due reminder."""
        borrowing_id = seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now + timedelta(hours=20)
        )

        result = scheduler.scan_due_soon(clock.now)

        assert result.due_soon_enqueued == 1
        job = queue.get(due_reminder_key(borrowing_id))
        assert job.status == JobStatus.PENDING
        assert job.fire_at == clock.now

    def test_pending_delayed_reminder_is_pulled_forward(self, scheduler, queue, database, seeded, clock):
        """Test the scan replaces a pending reminder rather than adding a second one."""
        due = clock.now + timedelta(hours=20)
        borrowing_id = seed_borrowing(database, seeded["book_id"], seeded["member_id"], due_date=due)
        queue.enqueue(
            DueReminderPayload(to="ada@example.com", borrowing_id=borrowing_id, due_date="March 3, 2026"),
            key=due_reminder_key(borrowing_id),
            fire_at=clock.now + timedelta(hours=1),
        )

        scheduler.scan_due_soon(clock.now)

        assert queue.count(kind=NotificationKind.DUE_REMINDER) == 1
        assert queue.get(due_reminder_key(borrowing_id)).fire_at == clock.now

    def test_sent_reminder_not_repeated(self, scheduler, queue, database, seeded, clock):
        """Test a reminder already delivered for the same due date is not sent again."""
        due = clock.now + timedelta(hours=20)
        borrowing_id = seed_borrowing(database, seeded["book_id"], seeded["member_id"], due_date=due)
        queue.enqueue(
            DueReminderPayload(to="ada@example.com", borrowing_id=borrowing_id, due_date="March 3, 2026"),
            key=due_reminder_key(borrowing_id),
        )
        queue.complete(queue.dequeue("w-1"))

        result = scheduler.scan_due_soon(clock.now)

        assert result.due_soon_enqueued == 0
        assert result.skipped == 1
        assert queue.get(due_reminder_key(borrowing_id)).status == JobStatus.COMPLETED

    def test_without_dedupe_uses_fresh_keys(self, queue, database, seeded, clock):
        """Test disabling dedupe enqueues under a random key."""
        scheduler = ReminderScheduler(
            queue, database, config=ReminderConfig(dedupe_due_soon=False), clock=clock
        )
        borrowing_id = seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now + timedelta(hours=20)
        )

        scheduler.scan_due_soon(clock.now)
        scheduler.scan_due_soon(clock.now)

        jobs = jobs_of(queue, NotificationKind.DUE_REMINDER)
        assert len(jobs) == 2
        assert due_reminder_key(borrowing_id) not in [j.key for j in jobs]

    def test_outside_window_ignored(self, scheduler, queue, database, seeded, clock):
        """Test borrowings due after the lead window are left alone."""
        seed_borrowing(
            database, seeded["book_id"], seeded["member_id"], due_date=clock.now + timedelta(hours=30)
        )

        assert scheduler.scan_due_soon(clock.now).due_soon_enqueued == 0


class TestRunScan:
    """Tests for a full daily run."""

    def test_run_scan_covers_both_queries(self, scheduler, queue, database, seeded, clock):
        """Test one run enqueues overdue and due-soon reminders."""
        book, member = seeded["book_id"], seeded["member_id"]
        seed_borrowing(database, book, member, due_date=clock.now - timedelta(days=2))
        seed_borrowing(database, book, member, due_date=clock.now + timedelta(hours=5))

        result = scheduler.run_scan()

        assert isinstance(result, ScanResult)
        assert result.run_key == "2026-03-02"
        assert result.claimed
        assert result.overdue_enqueued == 1
        assert result.due_soon_enqueued == 1
        assert result.total_enqueued == 2
        assert result.finished_at is not None

    def test_second_run_same_day_is_skipped(self, scheduler, queue, database, seeded, clock):
        """Test a day's scan runs once even when fired twice."""
        seed_borrowing(database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(days=2))

        scheduler.run_scan()
        second = scheduler.run_scan()

        assert not second.claimed
        assert second.total_enqueued == 0
        assert queue.count(kind=NotificationKind.OVERDUE_REMINDER) == 1

    def test_other_process_claim_is_respected(self, queue, database, seeded, clock):
        """Test two schedulers sharing a store run the day's scan once."""
        seed_borrowing(database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(days=2))
        first = ReminderScheduler(queue, database, clock=clock, owner="a")
        second = ReminderScheduler(queue, database, clock=clock, owner="b")

        assert first.run_scan().claimed
        assert not second.run_scan().claimed
        assert queue.count(kind=NotificationKind.OVERDUE_REMINDER) == 1

    def test_trigger_now_bypasses_claim(self, scheduler, queue, database, seeded, clock):
        """Test a manual trigger runs even after the daily scan."""
        seed_borrowing(database, seeded["book_id"], seeded["member_id"], due_date=clock.now - timedelta(days=2))

        scheduler.run_scan()
        result = scheduler.trigger_now()

        assert result.overdue_enqueued == 1
        assert queue.count(kind=NotificationKind.OVERDUE_REMINDER) == 2

    def test_next_day_runs_again(self, scheduler, queue, database, seeded, clock):
        """Test the claim is per calendar day."""
        scheduler.run_scan()
        clock.advance(days=1)

        assert scheduler.run_scan().claimed

    def test_claim_failure_aborts_scan(self, database, clock):
        """Test an unreachable job store is reported on the result."""
        queue = Mock()
        queue.claim_trigger_run.side_effect = QueueUnavailableError("down")
        scheduler = ReminderScheduler(queue, database, clock=clock)

        result = scheduler.run_scan()

        assert not result.claimed
        assert result.errors
        queue.enqueue.assert_not_called()

    def test_enqueue_failure_continues(self, database, seeded, clock):
        """Test one failed enqueue does not stop the rest of the scan."""
        book, member = seeded["book_id"], seeded["member_id"]
        seed_borrowing(database, book, member, due_date=clock.now - timedelta(days=2))
        seed_borrowing(database, book, member, due_date=clock.now - timedelta(days=1))
        queue = Mock()
        queue.enqueue.side_effect = [QueueUnavailableError("down"), Mock(key="job-2")]
        scheduler = ReminderScheduler(queue, database, clock=clock)

        result = scheduler.scan_overdue(clock.now)

        assert result.overdue_enqueued == 1
        assert len(result.errors) == 1

    def test_query_failure_is_reported(self, scheduler, clock):
        """Test a failing borrowing query yields an error instead of raising."""
        with patch(
            "library_mail.reminders.service.BorrowingRepository.list_overdue",
            side_effect=PersistenceError("table missing"),
        ):
            result = scheduler.scan_overdue(clock.now)

        assert result.overdue_enqueued == 0
        assert "table missing" in result.errors[0]


class TestScheduling:
    """Tests for the APScheduler wiring."""

    def test_start_registers_daily_trigger(self, queue, database, clock):
        """Test start adds one cron job at the configured time and timezone."""
        scheduler = ReminderScheduler(
            queue,
            database,
            config=ReminderConfig(hour=8, minute=30, timezone="Europe/Berlin"),
            clock=clock,
        )
        scheduler.start()
        try:
            assert scheduler.is_running()
            job = scheduler.scheduler.get_job(TRIGGER_ID)
            assert isinstance(job.trigger, CronTrigger)
            assert str(job.trigger.timezone) == "Europe/Berlin"
            next_run = scheduler.get_next_run_time()
            assert (next_run.hour, next_run.minute) == (8, 30)
        finally:
            scheduler.shutdown()

        assert not scheduler.is_running()

    def test_shutdown_sets_event(self, queue, database, clock):
        """Test shutdown signals the coordination event."""
        event = Mock()
        scheduler = ReminderScheduler(queue, database, clock=clock, shutdown_event=event)

        scheduler.shutdown()

        event.set.assert_called_once()

    def test_next_run_time_before_start(self, scheduler):
        """Test no next run is reported before the trigger is registered."""
        assert scheduler.get_next_run_time() is None
