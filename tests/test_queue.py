"""Tests for the SQL-backed notification job queue."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from library_mail.domain.models import (
    BorrowedPayload,
    DueReminderPayload,
    JobStatus,
    NotificationKind,
    ReturnedPayload,
)
from library_mail.queue import (
    JobNotFoundError,
    JobQueue,
    QueueError,
    QueueUnavailableError,
)
from tests.helpers import FakeClock, make_database


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = make_database(circulation=False)
    yield db
    db.close()


@pytest.fixture
def queue(database, clock):
    return JobQueue(database, clock=clock)


def borrowed(borrowing_id="b-1", to="ada@example.com"):
    return BorrowedPayload(to=to, borrowing_id=borrowing_id, book_title="Dune")


def reminder(borrowing_id="b-1", due_date="March 16, 2026"):
    return DueReminderPayload(to="ada@example.com", borrowing_id=borrowing_id, due_date=due_date)


class TestEnqueue:
    """Tests for adding jobs."""

    def test_enqueue_immediate(self, queue, clock):
        """Test a job without delay is eligible now."""
        job = queue.enqueue(borrowed())

        stored = queue.get(job.key)
        assert stored.status == JobStatus.PENDING
        assert stored.fire_at == clock.now
        assert stored.kind == NotificationKind.BOOK_BORROWED
        assert stored.payload == borrowed()

    def test_enqueue_generates_unique_keys(self, queue):
        """Test jobs without a key never collide."""
        first = queue.enqueue(borrowed())
        second = queue.enqueue(borrowed())

        assert first.key != second.key
        assert queue.count() == 2

    def test_enqueue_with_delay(self, queue, clock):
        """Test a delay pushes the fire time forward."""
        job = queue.enqueue(borrowed(), delay=timedelta(days=13))

        assert job.fire_at == clock.now + timedelta(days=13)

    def test_enqueue_with_delay_in_seconds(self, queue, clock):
        """Test a numeric delay is read as seconds."""
        job = queue.enqueue(borrowed(), delay=90)

        assert job.fire_at == clock.now + timedelta(seconds=90)

    def test_negative_delay_is_immediate(self, queue, clock):
        """Test a negative delay does not schedule the job in the past."""
        job = queue.enqueue(borrowed(), delay=timedelta(hours=-2))

        assert job.fire_at == clock.now

    def test_fire_at_takes_precedence(self, queue, clock):
        """Test an absolute fire time wins over a delay."""
        fire_at = clock.now + timedelta(days=2)
        job = queue.enqueue(borrowed(), delay=timedelta(days=5), fire_at=fire_at)

        assert job.fire_at == fire_at

    def test_max_attempts_default_and_override(self, database, clock):
        """Test the queue default applies unless the job overrides it."""
        queue = JobQueue(database, clock=clock, default_max_attempts=4)

        assert queue.enqueue(borrowed()).max_attempts == 4
        assert queue.enqueue(borrowed(), max_attempts=1).max_attempts == 1

    def test_same_key_overwrites(self, queue, clock):
        """Test enqueueing under an existing key replaces the job."""
        queue.enqueue(reminder(due_date="March 16, 2026"), key="due-reminder-b-1",
                      fire_at=clock.now + timedelta(days=13))
        queue.enqueue(reminder(due_date="March 23, 2026"), key="due-reminder-b-1",
                      fire_at=clock.now + timedelta(days=20))

        assert queue.count() == 1
        stored = queue.get("due-reminder-b-1")
        assert stored.payload.due_date == "March 23, 2026"
        assert stored.fire_at == clock.now + timedelta(days=20)

    def test_overwrite_resets_finished_job(self, queue, clock):
        """Test overwriting a completed job makes it pending again."""
        queue.enqueue(reminder(), key="due-reminder-b-1")
        job = queue.dequeue("w-1")
        queue.complete(job)

        queue.enqueue(reminder(), key="due-reminder-b-1")

        stored = queue.get("due-reminder-b-1")
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 0
        assert stored.finished_at is None


class TestCancel:
    """Tests for removing pending jobs."""

    def test_cancel_pending(self, queue):
        """Test a pending job is removed and True is returned."""
        queue.enqueue(reminder(), key="due-reminder-b-1", delay=timedelta(days=1))

        assert queue.cancel("due-reminder-b-1") is True
        assert queue.get("due-reminder-b-1") is None

    def test_cancel_unknown_is_noop(self, queue):
        """Test cancelling a missing key returns False without error."""
        assert queue.cancel("due-reminder-nope") is False

    def test_cancel_leaves_active_job(self, queue):
        """Test a job being delivered is not cancelled."""
        queue.enqueue(reminder(), key="due-reminder-b-1")
        queue.dequeue("w-1")

        assert queue.cancel("due-reminder-b-1") is False
        assert queue.get("due-reminder-b-1").status == JobStatus.ACTIVE


class TestQueries:
    """Tests for read-only queue queries."""

    def test_pending_for_borrowing(self, queue, clock):
        """Test pending jobs are listed per borrowing, soonest first."""
        queue.enqueue(reminder("b-1"), key="due-reminder-b-1", delay=timedelta(days=13))
        queue.enqueue(borrowed("b-1"))
        queue.enqueue(borrowed("b-2"))

        jobs = queue.pending_for_borrowing("b-1")

        assert [j.kind for j in jobs] == [
            NotificationKind.BOOK_BORROWED,
            NotificationKind.DUE_REMINDER,
        ]
        assert len(queue.pending_for_borrowing("b-1", kind=NotificationKind.DUE_REMINDER)) == 1

    def test_count_by_status_and_kind(self, queue):
        """Test count filters by status and kind."""
        queue.enqueue(borrowed())
        queue.enqueue(ReturnedPayload(to="ada@example.com"))

        assert queue.count() == 2
        assert queue.count(status=JobStatus.PENDING) == 2
        assert queue.count(kind=NotificationKind.BOOK_RETURNED) == 1
        assert queue.count(status=JobStatus.FAILED) == 0

    def test_list_jobs_filters(self, queue):
        """Test list_jobs filters by status."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")
        queue.fail(job, "HTTP 422: invalid")
        queue.enqueue(borrowed())

        failed = queue.list_jobs(status=JobStatus.FAILED)

        assert [j.key for j in failed] == [job.key]
        assert failed[0].last_error == "HTTP 422: invalid"


class TestDequeue:
    """Tests for claiming jobs."""

    def test_dequeue_claims_due_job(self, queue):
        """Test dequeue moves the job to active and counts the attempt."""
        enqueued = queue.enqueue(borrowed())

        job = queue.dequeue("w-1")

        assert job.key == enqueued.key
        assert job.status == JobStatus.ACTIVE
        assert job.attempts == 1
        assert job.claim_token != enqueued.claim_token

    def test_dequeue_skips_future_jobs(self, queue, clock):
        """Test a delayed job is not handed out before its fire time."""
        queue.enqueue(borrowed(), delay=timedelta(minutes=5))

        assert queue.dequeue("w-1") is None

        clock.advance(minutes=5)
        assert queue.dequeue("w-1") is not None

    def test_dequeue_with_explicit_now(self, queue, clock):
        """Test a reference time can be passed explicitly."""
        queue.enqueue(borrowed(), delay=timedelta(hours=1))

        assert queue.dequeue("w-1", now=clock.now + timedelta(hours=2)) is not None

    def test_dequeue_oldest_first(self, queue, clock):
        """Test jobs are claimed in fire-time order."""
        later = queue.enqueue(borrowed("late"), fire_at=clock.now - timedelta(minutes=1))
        earlier = queue.enqueue(borrowed("early"), fire_at=clock.now - timedelta(minutes=10))

        assert queue.dequeue("w-1").key == earlier.key
        assert queue.dequeue("w-1").key == later.key
        assert queue.dequeue("w-1") is None

    def test_claimed_job_not_handed_out_twice(self, queue):
        """Test a second worker does not get an active job."""
        queue.enqueue(borrowed())

        assert queue.dequeue("w-1") is not None
        assert queue.dequeue("w-2") is None


class TestTransitions:
    """Tests for completing, retrying and failing claimed jobs."""

    def test_complete(self, queue, clock):
        """Test complete records the finish time."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")

        assert queue.complete(job) is True

        stored = queue.get(job.key)
        assert stored.status == JobStatus.COMPLETED
        assert stored.finished_at == clock.now

    def test_retry_later(self, queue, clock):
        """Test retry_later returns the job to pending at the given time."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")

        assert queue.retry_later(job, clock.now + timedelta(seconds=2), "HTTP 503") is True

        stored = queue.get(job.key)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error == "HTTP 503"
        assert queue.dequeue("w-1") is None

        clock.advance(seconds=2)
        assert queue.dequeue("w-1").attempts == 2

    def test_fail(self, queue):
        """Test fail marks the job failed with the error."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")

        assert queue.fail(job, "HTTP 422") is True
        assert queue.get(job.key).status == JobStatus.FAILED

    def test_stale_claim_after_overwrite(self, queue):
        """Test a worker cannot complete a job replaced while it was delivering."""
        queue.enqueue(reminder(due_date="March 16, 2026"), key="due-reminder-b-1")
        job = queue.dequeue("w-1")

        queue.enqueue(reminder(due_date="March 23, 2026"), key="due-reminder-b-1")

        assert queue.complete(job) is False
        stored = queue.get("due-reminder-b-1")
        assert stored.status == JobStatus.PENDING
        assert stored.payload.due_date == "March 23, 2026"

    def test_transition_requires_active_state(self, queue):
        """Test a completed job cannot be completed or failed again."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")
        queue.complete(job)

        assert queue.complete(job) is False
        assert queue.fail(job, "late") is False


class TestMaintenance:
    """Tests for stale-claim recovery, pruning and manual retry."""

    def test_recover_stale_releases_abandoned_jobs(self, queue, clock):
        """Test jobs held past the lease go back to pending."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")

        clock.advance(minutes=10)
        assert queue.recover_stale(timedelta(minutes=5)) == 1

        stored = queue.get(job.key)
        assert stored.status == JobStatus.PENDING
        assert "Lease expired" in stored.last_error
        assert queue.complete(job) is False

    def test_recover_stale_ignores_fresh_claims(self, queue, clock):
        """Test a claim younger than the lease is left alone."""
        queue.enqueue(borrowed())
        queue.dequeue("w-1")

        clock.advance(minutes=1)
        assert queue.recover_stale(timedelta(minutes=5)) == 0

    def test_recover_stale_fails_exhausted_jobs(self, queue, clock):
        """Test an abandoned job with no attempts left is failed."""
        queue.enqueue(borrowed(), max_attempts=1)
        job = queue.dequeue("w-1")

        clock.advance(minutes=10)
        queue.recover_stale(timedelta(minutes=5))

        assert queue.get(job.key).status == JobStatus.FAILED

    def test_prune_keeps_most_recent(self, queue, clock):
        """Test prune keeps the newest N completed and M failed jobs."""
        for _ in range(4):
            queue.enqueue(borrowed())
            queue.complete(queue.dequeue("w-1"))
            clock.advance(seconds=1)
        for _ in range(3):
            queue.enqueue(borrowed())
            queue.fail(queue.dequeue("w-1"), "boom")
            clock.advance(seconds=1)
        queue.enqueue(borrowed())

        removed = queue.prune(keep_completed=2, keep_failed=1)

        assert removed == 4
        assert queue.count(status=JobStatus.COMPLETED) == 2
        assert queue.count(status=JobStatus.FAILED) == 1
        assert queue.count(status=JobStatus.PENDING) == 1

    def test_retry_failed(self, queue, clock):
        """Test a failed job can be put back for immediate delivery."""
        queue.enqueue(borrowed())
        job = queue.dequeue("w-1")
        queue.fail(job, "boom")

        requeued = queue.retry_failed(job.key)

        assert requeued.status == JobStatus.PENDING
        assert requeued.attempts == 0
        assert queue.dequeue("w-1").key == job.key

    def test_retry_failed_unknown(self, queue):
        """Test retry_failed raises for a key with no failed job."""
        queue.enqueue(borrowed(), key="pending-job")

        with pytest.raises(JobNotFoundError):
            queue.retry_failed("pending-job")


class TestTriggerRuns:
    """Tests for once-per-run trigger claims."""

    def test_first_claim_wins(self, queue):
        """Test only the first claim for a run key succeeds."""
        assert queue.claim_trigger_run("daily-reminder-scan", "2026-03-02", owner="a") is True
        assert queue.claim_trigger_run("daily-reminder-scan", "2026-03-02", owner="b") is False

    def test_different_run_keys_are_independent(self, queue):
        """Test each day has its own claim."""
        assert queue.claim_trigger_run("daily-reminder-scan", "2026-03-02")
        assert queue.claim_trigger_run("daily-reminder-scan", "2026-03-03")


class TestErrors:
    """Tests for store error translation."""

    def test_operational_error_becomes_unavailable(self, queue):
        """Test connection-level failures surface as QueueUnavailableError."""
        with patch.object(
            queue.database, "session", side_effect=OperationalError("SELECT 1", {}, Exception("down"))
        ):
            with pytest.raises(QueueUnavailableError):
                queue.enqueue(borrowed())

    def test_uninitialized_store_is_unavailable(self, clock):
        """Test a closed store surfaces as QueueUnavailableError."""
        database = make_database(circulation=False)
        database.close()
        queue = JobQueue(database, clock=clock)

        with pytest.raises(QueueUnavailableError):
            queue.cancel("anything")

    def test_unavailable_is_a_queue_error(self):
        """Test callers can catch every queue failure with QueueError."""
        assert issubclass(QueueUnavailableError, QueueError)
