"""Durable notification job queue backed by a SQL store.

``JobQueue`` owns every read and write of the notification_jobs and
trigger_runs tables. Each public method runs in its own short transaction,
so the queue can be shared by the orchestrator (request path), the worker
pool (background threads) and the reminder scheduler at the same time.

State machine of a job row::

    pending --dequeue--> active --complete--> completed
       ^                   |
       +---retry_later-----+--fail--> failed
       +---recover_stale---+

Transitions out of ``active`` are guarded by the claim token handed out by
``dequeue``. A worker holding an outdated token (its job was overwritten by
a newer enqueue, or recovered after a lease timeout) gets ``False`` back
instead of clobbering the newer state.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Generator, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from library_mail.domain.models import (
    JobStatus,
    NotificationJob,
    NotificationKind,
    NotificationPayload,
    dump_payload,
)
from library_mail.logging import get_logger
from library_mail.persistence import Database, DatabaseConnectionError
from library_mail.utils.timestamps import Clock, ensure_utc, to_storage, utc_now

from .exceptions import DuplicateKeyError, JobNotFoundError, QueueError, QueueUnavailableError
from .schema import NotificationJobModel, TriggerRunModel

logger = get_logger(__name__, component="queue")

# Lost compare-and-set races before dequeue gives up for this poll
_MAX_CLAIM_ATTEMPTS = 5


def _new_token() -> str:
    return uuid.uuid4().hex


class JobQueue:
    """Durable queue of notification jobs.

    Example:
        >>> queue = JobQueue(database)
        >>> queue.enqueue(payload, delay=timedelta(days=13), key="due-reminder-42")
        >>> job = queue.dequeue("worker-1")
        >>> queue.complete(job)
    """

    def __init__(
        self,
        database: Database,
        clock: Clock = utc_now,
        default_max_attempts: int = 3,
    ):
        """
        Args:
            database: Initialized store holding the queue tables
            clock: Source of "now" (injectable for tests)
            default_max_attempts: Attempts granted to jobs enqueued without an explicit value
        """
        self.database = database
        self.clock = clock
        self.default_max_attempts = default_max_attempts

    @contextmanager
    def _transaction(self, operation: str) -> Generator[Session, None, None]:
        """Run one queue operation in a transaction, translating store errors."""
        try:
            with self.database.session() as session:
                yield session
        except QueueError:
            raise
        except IntegrityError as e:
            raise DuplicateKeyError(f"Constraint violation during {operation}: {e}") from e
        except (OperationalError, DatabaseConnectionError) as e:
            logger.error(
                f"Job store unavailable during {operation}: {e}",
                extra={"event": "queue.unavailable", "operation": operation},
            )
            raise QueueUnavailableError(f"Job store unavailable during {operation}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(
                f"Job store error during {operation}: {e}",
                exc_info=True,
                extra={"event": "queue.error", "operation": operation},
            )
            raise QueueError(f"Failed to {operation}: {e}") from e

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        payload: NotificationPayload,
        delay: Optional[Union[timedelta, float]] = None,
        key: Optional[str] = None,
        fire_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> NotificationJob:
        """Add a job to the queue.

        A job enqueued under an existing key replaces it (last write wins):
        the row returns to pending with the new payload and fire time, and
        any worker still holding the old claim loses it.

        Args:
            payload: Notification payload
            delay: Time until the job becomes eligible (timedelta or seconds)
            key: Job key; a random key is generated when omitted
            fire_at: Absolute eligibility time; takes precedence over delay
            max_attempts: Delivery attempts before the job is failed

        Returns:
            The stored job

        Raises:
            QueueUnavailableError: If the store cannot be reached
            QueueError: On any other store failure
        """
        now = self.clock()
        if fire_at is not None:
            eligible_at = ensure_utc(fire_at)
        elif delay is not None:
            if not isinstance(delay, timedelta):
                delay = timedelta(seconds=delay)
            eligible_at = now + max(delay, timedelta(0))
        else:
            eligible_at = now

        job = NotificationJob(
            key=key or uuid.uuid4().hex,
            payload=payload,
            fire_at=eligible_at,
            max_attempts=max_attempts or self.default_max_attempts,
            claim_token=_new_token(),
            created_at=now,
            updated_at=now,
        )

        # A concurrent insert of the same key surfaces as DuplicateKeyError;
        # the second pass then takes the overwrite branch.
        for attempt in range(2):
            try:
                with self._transaction("enqueue job") as session:
                    previous_status = self._write_job(session, job)
                break
            except DuplicateKeyError:
                if attempt == 1:
                    raise

        if previous_status is not None:
            logger.info(
                f"Replaced job {job.key} (was {previous_status})",
                extra={
                    "event": "queue.job.replaced",
                    "job_key": job.key,
                    "kind": job.kind.value,
                    "previous_status": previous_status,
                    "fire_at": job.fire_at.isoformat(),
                },
            )
        else:
            logger.info(
                f"Enqueued {job.kind.value} job {job.key}",
                extra={
                    "event": "queue.job.enqueued",
                    "job_key": job.key,
                    "kind": job.kind.value,
                    "borrowing_id": job.borrowing_id,
                    "fire_at": job.fire_at.isoformat(),
                },
            )
        return job

    def _write_job(self, session: Session, job: NotificationJob) -> Optional[str]:
        """Insert the job or overwrite the row under its key.

        Returns:
            Status of the replaced row, or None for a fresh insert
        """
        existing = session.get(NotificationJobModel, job.key)
        if existing is None:
            session.add(NotificationJobModel.from_domain(job))
            session.flush()
            return None

        previous_status = existing.status
        existing.kind = job.kind.value
        existing.recipient = job.payload.to
        existing.borrowing_id = job.borrowing_id
        existing.payload = dump_payload(job.payload)
        existing.status = JobStatus.PENDING.value
        existing.fire_at = to_storage(job.fire_at)
        existing.attempts = 0
        existing.max_attempts = job.max_attempts
        existing.last_error = None
        existing.claim_token = job.claim_token
        existing.claimed_by = None
        existing.claimed_at = None
        existing.created_at = to_storage(job.created_at)
        existing.updated_at = to_storage(job.updated_at)
        existing.finished_at = None
        session.flush()
        return previous_status

    def cancel(self, key: str) -> bool:
        """Remove a pending job.

        Unknown keys and jobs that are active, completed or failed are left
        alone, so cancelling is always safe to call.

        Args:
            key: Job key

        Returns:
            True if a pending job was removed

        Raises:
            QueueUnavailableError: If the store cannot be reached
        """
        with self._transaction("cancel job") as session:
            result = session.execute(
                delete(NotificationJobModel).where(
                    NotificationJobModel.key == key,
                    NotificationJobModel.status == JobStatus.PENDING.value,
                )
            )
            removed = result.rowcount > 0

        if removed:
            logger.info(
                f"Cancelled job {key}",
                extra={"event": "queue.job.cancelled", "job_key": key},
            )
        else:
            logger.debug(
                f"Nothing pending to cancel for {key}",
                extra={"event": "queue.job.cancel_noop", "job_key": key},
            )
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[NotificationJob]:
        """Fetch a job by key, or None."""
        with self._transaction("get job") as session:
            model = session.get(NotificationJobModel, key)
            return model.to_domain() if model is not None else None

    def pending_for_borrowing(
        self, borrowing_id: str, kind: Optional[NotificationKind] = None
    ) -> List[NotificationJob]:
        """List pending jobs that refer to a borrowing, oldest fire time first."""
        with self._transaction("list pending jobs") as session:
            stmt = select(NotificationJobModel).where(
                NotificationJobModel.borrowing_id == borrowing_id,
                NotificationJobModel.status == JobStatus.PENDING.value,
            )
            if kind is not None:
                stmt = stmt.where(NotificationJobModel.kind == NotificationKind(kind).value)
            stmt = stmt.order_by(NotificationJobModel.fire_at.asc())
            return [model.to_domain() for model in session.execute(stmt).scalars().all()]

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[NotificationKind] = None,
        limit: int = 100,
    ) -> List[NotificationJob]:
        """List jobs, most recently updated first."""
        with self._transaction("list jobs") as session:
            stmt = select(NotificationJobModel)
            if status is not None:
                stmt = stmt.where(NotificationJobModel.status == JobStatus(status).value)
            if kind is not None:
                stmt = stmt.where(NotificationJobModel.kind == NotificationKind(kind).value)
            stmt = stmt.order_by(NotificationJobModel.updated_at.desc()).limit(limit)
            return [model.to_domain() for model in session.execute(stmt).scalars().all()]

    def count(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[NotificationKind] = None,
    ) -> int:
        """Count jobs, optionally filtered by status and kind."""
        with self._transaction("count jobs") as session:
            stmt = select(func.count()).select_from(NotificationJobModel)
            if status is not None:
                stmt = stmt.where(NotificationJobModel.status == JobStatus(status).value)
            if kind is not None:
                stmt = stmt.where(NotificationJobModel.kind == NotificationKind(kind).value)
            return session.execute(stmt).scalar_one()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, worker_id: str, now: Optional[datetime] = None) -> Optional[NotificationJob]:
        """Claim the next eligible job.

        The oldest pending job whose fire time has passed is moved to
        ``active`` with a fresh claim token and its attempt counter
        incremented. The claim is a compare-and-set on (status, token), so
        two workers racing for the same row never both win it.

        A claimed row whose stored payload no longer validates is marked
        ``failed`` in the same transaction and the next candidate is tried.

        Args:
            worker_id: Identifier of the claiming worker (for diagnostics)
            now: Reference time (defaults to the queue clock)

        Returns:
            The claimed job, or None if nothing is eligible

        Raises:
            QueueUnavailableError: If the store cannot be reached
        """
        now = ensure_utc(now) if now is not None else self.clock()
        now_str = to_storage(now)

        lost_races = 0
        while lost_races < _MAX_CLAIM_ATTEMPTS:
            with self._transaction("dequeue job") as session:
                candidate = session.execute(
                    select(NotificationJobModel.key, NotificationJobModel.claim_token)
                    .where(
                        NotificationJobModel.status == JobStatus.PENDING.value,
                        NotificationJobModel.fire_at <= now_str,
                    )
                    .order_by(
                        NotificationJobModel.fire_at.asc(),
                        NotificationJobModel.created_at.asc(),
                    )
                    .limit(1)
                ).first()

                if candidate is None:
                    return None

                key, token = candidate
                new_token = _new_token()
                result = session.execute(
                    update(NotificationJobModel)
                    .where(
                        NotificationJobModel.key == key,
                        NotificationJobModel.status == JobStatus.PENDING.value,
                        NotificationJobModel.claim_token == token,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=NotificationJobModel.attempts + 1,
                        claim_token=new_token,
                        claimed_by=worker_id,
                        claimed_at=now_str,
                        updated_at=now_str,
                    )
                )

                if result.rowcount == 1:
                    model = session.execute(
                        select(NotificationJobModel)
                        .where(NotificationJobModel.key == key)
                        .execution_options(populate_existing=True)
                    ).scalar_one()
                    try:
                        job = model.to_domain()
                    except ValidationError as e:
                        self._fail_unreadable(model, e, now_str)
                        continue

                    logger.debug(
                        f"Claimed job {key}",
                        extra={
                            "event": "queue.job.claimed",
                            "job_key": key,
                            "worker_id": worker_id,
                            "attempt": job.attempts,
                        },
                    )
                    return job

            lost_races += 1
            logger.debug(
                f"Lost claim race for {key}",
                extra={"event": "queue.job.claim_lost", "job_key": key, "worker_id": worker_id},
            )

        return None

    @staticmethod
    def _fail_unreadable(model: NotificationJobModel, error: ValidationError, now_str: str) -> None:
        """Fail a claimed row whose stored payload no longer validates."""
        model.status = JobStatus.FAILED.value
        model.last_error = f"Unreadable payload: {error}"
        model.finished_at = now_str
        model.updated_at = now_str
        logger.error(
            f"Job {model.key} has an unreadable payload and was failed",
            extra={
                "event": "queue.job.unreadable",
                "job_key": model.key,
                "kind": model.kind,
                "borrowing_id": model.borrowing_id,
                "error_count": error.error_count(),
            },
        )

    def complete(self, job: NotificationJob) -> bool:
        """Mark a claimed job as delivered.

        Returns:
            False if the claim is no longer valid
        """
        now_str = to_storage(self.clock())
        return self._transition(
            job,
            "complete job",
            status=JobStatus.COMPLETED.value,
            finished_at=now_str,
            updated_at=now_str,
            last_error=None,
        )

    def retry_later(self, job: NotificationJob, fire_at: datetime, error: str) -> bool:
        """Return a claimed job to pending for another attempt at ``fire_at``.

        Returns:
            False if the claim is no longer valid
        """
        return self._transition(
            job,
            "reschedule job",
            status=JobStatus.PENDING.value,
            fire_at=to_storage(fire_at),
            last_error=error,
            claimed_by=None,
            claimed_at=None,
            updated_at=to_storage(self.clock()),
        )

    def fail(self, job: NotificationJob, error: str) -> bool:
        """Mark a claimed job as permanently failed.

        Returns:
            False if the claim is no longer valid
        """
        now_str = to_storage(self.clock())
        return self._transition(
            job,
            "fail job",
            status=JobStatus.FAILED.value,
            last_error=error,
            finished_at=now_str,
            updated_at=now_str,
        )

    def _transition(self, job: NotificationJob, operation: str, **values) -> bool:
        with self._transaction(operation) as session:
            result = session.execute(
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.key == job.key,
                    NotificationJobModel.status == JobStatus.ACTIVE.value,
                    NotificationJobModel.claim_token == job.claim_token,
                )
                .values(**values)
            )
            applied = result.rowcount == 1

        if not applied:
            logger.warning(
                f"Claim on job {job.key} is no longer valid; {operation} skipped",
                extra={
                    "event": "queue.job.stale_claim",
                    "job_key": job.key,
                    "operation": operation,
                },
            )
        return applied

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover_stale(self, lease_timeout: timedelta, now: Optional[datetime] = None) -> int:
        """Release jobs whose worker vanished mid-delivery.

        Active jobs claimed longer than ``lease_timeout`` ago go back to
        pending with a fresh claim token, or to failed when they have no
        attempts left.

        Returns:
            Number of jobs released or failed
        """
        now = ensure_utc(now) if now is not None else self.clock()
        now_str = to_storage(now)
        cutoff_str = to_storage(now - lease_timeout)
        error = f"Lease expired after {int(lease_timeout.total_seconds())}s"

        stale = (
            NotificationJobModel.status == JobStatus.ACTIVE.value,
            NotificationJobModel.claimed_at < cutoff_str,
        )

        with self._transaction("recover stale jobs") as session:
            exhausted = session.execute(
                update(NotificationJobModel)
                .where(*stale, NotificationJobModel.attempts >= NotificationJobModel.max_attempts)
                .values(
                    status=JobStatus.FAILED.value,
                    last_error=error,
                    claim_token=_new_token(),
                    finished_at=now_str,
                    updated_at=now_str,
                )
            ).rowcount
            released = session.execute(
                update(NotificationJobModel)
                .where(*stale)
                .values(
                    status=JobStatus.PENDING.value,
                    last_error=error,
                    claim_token=_new_token(),
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now_str,
                )
            ).rowcount

        if released or exhausted:
            logger.warning(
                f"Recovered {released} stale job(s), failed {exhausted}",
                extra={
                    "event": "queue.recovered",
                    "released": released,
                    "failed": exhausted,
                },
            )
        return released + exhausted

    def prune(self, keep_completed: int = 100, keep_failed: int = 50) -> int:
        """Trim finished-job history to the most recent N of each status.

        Returns:
            Number of rows deleted
        """
        removed = 0
        with self._transaction("prune jobs") as session:
            for status, keep in (
                (JobStatus.COMPLETED, keep_completed),
                (JobStatus.FAILED, keep_failed),
            ):
                keys = (
                    session.execute(
                        select(NotificationJobModel.key)
                        .where(NotificationJobModel.status == status.value)
                        .order_by(NotificationJobModel.finished_at.desc())
                        .offset(keep)
                    )
                    .scalars()
                    .all()
                )
                if keys:
                    removed += session.execute(
                        delete(NotificationJobModel).where(NotificationJobModel.key.in_(keys))
                    ).rowcount

        if removed:
            logger.info(
                f"Pruned {removed} finished job(s)",
                extra={"event": "queue.pruned", "removed": removed},
            )
        return removed

    def retry_failed(self, key: str) -> NotificationJob:
        """Put a failed job back in the queue for immediate delivery.

        Raises:
            JobNotFoundError: If no failed job exists under the key
        """
        now_str = to_storage(self.clock())
        with self._transaction("retry failed job") as session:
            result = session.execute(
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.key == key,
                    NotificationJobModel.status == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    fire_at=now_str,
                    claim_token=_new_token(),
                    claimed_by=None,
                    claimed_at=None,
                    finished_at=None,
                    updated_at=now_str,
                )
            )
            if result.rowcount == 0:
                raise JobNotFoundError(f"No failed job with key {key}")
            model = session.execute(
                select(NotificationJobModel)
                .where(NotificationJobModel.key == key)
                .execution_options(populate_existing=True)
            ).scalar_one()
            job = model.to_domain()

        logger.info(
            f"Requeued failed job {key}",
            extra={"event": "queue.job.requeued", "job_key": key},
        )
        return job

    def claim_trigger_run(self, trigger_id: str, run_key: str, owner: Optional[str] = None) -> bool:
        """Register one firing of a recurring trigger.

        Only the first caller for a (trigger_id, run_key) pair gets True, so
        several worker processes sharing the store run the trigger once.

        Args:
            trigger_id: Stable trigger identifier
            run_key: Identifier of this firing (e.g. the local date)
            owner: Claimer identifier (for diagnostics)

        Returns:
            True if this caller claimed the run
        """
        try:
            with self._transaction("claim trigger run") as session:
                if session.get(TriggerRunModel, (trigger_id, run_key)) is not None:
                    return False
                session.add(
                    TriggerRunModel(
                        trigger_id=trigger_id,
                        run_key=run_key,
                        claimed_by=owner,
                        claimed_at=to_storage(self.clock()),
                    )
                )
                session.flush()
        except DuplicateKeyError:
            return False

        logger.info(
            f"Claimed run {run_key} of {trigger_id}",
            extra={
                "event": "queue.trigger.claimed",
                "trigger_id": trigger_id,
                "run_key": run_key,
                "owner": owner,
            },
        )
        return True
