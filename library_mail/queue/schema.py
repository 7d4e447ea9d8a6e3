"""Database schema for the durable notification job queue.

Timestamps are stored as fixed-width ISO 8601 strings (see
``library_mail.utils.timestamps.to_storage``) so that ordering and range
comparisons work identically on every backend.
"""

from sqlalchemy import Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from library_mail.domain.models import JobStatus, NotificationJob, dump_payload, parse_payload
from library_mail.utils.timestamps import from_storage, to_storage

QueueBase = declarative_base()


class NotificationJobModel(QueueBase):
    """ORM model for the notification_jobs table.

    One row per job key. Pending rows are the queue proper; completed and
    failed rows are retained history, pruned to a configured size.
    """

    __tablename__ = "notification_jobs"

    key = Column(String(255), primary_key=True, nullable=False)

    # Denormalised from the payload for querying and log correlation
    kind = Column(String(32), nullable=False)
    recipient = Column(String(320), nullable=False)
    borrowing_id = Column(String(64), nullable=True)

    payload = Column(Text, nullable=False)

    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    fire_at = Column(String(32), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    # Claim bookkeeping
    claim_token = Column(String(32), nullable=False)
    claimed_by = Column(String(128), nullable=True)
    claimed_at = Column(String(32), nullable=True)

    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)
    finished_at = Column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_jobs_status_fire_at", "status", "fire_at"),
        Index("idx_jobs_borrowing", "borrowing_id", "kind"),
        Index("idx_jobs_status_finished", "status", "finished_at"),
    )

    def to_domain(self) -> NotificationJob:
        """Convert ORM row to a NotificationJob."""
        return NotificationJob(
            key=self.key,
            payload=parse_payload(self.payload),
            fire_at=from_storage(self.fire_at),
            status=JobStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            last_error=self.last_error,
            claim_token=self.claim_token,
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
            finished_at=from_storage(self.finished_at),
        )

    @classmethod
    def from_domain(cls, job: NotificationJob) -> "NotificationJobModel":
        """Create ORM row from a NotificationJob."""
        return cls(
            key=job.key,
            kind=job.kind.value,
            recipient=job.payload.to,
            borrowing_id=job.borrowing_id,
            payload=dump_payload(job.payload),
            status=job.status.value,
            fire_at=to_storage(job.fire_at),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            claim_token=job.claim_token,
            created_at=to_storage(job.created_at),
            updated_at=to_storage(job.updated_at),
            finished_at=to_storage(job.finished_at),
        )


class TriggerRunModel(QueueBase):
    """ORM model for the trigger_runs table.

    One row per firing of a recurring trigger. The composite primary key
    lets exactly one worker process claim a given firing.
    """

    __tablename__ = "trigger_runs"

    trigger_id = Column(String(128), primary_key=True, nullable=False)
    run_key = Column(String(64), primary_key=True, nullable=False)
    claimed_by = Column(String(128), nullable=True)
    claimed_at = Column(String(32), nullable=False)
