"""Core domain models for notification jobs and borrowings.

This module defines the data structures used throughout the application:
- NotificationKind: the five emails the library sends
- Payload variants: one model per kind, discriminated by ``kind``
- NotificationJob: a unit of deferred work held by the job queue
- Borrowing / BorrowingPolicy: read views of the circulation data the
  notification pipeline consumes but does not own
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class NotificationKind(str, Enum):
    """Kinds of notification email."""

    BOOK_BORROWED = "book-borrowed"
    BOOK_RETURNED = "book-returned"
    BOOK_EXTENDED = "book-extended"
    DUE_REMINDER = "due-reminder"
    OVERDUE_REMINDER = "overdue-reminder"


class JobStatus(str, Enum):
    """Lifecycle states of a queued notification job."""

    PENDING = "pending"  # waiting for fire_at (delayed) or a free worker
    ACTIVE = "active"  # claimed by a worker
    COMPLETED = "completed"
    FAILED = "failed"


class _BasePayload(BaseModel):
    """Fields shared by every notification kind.

    Display fields are optional; the template layer substitutes defaults.
    """

    to: str = Field(..., description="Recipient email address")
    member_name: Optional[str] = Field(None, description="Member display name")
    book_title: Optional[str] = Field(None, description="Borrowed book title")
    book_author: Optional[str] = Field(None, description="Borrowed book author")
    library_name: Optional[str] = Field(None, description="Lending library name")
    borrowing_id: Optional[str] = Field(None, description="Borrowing the email refers to")

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("to")
    @classmethod
    def strip_recipient(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Recipient cannot be empty")
        return stripped


class BorrowedPayload(_BasePayload):
    kind: Literal["book-borrowed"] = "book-borrowed"
    due_date: Optional[str] = Field(None, description="Formatted due date")


class ReturnedPayload(_BasePayload):
    kind: Literal["book-returned"] = "book-returned"


class ExtendedPayload(_BasePayload):
    kind: Literal["book-extended"] = "book-extended"
    new_due_date: Optional[str] = Field(None, description="Formatted due date after extension")


class DueReminderPayload(_BasePayload):
    kind: Literal["due-reminder"] = "due-reminder"
    due_date: Optional[str] = Field(None, description="Formatted due date")


class OverdueReminderPayload(_BasePayload):
    kind: Literal["overdue-reminder"] = "overdue-reminder"
    due_date: Optional[str] = Field(None, description="Formatted (past) due date")
    days_overdue: Optional[int] = Field(None, ge=1, description="Calendar days past due")


NotificationPayload = Annotated[
    Union[
        BorrowedPayload,
        ReturnedPayload,
        ExtendedPayload,
        DueReminderPayload,
        OverdueReminderPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(NotificationPayload)


def parse_payload(data) -> NotificationPayload:
    """Validate a stored payload (dict or JSON string) into its variant.

    Raises:
        pydantic.ValidationError: If the kind is unknown or fields are invalid
    """
    if isinstance(data, (str, bytes)):
        return _payload_adapter.validate_json(data)
    return _payload_adapter.validate_python(data)


def dump_payload(payload: NotificationPayload) -> str:
    """Serialize a payload for storage."""
    return payload.model_dump_json()


class NotificationJob(BaseModel):
    """A notification waiting in, or recently processed by, the job queue.

    The key is unique per logical notification. Due reminders use the
    deterministic ``due-reminder-<borrowing id>`` key so that at most one
    of them is pending per borrowing; every other job gets a random key.
    """

    key: str = Field(..., min_length=1, description="Unique job key")
    payload: NotificationPayload
    fire_at: datetime = Field(..., description="When the job becomes eligible (UTC)")
    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(0, ge=0, description="Delivery attempts started so far")
    max_attempts: int = Field(3, ge=1)
    last_error: Optional[str] = None
    claim_token: Optional[str] = Field(
        None, description="Changes on every claim/overwrite; guards state transitions"
    )
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("fire_at", "created_at", "updated_at", "finished_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def kind(self) -> NotificationKind:
        return NotificationKind(self.payload.kind)

    @property
    def borrowing_id(self) -> Optional[str]:
        return self.payload.borrowing_id

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING

    def is_due(self, now: datetime) -> bool:
        """Check whether a pending job's fire time has elapsed."""
        return self.is_pending() and self.fire_at <= now


class BorrowingPolicy(BaseModel):
    """Per-library lending rules."""

    library_id: Optional[str] = None
    borrow_duration_days: int = Field(14, ge=1)
    extension_duration_days: int = Field(7, ge=1)
    max_books_per_member: int = Field(5, ge=1)


class Borrowing(BaseModel):
    """Read view of a borrowing joined with its member, book and library.

    A borrowing's due date moves forward at most once (extension) and the
    record becomes terminal once ``returned_at`` is set.
    """

    id: str
    book_id: str
    member_id: str
    library_id: Optional[str] = None
    borrowed_at: datetime
    due_date: datetime
    extended_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    member_name: Optional[str] = None
    member_email: Optional[str] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None
    library_name: Optional[str] = None

    @field_validator("borrowed_at", "due_date", "extended_at", "returned_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def is_returned(self) -> bool:
        return self.returned_at is not None

    @property
    def is_extended(self) -> bool:
        return self.extended_at is not None

    def is_overdue(self, now: datetime) -> bool:
        return not self.is_returned and self.due_date < now
