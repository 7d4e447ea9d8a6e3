"""Shared fixtures for queue, worker and circulation tests.

Provides a controllable clock, an in-memory store with every table
created, seeding helpers for libraries, books, members and borrowings,
and a delivery stub that records what would have been sent.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from library_mail.circulation.schema import (
    BookModel,
    BorrowingModel,
    BorrowingPolicyModel,
    CirculationBase,
    LibraryModel,
    MemberModel,
)
from library_mail.notifications.models import DeliveryResult, RenderedEmail
from library_mail.persistence import Database
from library_mail.queue import QueueBase
from library_mail.utils.timestamps import to_storage

DEFAULT_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class RecordingDelivery:
    """Delivery stub returning scripted results and recording every send.

    Results are consumed in order; once exhausted every send succeeds.
    """

    def __init__(self, results: Optional[List[DeliveryResult]] = None):
        self.results = list(results or [])
        self.sent: List[Tuple[str, RenderedEmail]] = []
        self.closed = False

    def send(self, to: str, email: RenderedEmail) -> DeliveryResult:
        self.sent.append((to, email))
        if self.results:
            return self.results.pop(0)
        return DeliveryResult.sent(f"msg-{len(self.sent)}", status_code=200)

    def close(self) -> None:
        self.closed = True

    @property
    def subjects(self) -> List[str]:
        return [email.subject for _, email in self.sent]


def make_database(
    queue: bool = True, circulation: bool = True, url: str = "sqlite://"
) -> Database:
    """Create an initialized store, in memory unless a URL is given."""
    metadata = []
    if queue:
        metadata.append(QueueBase.metadata)
    if circulation:
        metadata.append(CirculationBase.metadata)
    return Database(url, metadata).init()


def seed_library(
    database: Database,
    library_name: Optional[str] = "Central Library",
    book_title: str = "The Left Hand of Darkness",
    book_author: Optional[str] = "Ursula K. Le Guin",
    member_name: str = "Ada Lovelace",
    member_email: Optional[str] = "ada@example.com",
    copies: int = 2,
    borrow_days: Optional[int] = 14,
    extension_days: int = 7,
) -> Dict[str, str]:
    """Insert one library with a book and a member.

    Args:
        borrow_days: Policy borrow duration; None leaves the library without a policy row

    Returns:
        Dictionary with library_id, book_id and member_id
    """
    ids = {
        "library_id": str(uuid.uuid4()),
        "book_id": str(uuid.uuid4()),
        "member_id": str(uuid.uuid4()),
    }

    with database.session() as session:
        session.add(LibraryModel(id=ids["library_id"], name=library_name or ""))
        session.flush()
        if borrow_days is not None:
            session.add(
                BorrowingPolicyModel(
                    id=str(uuid.uuid4()),
                    library_id=ids["library_id"],
                    borrow_duration_days=borrow_days,
                    extension_duration_days=extension_days,
                )
            )
        session.add(
            BookModel(
                id=ids["book_id"],
                library_id=ids["library_id"],
                name=book_title,
                author=book_author,
                total_copies=copies,
                available_copies=copies,
            )
        )
        session.add(
            MemberModel(
                id=ids["member_id"],
                library_id=ids["library_id"],
                name=member_name,
                email=member_email,
            )
        )

    return ids


def seed_borrowing(
    database: Database,
    book_id: str,
    member_id: str,
    due_date: datetime,
    borrowed_at: Optional[datetime] = None,
    returned_at: Optional[datetime] = None,
) -> str:
    """Insert a borrowing row directly, bypassing the circulation rules."""
    borrowing_id = str(uuid.uuid4())
    with database.session() as session:
        session.add(
            BorrowingModel(
                id=borrowing_id,
                book_id=book_id,
                member_id=member_id,
                borrowed_at=to_storage(borrowed_at or due_date - timedelta(days=14)),
                due_date=to_storage(due_date),
                returned_at=to_storage(returned_at),
            )
        )
    return borrowing_id
