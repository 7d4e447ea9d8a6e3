"""Borrowing workflow: issue, return and extend.

Each operation validates its business rules, commits the borrowing change,
and only then notifies the orchestrator. A notification failure is logged
and never undoes or fails the committed operation.
"""

import uuid
from datetime import timedelta
from typing import Callable, Optional

from library_mail.config.models import PolicyConfig
from library_mail.domain.models import Borrowing, BorrowingPolicy
from library_mail.logging import get_logger
from library_mail.logging.context import log_context
from library_mail.orchestrator import NotificationOrchestrator
from library_mail.persistence import Database
from library_mail.utils.timestamps import Clock, from_storage, to_storage, utc_now

from .exceptions import (
    AlreadyExtendedError,
    AlreadyReturnedError,
    BorrowingNotFoundError,
    NoCopiesAvailableError,
    OverdueBooksError,
    RecordNotFoundError,
)
from .repository import BorrowingRepository
from .schema import BookModel, BorrowingModel, MemberModel

logger = get_logger(__name__, component="circulation")


class CirculationService:
    """Issues, returns and extends borrowings."""

    def __init__(
        self,
        database: Database,
        orchestrator: Optional[NotificationOrchestrator] = None,
        policy_defaults: Optional[PolicyConfig] = None,
        clock: Clock = utc_now,
    ):
        """
        Args:
            database: Store holding the circulation tables
            orchestrator: Receives borrowing events after commit (None disables notifications)
            policy_defaults: Durations used for libraries without a policy row
            clock: Source of "now" (injectable for tests)
        """
        self.database = database
        self.orchestrator = orchestrator
        self.policy_defaults = policy_defaults or PolicyConfig()
        self.clock = clock

    def _policy_for(self, repo: BorrowingRepository, library_id: Optional[str]) -> BorrowingPolicy:
        policy = repo.get_policy(library_id)
        if policy is not None:
            return policy
        return BorrowingPolicy(
            library_id=library_id,
            borrow_duration_days=self.policy_defaults.borrow_duration_days,
            extension_duration_days=self.policy_defaults.extension_duration_days,
            max_books_per_member=self.policy_defaults.max_books_per_member,
        )

    def issue_book(
        self,
        book_id: str,
        member_id: str,
        librarian_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Borrowing:
        """Lend a book to a member.

        Args:
            book_id: Book to lend
            member_id: Borrowing member
            librarian_id: Staff member issuing the book
            phone: Contact number recorded with the borrowing

        Returns:
            The new borrowing

        Raises:
            RecordNotFoundError: If the book or member does not exist
            OverdueBooksError: If the member has overdue books
            NoCopiesAvailableError: If no copy of the book is available
        """
        now = self.clock()

        with self.database.session() as session:
            repo = BorrowingRepository(session)

            book = session.get(BookModel, book_id)
            if book is None:
                raise RecordNotFoundError(f"Book {book_id} not found")
            member = session.get(MemberModel, member_id)
            if member is None:
                raise RecordNotFoundError(f"Member {member_id} not found")

            if repo.member_has_overdue(member_id, now):
                raise OverdueBooksError("Member has overdue books. Cannot issue new book.")
            if book.available_copies <= 0:
                raise NoCopiesAvailableError(f"No copies of '{book.name}' are available")

            policy = self._policy_for(repo, book.library_id)
            due_date = now + timedelta(days=policy.borrow_duration_days)

            model = BorrowingModel(
                id=str(uuid.uuid4()),
                book=book,
                member=member,
                librarian_id=librarian_id,
                borrowed_at=to_storage(now),
                due_date=to_storage(due_date),
                phone_at_borrow=phone,
            )
            session.add(model)
            book.available_copies -= 1
            if phone:
                member.phone = phone
            session.flush()
            borrowing = model.to_domain()

        logger.info(
            f"Issued '{borrowing.book_title}' to member {member_id}, due {borrowing.due_date.isoformat()}",
            extra={
                "event": "circulation.book.issued",
                "borrowing_id": borrowing.id,
                "book_id": book_id,
                "member_id": member_id,
            },
        )

        self._notify(
            borrowing,
            lambda o: o.on_book_issued(
                borrowing.id,
                borrowing.member_email,
                borrowing.member_name,
                borrowing.book_title,
                borrowing.book_author,
                borrowing.library_name,
                borrowing.due_date,
            ),
        )
        return borrowing

    def return_book(self, borrowing_id: str) -> Borrowing:
        """Mark a borrowing as returned and put the copy back on the shelf.

        Raises:
            BorrowingNotFoundError: If the borrowing does not exist
            AlreadyReturnedError: If it was already returned
        """
        now = self.clock()

        with self.database.session() as session:
            model = session.get(BorrowingModel, borrowing_id)
            if model is None:
                raise BorrowingNotFoundError(f"Borrowing {borrowing_id} not found")
            if model.returned_at is not None:
                raise AlreadyReturnedError(f"Borrowing {borrowing_id} was already returned")

            model.returned_at = to_storage(now)
            if model.book is not None:
                model.book.available_copies += 1
            session.flush()
            borrowing = model.to_domain()

        logger.info(
            f"Borrowing {borrowing_id} returned",
            extra={"event": "circulation.book.returned", "borrowing_id": borrowing_id},
        )

        self._notify(
            borrowing,
            lambda o: o.on_book_returned(
                borrowing.id,
                borrowing.member_email,
                borrowing.member_name,
                borrowing.book_title,
                borrowing.book_author,
                borrowing.library_name,
            ),
        )
        return borrowing

    def extend_borrowing(self, borrowing_id: str) -> Borrowing:
        """Push the due date forward by the library's extension duration.

        A borrowing can be extended once.

        Raises:
            BorrowingNotFoundError: If the borrowing does not exist
            AlreadyReturnedError: If it was already returned
            AlreadyExtendedError: If it was already extended
        """
        now = self.clock()

        with self.database.session() as session:
            model = session.get(BorrowingModel, borrowing_id)
            if model is None:
                raise BorrowingNotFoundError(f"Borrowing {borrowing_id} not found")
            if model.returned_at is not None:
                raise AlreadyReturnedError(f"Borrowing {borrowing_id} was already returned")
            if model.extended_at is not None:
                raise AlreadyExtendedError("Book has already been extended")

            repo = BorrowingRepository(session)
            library_id = model.book.library_id if model.book is not None else None
            policy = self._policy_for(repo, library_id)

            new_due_date = from_storage(model.due_date) + timedelta(
                days=policy.extension_duration_days
            )
            model.due_date = to_storage(new_due_date)
            model.extended_at = to_storage(now)
            session.flush()
            borrowing = model.to_domain()

        logger.info(
            f"Borrowing {borrowing_id} extended to {borrowing.due_date.isoformat()}",
            extra={
                "event": "circulation.borrowing.extended",
                "borrowing_id": borrowing_id,
                "extension_days": policy.extension_duration_days,
            },
        )

        self._notify(
            borrowing,
            lambda o: o.on_borrowing_extended(
                borrowing.id,
                borrowing.member_email,
                borrowing.member_name,
                borrowing.book_title,
                borrowing.book_author,
                borrowing.library_name,
                borrowing.due_date,
            ),
        )
        return borrowing

    def _notify(
        self,
        borrowing: Borrowing,
        dispatch: Callable[[NotificationOrchestrator], object],
    ) -> None:
        """Hand a committed change to the orchestrator; failures are only logged."""
        if self.orchestrator is None:
            return

        with log_context(borrowing_id=borrowing.id):
            try:
                dispatch(self.orchestrator)
            except Exception as e:
                logger.error(
                    f"Failed to dispatch notifications for borrowing {borrowing.id}: {e}",
                    exc_info=True,
                    extra={
                        "event": "circulation.notify.failed",
                        "error_type": type(e).__name__,
                    },
                )
