"""Data access for borrowings and borrowing policies.

Repositories operate on a caller-provided session and return domain models
rather than ORM rows, so a service can read and write several tables in one
transaction.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from library_mail.domain.models import Borrowing, BorrowingPolicy
from library_mail.logging import get_logger
from library_mail.persistence import PersistenceError
from library_mail.utils.timestamps import to_storage

from .schema import BorrowingModel, BorrowingPolicyModel

logger = get_logger(__name__, component="circulation")


class BorrowingRepository:
    """Repository for borrowing queries."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def get(self, borrowing_id: str) -> Optional[Borrowing]:
        """Retrieve a borrowing by id.

        Returns:
            Borrowing view if found, None otherwise

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            model = self.session.get(BorrowingModel, borrowing_id)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving borrowing {borrowing_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve borrowing: {e}") from e

    def list_overdue(self, now: datetime) -> List[Borrowing]:
        """Find unreturned borrowings whose due date has passed.

        Args:
            now: Reference time (UTC)

        Returns:
            Borrowings ordered by due date, oldest first

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            stmt = (
                select(BorrowingModel)
                .where(
                    BorrowingModel.returned_at.is_(None),
                    BorrowingModel.due_date < to_storage(now),
                )
                .order_by(BorrowingModel.due_date.asc())
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving overdue borrowings: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve overdue borrowings: {e}") from e

    def list_due_between(self, start: datetime, end: datetime) -> List[Borrowing]:
        """Find unreturned borrowings with ``start <= due_date <= end``.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            stmt = (
                select(BorrowingModel)
                .where(
                    BorrowingModel.returned_at.is_(None),
                    BorrowingModel.due_date >= to_storage(start),
                    BorrowingModel.due_date <= to_storage(end),
                )
                .order_by(BorrowingModel.due_date.asc())
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving borrowings due soon: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve borrowings due soon: {e}") from e

    def member_has_overdue(self, member_id: str, now: datetime) -> bool:
        """Check whether a member holds any overdue book.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            stmt = (
                select(BorrowingModel.id)
                .where(
                    BorrowingModel.member_id == member_id,
                    BorrowingModel.returned_at.is_(None),
                    BorrowingModel.due_date < to_storage(now),
                )
                .limit(1)
            )
            return self.session.execute(stmt).first() is not None

        except SQLAlchemyError as e:
            logger.error(f"Error checking overdue books for member {member_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to check overdue books: {e}") from e

    def get_policy(self, library_id: Optional[str]) -> Optional[BorrowingPolicy]:
        """Retrieve the borrowing policy of a library, or None if it has none.

        Raises:
            PersistenceError: If database error occurs
        """
        if library_id is None:
            return None

        try:
            stmt = select(BorrowingPolicyModel).where(
                BorrowingPolicyModel.library_id == library_id
            )
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving policy for library {library_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve borrowing policy: {e}") from e
