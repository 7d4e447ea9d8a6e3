"""Database schema for the circulation data the notification pipeline reads.

Only the columns the borrowing workflow and the reminder scan need are
modelled. Timestamps use the same sortable string encoding as the job
queue tables.
"""

from sqlalchemy import Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import declarative_base, relationship

from library_mail.domain.models import Borrowing, BorrowingPolicy
from library_mail.utils.timestamps import from_storage

CirculationBase = declarative_base()


class LibraryModel(CirculationBase):
    __tablename__ = "libraries"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)


class BorrowingPolicyModel(CirculationBase):
    """One policy row per library."""

    __tablename__ = "borrowing_policies"

    id = Column(String(36), primary_key=True)
    library_id = Column(String(36), ForeignKey("libraries.id"), nullable=False, unique=True)
    borrow_duration_days = Column(Integer, nullable=False, default=14)
    extension_duration_days = Column(Integer, nullable=False, default=7)
    max_books_per_member = Column(Integer, nullable=False, default=5)

    def to_domain(self) -> BorrowingPolicy:
        return BorrowingPolicy(
            library_id=self.library_id,
            borrow_duration_days=self.borrow_duration_days,
            extension_duration_days=self.extension_duration_days,
            max_books_per_member=self.max_books_per_member,
        )


class BookModel(CirculationBase):
    __tablename__ = "books"

    id = Column(String(36), primary_key=True)
    library_id = Column(String(36), ForeignKey("libraries.id"), nullable=False, index=True)
    name = Column(String(500), nullable=False)
    author = Column(String(255), nullable=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)

    library = relationship(LibraryModel, lazy="joined")


class MemberModel(CirculationBase):
    __tablename__ = "members"

    id = Column(String(36), primary_key=True)
    library_id = Column(String(36), ForeignKey("libraries.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)
    phone = Column(String(32), nullable=True)


class BorrowingModel(CirculationBase):
    """ORM model for the borrowings table.

    A row is active while ``returned_at`` is NULL.
    """

    __tablename__ = "borrowings"

    id = Column(String(36), primary_key=True)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False)
    member_id = Column(String(36), ForeignKey("members.id"), nullable=False, index=True)
    librarian_id = Column(String(36), nullable=True)
    borrowed_at = Column(String(32), nullable=False)
    due_date = Column(String(32), nullable=False)
    extended_at = Column(String(32), nullable=True)
    returned_at = Column(String(32), nullable=True)
    phone_at_borrow = Column(String(32), nullable=True)

    book = relationship(BookModel, lazy="joined")
    member = relationship(MemberModel, lazy="joined")

    __table_args__ = (Index("idx_borrowings_open_due", "returned_at", "due_date"),)

    def to_domain(self) -> Borrowing:
        """Convert ORM row (with book, member and library) to a Borrowing view."""
        book = self.book
        member = self.member
        library = book.library if book is not None else None

        return Borrowing(
            id=self.id,
            book_id=self.book_id,
            member_id=self.member_id,
            library_id=book.library_id if book is not None else None,
            borrowed_at=from_storage(self.borrowed_at),
            due_date=from_storage(self.due_date),
            extended_at=from_storage(self.extended_at),
            returned_at=from_storage(self.returned_at),
            member_name=member.name if member is not None else None,
            member_email=member.email if member is not None else None,
            book_title=book.name if book is not None else None,
            book_author=book.author if book is not None else None,
            library_name=library.name if library is not None else None,
        )
