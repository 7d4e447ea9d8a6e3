"""Borrowing workflow and the circulation data it reads and writes.

Public API:
    - CirculationService: issue_book / return_book / extend_borrowing
    - BorrowingRepository: borrowing and policy queries on a session
    - CirculationBase: table metadata to pass to ``Database``
    - CirculationError and its subclasses
"""

from .exceptions import (
    AlreadyExtendedError,
    AlreadyReturnedError,
    BorrowingNotFoundError,
    CirculationError,
    NoCopiesAvailableError,
    OverdueBooksError,
    RecordNotFoundError,
)
from .repository import BorrowingRepository
from .schema import (
    BookModel,
    BorrowingModel,
    BorrowingPolicyModel,
    CirculationBase,
    LibraryModel,
    MemberModel,
)
from .service import CirculationService

__all__ = [
    "CirculationService",
    "BorrowingRepository",
    "CirculationBase",
    "LibraryModel",
    "BorrowingPolicyModel",
    "BookModel",
    "MemberModel",
    "BorrowingModel",
    "CirculationError",
    "RecordNotFoundError",
    "BorrowingNotFoundError",
    "AlreadyReturnedError",
    "AlreadyExtendedError",
    "OverdueBooksError",
    "NoCopiesAvailableError",
]
