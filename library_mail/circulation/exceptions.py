"""Circulation (borrowing workflow) exceptions.

These are business rule violations raised before anything is committed;
no notification is dispatched when one of them is raised.
"""


class CirculationError(Exception):
    """Base exception for borrowing workflow errors."""

    pass


class RecordNotFoundError(CirculationError):
    """A referenced book, member or borrowing does not exist."""

    pass


class BorrowingNotFoundError(RecordNotFoundError):
    """Raised when a borrowing id is unknown."""

    pass


class AlreadyReturnedError(CirculationError):
    """Raised when returning or extending a borrowing that is already returned."""

    pass


class AlreadyExtendedError(CirculationError):
    """Raised on a second extension of the same borrowing."""

    pass


class OverdueBooksError(CirculationError):
    """Raised when issuing to a member who still has overdue books."""

    pass


class NoCopiesAvailableError(CirculationError):
    """Raised when every copy of a book is already lent out."""

    pass
