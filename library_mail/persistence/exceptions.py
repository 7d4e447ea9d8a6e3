"""Persistence layer exceptions.

All database-related exceptions inherit from PersistenceError so callers
can catch every storage failure with one clause.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when the store cannot be initialized or reached.

    Examples:
    - Invalid database URL
    - Database file not accessible
    - Session requested before init()
    """

    pass
