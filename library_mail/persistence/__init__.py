"""Shared database plumbing for the job queue and the circulation store.

Public API:
    - Database: engine/session lifecycle for one SQL store
    - PersistenceError, DatabaseConnectionError

Example usage:
    >>> from library_mail.persistence import Database
    >>> from library_mail.queue.schema import QueueBase
    >>>
    >>> db = Database("sqlite:///./data/library_mail.db", [QueueBase.metadata]).init()
    >>> with db.session() as session:
    ...     ...
    >>> db.close()
"""

from .database import Database
from .exceptions import DatabaseConnectionError, PersistenceError

__all__ = [
    "Database",
    "PersistenceError",
    "DatabaseConnectionError",
]
