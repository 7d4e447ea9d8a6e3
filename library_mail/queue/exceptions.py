"""Job queue exceptions."""


class QueueError(Exception):
    """Base exception for job queue failures."""

    pass


class QueueUnavailableError(QueueError):
    """The backing store could not be reached (locked, down, not initialized).

    Callers on the borrowing path treat this as "no notification sent".
    """

    pass


class DuplicateKeyError(QueueError):
    """A concurrent writer inserted the same key first."""

    pass


class JobNotFoundError(QueueError):
    """No job exists under the requested key."""

    pass
