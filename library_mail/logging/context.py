"""Context propagation for structured logging.

Fields pushed here (job_key, borrowing_id, notification kind, worker id,
scan run id) are merged into every record emitted inside the scope by
``ContextualFilter``. Backed by contextvars, so each worker thread and each
submitted task sees its own context.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

LogContextVar: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the active logging context."""
    return LogContextVar.get().copy()


def push_log_context(**kwargs) -> Token:
    """Merge fields into the logging context.

    None values are dropped so optional identifiers do not show up as
    ``borrowing_id=null`` on every line.

    Args:
        **kwargs: Fields to add

    Returns:
        Token for pop_log_context()
    """
    fields = {key: value for key, value in kwargs.items() if value is not None}
    return LogContextVar.set({**LogContextVar.get(), **fields})


def pop_log_context(token: Token) -> None:
    """Restore the logging context captured by push_log_context()."""
    LogContextVar.reset(token)


def clear_log_context() -> None:
    """Drop every context field. Mostly useful in tests."""
    LogContextVar.set({})


class log_context:
    """Context manager for scoped logging context.

    Example:
        >>> with log_context(job_key="due-reminder-42", borrowing_id="42"):
        ...     logger.info("Rendering email")
    """

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = push_log_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            pop_log_context(self.token)
        return False


def job_log_context(job) -> log_context:
    """Build the logging scope for processing a notification job.

    Args:
        job: NotificationJob being processed

    Returns:
        log_context carrying job key, kind, borrowing id and recipient
    """
    return log_context(
        job_key=job.key,
        kind=job.kind.value,
        borrowing_id=job.borrowing_id,
        recipient=job.payload.to,
    )
