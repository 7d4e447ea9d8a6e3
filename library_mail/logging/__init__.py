"""Structured logging helpers for the notification pipeline.

Every log call in the package passes an ``event`` name in ``extra`` and is
emitted through a logger bound to a ``component`` (queue, worker,
orchestrator, reminders, ...). Formatting and context propagation live in
``config`` and ``context``.
"""

import logging
from typing import Any, Optional


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges bound fields with per-call extra fields.

    Fields passed on the call win over the bound ones.
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **fields: Any) -> "ComponentLoggerAdapter":
        """Return a new adapter with additional bound fields."""
        return ComponentLoggerAdapter(self.logger, {**self.extra, **fields})


def get_logger(name: str, component: Optional[str] = None, **fields: Any):
    """Get a logger, optionally bound to a component and static fields.

    Args:
        name: Logger name (typically __name__)
        component: Component identifier injected into every record
        **fields: Further static fields injected into every record

    Returns:
        Logger, or ComponentLoggerAdapter when any field is bound

    Example:
        >>> logger = get_logger(__name__, component="worker")
        >>> logger.info("Job delivered", extra={"event": "worker.job.completed"})
    """
    logger = logging.getLogger(name)

    bound = dict(fields)
    if component:
        bound["component"] = component

    if bound:
        return ComponentLoggerAdapter(logger, bound)

    return logger
