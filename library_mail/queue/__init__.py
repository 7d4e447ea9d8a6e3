"""Durable notification job queue.

Public API:
    - JobQueue: enqueue/cancel (producers), dequeue/complete/retry_later/fail
      (workers), recover_stale/prune/claim_trigger_run (maintenance)
    - QueueBase: table metadata to pass to ``Database``
    - QueueError, QueueUnavailableError, JobNotFoundError
"""

from .exceptions import DuplicateKeyError, JobNotFoundError, QueueError, QueueUnavailableError
from .repository import JobQueue
from .schema import NotificationJobModel, QueueBase, TriggerRunModel

__all__ = [
    "JobQueue",
    "QueueBase",
    "NotificationJobModel",
    "TriggerRunModel",
    "QueueError",
    "QueueUnavailableError",
    "DuplicateKeyError",
    "JobNotFoundError",
]
