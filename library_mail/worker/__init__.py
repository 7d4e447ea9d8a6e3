"""Background delivery of queued notification jobs.

Public API:
    - WorkerPool: poll loop + bounded thread pool (start/stop/process_job/run_pending)
    - RetryPolicy: exponential backoff between delivery attempts
"""

from .retry import RetryPolicy
from .service import WorkerPool

__all__ = ["WorkerPool", "RetryPolicy"]
