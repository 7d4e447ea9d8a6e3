"""Worker pool that drains the notification job queue.

A single poll thread claims due jobs and hands them to a thread pool; at
most ``concurrency`` deliveries are in flight at once. Each job is
rendered, delivered once through the email provider, and then completed,
rescheduled with backoff, or failed. Workers never touch borrowing data.
"""

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import List, Optional

from library_mail.domain.models import NotificationJob
from library_mail.logging import get_logger
from library_mail.logging.context import job_log_context, log_context
from library_mail.notifications.delivery import EmailDeliveryClient
from library_mail.notifications.models import JobOutcome, NotificationTemplateError
from library_mail.notifications.templates import TemplateRenderer
from library_mail.queue import JobQueue, QueueError
from library_mail.utils.timestamps import Clock, utc_now

from .retry import RetryPolicy

logger = get_logger(__name__, component="worker")


class WorkerPool:
    """Bounded pool of delivery workers fed by a poll loop.

    Example:
        >>> pool = WorkerPool(queue, renderer, delivery, concurrency=5)
        >>> pool.start()
        >>> ...
        >>> pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        renderer: TemplateRenderer,
        delivery: EmailDeliveryClient,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        clock: Clock = utc_now,
        worker_id: Optional[str] = None,
        lease_timeout: Optional[timedelta] = None,
        keep_completed: int = 100,
        keep_failed: int = 50,
        maintenance_interval: float = 60.0,
    ):
        """
        Args:
            queue: Job queue to drain
            renderer: Email template renderer
            delivery: Email provider client
            retry_policy: Backoff between attempts (defaults to RetryPolicy())
            concurrency: Maximum simultaneous deliveries
            poll_interval: Seconds to wait when no job is due
            clock: Source of "now" for retry scheduling
            worker_id: Identifier recorded on claimed jobs
            lease_timeout: Release jobs held longer than this (None disables recovery)
            keep_completed: Completed jobs retained by periodic pruning
            keep_failed: Failed jobs retained by periodic pruning
            maintenance_interval: Seconds between recovery/pruning passes
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.queue = queue
        self.renderer = renderer
        self.delivery = delivery
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.clock = clock
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.lease_timeout = lease_timeout
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.maintenance_interval = maintenance_interval

        self._executor: Optional[ThreadPoolExecutor] = None
        self._poll_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def start(self) -> None:
        """Start the poll loop and the delivery thread pool."""
        if self.is_running:
            logger.warning("Worker pool already running", extra={"event": "worker.pool.already_running"})
            return

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="mail-worker"
        )
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="mail-worker-poll", daemon=True
        )
        self._poll_thread.start()

        logger.info(
            f"Worker pool started with concurrency {self.concurrency}",
            extra={
                "event": "worker.pool.started",
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "poll_interval": self.poll_interval,
            },
        )

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop claiming jobs and shut the pool down.

        Args:
            drain: Wait for in-flight deliveries to finish
            timeout: Seconds to wait for the poll loop to exit
        """
        self._stop_event.set()

        if self._poll_thread is not None:
            self._poll_thread.join(timeout=timeout)
            self._poll_thread = None

        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=drain, cancel_futures=not drain)

        logger.info(
            "Worker pool stopped",
            extra={"event": "worker.pool.stopped", "worker_id": self.worker_id, "drained": drain},
        )

    def _poll_loop(self) -> None:
        next_maintenance = time.monotonic()

        with log_context(worker_id=self.worker_id):
            while not self._stop_event.is_set():
                if time.monotonic() >= next_maintenance:
                    self.run_maintenance()
                    next_maintenance = time.monotonic() + self.maintenance_interval

                if not self._slots.acquire(timeout=self.poll_interval):
                    continue

                try:
                    job = self.queue.dequeue(self.worker_id)
                except QueueError as e:
                    self._slots.release()
                    logger.error(
                        f"Failed to claim job: {e}",
                        extra={"event": "worker.poll.failed", "error_type": type(e).__name__},
                    )
                    self._stop_event.wait(self.poll_interval)
                    continue
                except Exception as e:
                    self._slots.release()
                    logger.error(
                        f"Unexpected error while claiming job: {e}",
                        exc_info=True,
                        extra={"event": "worker.poll.crashed", "error_type": type(e).__name__},
                    )
                    self._stop_event.wait(self.poll_interval)
                    continue

                if job is None:
                    self._slots.release()
                    self._stop_event.wait(self.poll_interval)
                    continue

                self._submit(job)

    def _submit(self, job: NotificationJob) -> None:
        future = None
        with self._lock:
            if self._executor is not None:
                self._in_flight += 1
                future = self._executor.submit(self._run_job, job)

        if future is None:
            # Pool already shut down; the claim expires through lease recovery
            self._slots.release()
            logger.warning(
                f"Worker pool stopped before job {job.key} could run",
                extra={"event": "worker.job.not_submitted", "job_key": job.key},
            )
            return
        future.add_done_callback(self._release_slot)

    def _release_slot(self, future: Future) -> None:
        with self._lock:
            self._in_flight -= 1
        self._slots.release()

    def _run_job(self, job: NotificationJob) -> Optional[JobOutcome]:
        try:
            return self.process_job(job)
        except Exception as e:
            # The job stays active and is released by lease recovery
            with job_log_context(job):
                logger.error(
                    f"Unexpected error processing job {job.key}: {e}",
                    exc_info=True,
                    extra={"event": "worker.job.crashed", "error_type": type(e).__name__},
                )
            return None

    def process_job(self, job: NotificationJob) -> JobOutcome:
        """Render and deliver one claimed job, then record the outcome.

        Args:
            job: Job returned by JobQueue.dequeue

        Returns:
            JobOutcome describing what happened

        Raises:
            QueueError: If the outcome cannot be written to the queue
        """
        kind = job.kind.value

        with job_log_context(job):
            logger.debug(
                f"Processing {kind} job {job.key} (attempt {job.attempts}/{job.max_attempts})",
                extra={"event": "worker.job.started", "attempt": job.attempts},
            )

            try:
                email = self.renderer.render_payload(job.payload)
            except NotificationTemplateError as e:
                error = str(e)
                applied = self.queue.fail(job, error)
                logger.error(
                    f"Permanent failure for job {job.key}: template error",
                    extra={
                        "event": "worker.job.failed",
                        "attempt": job.attempts,
                        "error": error,
                        "permanent": True,
                    },
                )
                return JobOutcome(
                    job_key=job.key,
                    kind=kind,
                    attempts=job.attempts,
                    status="failed" if applied else "stale",
                    error=error,
                )

            result = self.delivery.send(job.payload.to, email)

            if result.success:
                applied = self.queue.complete(job)
                logger.info(
                    f"Delivered {kind} email for job {job.key}",
                    extra={
                        "event": "worker.job.completed",
                        "attempt": job.attempts,
                        "message_id": result.message_id,
                    },
                )
                return JobOutcome(
                    job_key=job.key,
                    kind=kind,
                    attempts=job.attempts,
                    status="sent" if applied else "stale",
                    message_id=result.message_id,
                )

            if self.retry_policy.should_retry(job.attempts, job.max_attempts, result.retryable):
                delay = self.retry_policy.delay_for(job.attempts)
                applied = self.queue.retry_later(job, self.clock() + delay, result.error)
                logger.warning(
                    f"Delivery failed for job {job.key} (attempt {job.attempts}/{job.max_attempts}), "
                    f"retrying in {delay.total_seconds():.1f}s: {result.error}",
                    extra={
                        "event": "worker.job.retrying",
                        "attempt": job.attempts,
                        "retry_in_seconds": delay.total_seconds(),
                        "status_code": result.status_code,
                        "error": result.error,
                    },
                )
                return JobOutcome(
                    job_key=job.key,
                    kind=kind,
                    attempts=job.attempts,
                    status="retrying" if applied else "stale",
                    error=result.error,
                )

            applied = self.queue.fail(job, result.error)
            logger.error(
                f"Permanent failure for job {job.key} after {job.attempts} attempt(s): {result.error}",
                extra={
                    "event": "worker.job.failed",
                    "attempt": job.attempts,
                    "status_code": result.status_code,
                    "error": result.error,
                    "permanent": True,
                    "retryable": result.retryable,
                },
            )
            return JobOutcome(
                job_key=job.key,
                kind=kind,
                attempts=job.attempts,
                status="failed" if applied else "stale",
                error=result.error,
            )

    def run_pending(self, limit: Optional[int] = None) -> List[JobOutcome]:
        """Synchronously process due jobs on the calling thread.

        Args:
            limit: Maximum number of jobs to process (None for all due jobs)

        Returns:
            Outcomes in processing order
        """
        outcomes: List[JobOutcome] = []
        with log_context(worker_id=self.worker_id):
            while limit is None or len(outcomes) < limit:
                job = self.queue.dequeue(self.worker_id)
                if job is None:
                    break
                outcomes.append(self.process_job(job))
        return outcomes

    def run_maintenance(self) -> None:
        """Release abandoned jobs and trim finished history."""
        try:
            if self.lease_timeout is not None:
                self.queue.recover_stale(self.lease_timeout)
            self.queue.prune(keep_completed=self.keep_completed, keep_failed=self.keep_failed)
        except QueueError as e:
            logger.error(
                f"Queue maintenance failed: {e}",
                extra={"event": "worker.maintenance.failed", "error_type": type(e).__name__},
            )
