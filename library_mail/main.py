"""Main entry point for the library mail notification worker."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import os
import signal
import sys
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from library_mail.circulation import CirculationBase, CirculationService
from library_mail.config.environment import EnvironmentConfig
from library_mail.config.exceptions import ConfigurationError
from library_mail.config.loader import load_config
from library_mail.config.models import AppConfig
from library_mail.logging import get_logger
from library_mail.logging.config import configure_logging
from library_mail.notifications import EmailDeliveryClient, TemplateRenderer
from library_mail.orchestrator import NotificationOrchestrator
from library_mail.persistence import Database
from library_mail.queue import JobQueue, QueueBase
from library_mail.reminders import ReminderScheduler
from library_mail.utils.timestamps import Clock, utc_now
from library_mail.worker import RetryPolicy, WorkerPool

logger = get_logger(__name__, component="cli")


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load and prepare runtime configuration.

    Args:
        config_path: Path to configuration file (None to search the defaults)
        log_level_override: Log level from CLI (takes precedence)

    Returns:
        Tuple of (AppConfig, EnvironmentConfig) with the effective log level resolved

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    # Log level priority: CLI > Environment > Config
    if log_level_override:
        env_config.log_level = log_level_override
    elif env_config.log_level:
        env_config.log_level = env_config.log_level.upper()
    else:
        env_config.log_level = app_config.logging.level

    return app_config, env_config


class MailService:
    """Wires the notification pipeline together and owns its lifecycle.

    start: connect stores, recover abandoned jobs, begin consuming, register
    the daily reminder trigger. stop: stop the trigger, drain in-flight
    deliveries, disconnect.

    ``orchestrator`` and ``circulation`` are exposed for the borrowing
    workflow running in the same process.
    """

    def __init__(
        self,
        app_config: AppConfig,
        env_config: EnvironmentConfig,
        clock: Clock = utc_now,
        delivery: Optional[EmailDeliveryClient] = None,
        enable_scheduler: bool = True,
    ):
        self.app_config = app_config
        self.env_config = env_config
        self.enable_scheduler = enable_scheduler and app_config.reminders.enabled

        self.databases: List[Database] = []
        if env_config.library_database_url == env_config.queue_database_url:
            self.queue_db = Database(
                env_config.queue_database_url, [QueueBase.metadata, CirculationBase.metadata]
            )
            self.library_db = self.queue_db
            self.databases.append(self.queue_db)
        else:
            self.queue_db = Database(env_config.queue_database_url, [QueueBase.metadata])
            self.library_db = Database(
                env_config.library_database_url, [CirculationBase.metadata]
            )
            self.databases.extend([self.queue_db, self.library_db])

        retry_policy = RetryPolicy.from_config(app_config.retry)

        self.queue = JobQueue(
            self.queue_db, clock=clock, default_max_attempts=retry_policy.max_attempts
        )
        self.delivery = delivery or EmailDeliveryClient.from_config(
            env_config,
            timeout=app_config.email.request_timeout_seconds,
            user_agent=app_config.email.user_agent,
        )
        self.worker_pool = WorkerPool(
            queue=self.queue,
            renderer=TemplateRenderer(),
            delivery=self.delivery,
            retry_policy=retry_policy,
            concurrency=app_config.queue.concurrency,
            poll_interval=app_config.queue.poll_interval_seconds,
            clock=clock,
            lease_timeout=timedelta(seconds=app_config.queue.lease_timeout_seconds),
            keep_completed=app_config.queue.keep_completed,
            keep_failed=app_config.queue.keep_failed,
        )
        self.orchestrator = NotificationOrchestrator(
            self.queue,
            clock=clock,
            lead_time=app_config.reminders.lead_time,
            display_tz=app_config.reminders.tz,
        )
        self.circulation = CirculationService(
            self.library_db,
            orchestrator=self.orchestrator,
            policy_defaults=app_config.policy,
            clock=clock,
        )
        self.reminders = ReminderScheduler(
            self.queue,
            self.library_db,
            config=app_config.reminders,
            clock=clock,
        )

    def init_stores(self) -> None:
        """Connect the job store (and library store) and release abandoned jobs."""
        for database in self.databases:
            database.init()

        recovered = self.queue.recover_stale(
            timedelta(seconds=self.app_config.queue.lease_timeout_seconds)
        )
        if recovered:
            logger.info(
                f"Released {recovered} job(s) abandoned by a previous run",
                extra={"event": "service.jobs_recovered", "count": recovered},
            )

    def start(self) -> None:
        self.init_stores()
        self.worker_pool.start()
        if self.enable_scheduler:
            self.reminders.start()

        logger.info(
            "Mail service started",
            extra={
                "event": "service.started",
                "concurrency": self.app_config.queue.concurrency,
                "scheduler_enabled": self.enable_scheduler,
            },
        )

    def stop(self) -> None:
        if self.reminders.is_running():
            self.reminders.shutdown(wait=False)
        self.worker_pool.stop(drain=True)
        self.delivery.close()
        for database in self.databases:
            database.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the library mail worker.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Library Mail - Borrowing notification worker and daily reminder scheduler"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    parser.add_argument(
        "--run-reminders-now",
        action="store_true",
        help="Run the reminder scan once at startup in addition to the daily trigger",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Consume jobs without registering the daily reminder trigger",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Deliver every job that is currently due, then exit",
    )

    args = parser.parse_args(argv)

    try:
        # Step 1: Load configuration early (before logging for format detection)
        app_config, env_config = load_runtime_config(args.config, args.log_level)

        # Step 2: Configure logging early
        environment = os.environ.get("ENVIRONMENT", "local")
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=environment,
        )

        logger.info(
            "Library mail worker starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "once": args.once,
            },
        )

        service = MailService(
            app_config, env_config, enable_scheduler=not (args.no_scheduler or args.once)
        )

        # Step 3: One-shot mode: drain due jobs and exit
        if args.once:
            service.init_stores()
            if args.run_reminders_now:
                service.reminders.trigger_now()
            outcomes = service.worker_pool.run_pending()
            failed = [o for o in outcomes if o.is_permanent_failure()]

            logger.info(
                f"Processed {len(outcomes)} job(s), {len(failed)} permanently failed",
                extra={
                    "event": "service.once.completed",
                    "processed": len(outcomes),
                    "failed": len(failed),
                },
            )
            service.stop()
            return 1 if failed else 0

        # Step 4: Daemon mode
        shutdown_event = threading.Event()

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        service.start()

        if args.run_reminders_now:
            service.reminders.trigger_now()

        logger.info(
            "Worker running. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started"},
        )

        try:
            shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info(
                "Keyboard interrupt received, shutting down",
                extra={"event": "service.keyboard_interrupt"},
            )

        service.stop()

        uptime_seconds = time.time() - start_time
        logger.info(
            "Library mail worker stopped",
            extra={"event": "service.stopping", "uptime_seconds": round(uptime_seconds, 2)},
        )
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
