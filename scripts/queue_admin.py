#!/usr/bin/env python3
"""Operator helper for the notification job queue.

Usage:
    # Job counts per status
    python scripts/queue_admin.py stats

    # Recently failed jobs with their last error
    python scripts/queue_admin.py failed --limit 20

    # Pending jobs for one borrowing
    python scripts/queue_admin.py pending <borrowing-id>

    # Put a failed job back in the queue
    python scripts/queue_admin.py retry <job-key>

The job store is taken from QUEUE_DATABASE_URL (or --database).
"""

import argparse
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from library_mail.config.environment import DEFAULT_QUEUE_DATABASE_URL
from library_mail.domain.models import JobStatus
from library_mail.logging.config import configure_logging
from library_mail.persistence import Database
from library_mail.queue import JobNotFoundError, JobQueue, QueueBase, QueueError


def print_header(title: str):
    """Print a formatted section header."""
    width = 80
    print("\n" + "=" * width)
    print(f" {title}")
    print("=" * width + "\n")


def print_jobs(jobs):
    if not jobs:
        print("  (none)")
        return
    for job in jobs:
        print(f"  {job.key}")
        print(f"    kind:      {job.kind.value}")
        print(f"    recipient: {job.payload.to}")
        print(f"    borrowing: {job.borrowing_id or '-'}")
        print(f"    fire at:   {job.fire_at.isoformat()}")
        print(f"    attempts:  {job.attempts}/{job.max_attempts}")
        if job.last_error:
            print(f"    error:     {job.last_error}")


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Inspect and repair the notification job queue")
    parser.add_argument(
        "--database",
        default=os.getenv("QUEUE_DATABASE_URL", DEFAULT_QUEUE_DATABASE_URL),
        help="Job store URL (default: QUEUE_DATABASE_URL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Show job counts per status")

    failed_parser = subparsers.add_parser("failed", help="List recently failed jobs")
    failed_parser.add_argument("--limit", type=int, default=20)

    pending_parser = subparsers.add_parser("pending", help="List pending jobs for a borrowing")
    pending_parser.add_argument("borrowing_id")

    retry_parser = subparsers.add_parser("retry", help="Requeue a failed job")
    retry_parser.add_argument("key")

    args = parser.parse_args()

    configure_logging(level="WARNING", format_type="key-value")

    database = Database(args.database, [QueueBase.metadata]).init()
    queue = JobQueue(database)

    try:
        if args.command == "stats":
            print_header("Job Queue Status")
            for status in JobStatus:
                print(f"  {status.value:<10} {queue.count(status=status):>6}")

        elif args.command == "failed":
            print_header("Failed Jobs")
            print_jobs(queue.list_jobs(status=JobStatus.FAILED, limit=args.limit))

        elif args.command == "pending":
            print_header(f"Pending Jobs for Borrowing {args.borrowing_id}")
            print_jobs(queue.pending_for_borrowing(args.borrowing_id))

        elif args.command == "retry":
            job = queue.retry_failed(args.key)
            print(f"✓ Requeued {job.key} ({job.kind.value} to {job.payload.to})")

    except JobNotFoundError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    except QueueError as e:
        print(f"✗ Queue error: {e}", file=sys.stderr)
        return 1
    finally:
        database.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
