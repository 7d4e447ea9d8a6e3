#!/usr/bin/env python3
"""Check a configuration file against the application schema.

Usage:
    python verify_config.py                      # config.example.yaml
    python verify_config.py config.yaml
"""

import sys
from pathlib import Path

from library_mail.config.exceptions import ConfigurationError
from library_mail.config.loader import load_app_config


def verify_config(config_file: Path) -> bool:
    """Load and validate a config file, printing a short summary."""
    try:
        config = load_app_config(config_file)
    except ConfigurationError as e:
        print(f"✗ {config_file} is invalid:")
        print(f"  {e}")
        return False

    print(f"✓ {config_file} is valid")
    print(f"  - Worker concurrency: {config.queue.concurrency}")
    print(
        f"  - Retry: {config.retry.max_attempts} attempts, "
        f"{config.retry.base_delay_seconds}s base delay x{config.retry.backoff_multiplier}"
    )
    if config.reminders.enabled:
        print(
            f"  - Reminder scan: daily at {config.reminders.hour:02d}:{config.reminders.minute:02d} "
            f"{config.reminders.timezone}, lead {config.reminders.lead_hours}h, "
            f"due-soon dedupe {'on' if config.reminders.dedupe_due_soon else 'off'}"
        )
    else:
        print("  - Reminder scan: disabled")
    print(
        f"  - Default policy: borrow {config.policy.borrow_duration_days}d, "
        f"extend {config.policy.extension_duration_days}d"
    )
    return True


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config.example.yaml")
    sys.exit(0 if verify_config(path) else 1)
