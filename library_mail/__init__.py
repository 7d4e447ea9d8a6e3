"""Library mail: borrowing notifications, job queue and reminder scheduler."""
