#!/usr/bin/env python3
"""Worker entrypoint script.

Usage:
    python -m agentsync.workers.entrypoint <mode>

Where <mode> is one of:
    worker   Run maintenance jobs from the maintenance queue
    beat     Schedule the maintenance jobs enabled in settings

Example:
    REAPER_ENABLED=true python -m agentsync.workers.entrypoint beat
"""

import sys

from agentsync.core.celery_app import MAINTENANCE_QUEUE, build_beat_schedule, celery_app
from agentsync.core.logging import configure_logging, get_logger

logger = get_logger(__name__)

MODES = ("worker", "beat")


def build_argv(mode: str) -> list[str]:
    """Celery command line for the given mode."""
    if mode == "worker":
        return [
            "worker",
            f"--queues={MAINTENANCE_QUEUE}",
            "--loglevel=INFO",
            "--concurrency=1",
            "--hostname=maintenance@%h",
        ]
    elif mode == "beat":
        return ["beat", "--loglevel=INFO"]
    else:
        raise ValueError(f"Unknown mode: {mode}. Valid modes: {list(MODES)}")


def main():
    """Main entrypoint for worker."""
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    mode = sys.argv[1]

    try:
        argv = build_argv(mode)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    configure_logging()
    if mode == "beat" and not build_beat_schedule():
        logger.warning("beat_schedule_empty", hint="enable REAPER_ENABLED or STALE_TASK_EXPIRY_ENABLED")

    logger.info("worker_starting", mode=mode)
    if mode == "worker":
        celery_app.worker_main(argv)
    else:
        celery_app.start(argv)


if __name__ == "__main__":
    main()
