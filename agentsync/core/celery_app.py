"""Celery application for background maintenance of the work queue."""

from celery import Celery
from kombu import Queue

from .config import settings

MAINTENANCE_QUEUE = "q_maintenance"

# Create Celery app
celery_app = Celery(
    "agentsync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["agentsync.workers.tasks"],
)


def build_beat_schedule() -> dict:
    """Periodic jobs an operator has opted into."""
    schedule = {}

    if settings.reaper_enabled:
        schedule["reap-abandoned-claims"] = {
            "task": "agentsync.workers.tasks.reap_abandoned_claims",
            "schedule": float(settings.reaper_interval_seconds),
            "options": {"queue": MAINTENANCE_QUEUE},
        }

    if settings.stale_task_expiry_enabled:
        schedule["expire-stale-tasks"] = {
            "task": "agentsync.workers.tasks.expire_stale_tasks",
            "schedule": float(settings.reaper_interval_seconds),
            "options": {"queue": MAINTENANCE_QUEUE},
        }

    return schedule


# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,

    # Result settings
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,

    # Queue configuration
    task_queues=[Queue(MAINTENANCE_QUEUE, routing_key=MAINTENANCE_QUEUE)],
    task_default_queue=MAINTENANCE_QUEUE,

    beat_schedule=build_beat_schedule(),
)
