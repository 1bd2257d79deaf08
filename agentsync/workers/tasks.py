"""Celery tasks for work-queue maintenance.

Neither job runs unless enabled in settings; both only call public
WorkQueue operations, so every transition still goes through the
guarded lifecycle.
"""

from datetime import timedelta
from typing import Any, Dict

from celery import shared_task

from agentsync.core.config import settings
from agentsync.core.logging import get_logger, log_execution
from agentsync.core.work_queue import get_work_queue

logger = get_logger(__name__)


@shared_task(bind=True)
@log_execution
def reap_abandoned_claims(self) -> Dict[str, Any]:
    """Fail tasks whose claim has been held past the timeout.

    Retries still apply, so a reaped task with attempts left goes back to
    pending for another consumer.
    """
    timeout = timedelta(seconds=settings.reaper_claim_timeout_seconds)
    reaped = get_work_queue().reap_abandoned(
        claimed_longer_than=timeout,
        error_message=f"Reaped: claim held longer than {settings.reaper_claim_timeout_seconds}s",
    )
    return {"reaped": reaped, "timeout_seconds": settings.reaper_claim_timeout_seconds}


@shared_task(bind=True)
@log_execution
def expire_stale_tasks(self) -> Dict[str, Any]:
    """Cancel pending tasks nobody claimed within the expiry window."""
    cancelled = get_work_queue().expire_stale(
        older_than=timedelta(seconds=settings.stale_task_expiry_seconds),
        reason=f"Expired: pending longer than {settings.stale_task_expiry_seconds}s",
    )
    return {"cancelled": cancelled, "expiry_seconds": settings.stale_task_expiry_seconds}
