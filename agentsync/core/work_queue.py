"""Work queue with exactly-once claiming.

Provides:
- Priority-ordered claiming that never hands one task to two consumers
- Complete/fail lifecycle with bounded retries
- Administrative cancellation of stale pending work
- Explicit reaping of claims abandoned by crashed consumers
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session, sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.logging import get_logger
from agentsync.core.models import (
    Task,
    TaskKind,
    TaskStatus,
    HELD_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    utcnow,
)
from agentsync.core.validation import EntityId, as_uuid, validate_document

logger = get_logger(__name__)

# Guarded transitions re-read the row this many times before giving up
MAX_TRANSITION_ATTEMPTS = 3


class WorkQueue:
    """Task queue shared by any number of producer and consumer processes.

    Every mutating operation is one transaction. Transitions are guarded
    updates that only apply if the row still has the status (and retry count)
    the caller observed, so concurrent callers can never both win.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    # =========================================================================
    # Producers
    # =========================================================================

    def enqueue(
        self,
        source: Optional[str],
        target: Optional[str],
        kind: Union[TaskKind, str] = TaskKind.REQUEST,
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> Task:
        """Create a pending task.

        Args:
            source: Producer identity
            target: Intended consumer, or None for broadcast
            kind: request, response, notification, handoff or sync
            payload: Opaque caller document
            priority: Higher is more urgent (defaults from settings)
            max_retries: Failures tolerated before the task is failed permanently

        Returns:
            The created Task
        """
        payload = {} if payload is None else payload
        payload_size = validate_document(payload)

        max_retries = settings.default_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        task = Task(
            source=source,
            target=target,
            kind=TaskKind(kind),
            payload=payload,
            status=TaskStatus.PENDING,
            priority=settings.default_task_priority if priority is None else priority,
            retry_count=0,
            max_retries=max_retries,
            created_at=utcnow(),
        )

        with get_db(self._session_factory) as db:
            db.add(task)
            db.flush()

        logger.info(
            "task_enqueued",
            task_id=str(task.id),
            source=source,
            target=target,
            kind=task.kind.value,
            priority=task.priority,
            payload_bytes=payload_size,
        )
        return task

    # =========================================================================
    # Consumers
    # =========================================================================

    def claim(
        self,
        consumer_id: str,
        target_filter: Optional[str] = None,
        include_broadcast: bool = False,
    ) -> Optional[Task]:
        """Atomically claim the most urgent eligible pending task.

        Highest priority wins; ties go to the oldest task. Rows another
        claimant has locked are skipped rather than waited on.

        Args:
            consumer_id: Identity recorded as the holder
            target_filter: Only tasks addressed to this target
            include_broadcast: With a filter, also accept tasks with no target

        Returns:
            The claimed Task, or None if nothing is eligible
        """
        skipped: List[UUID] = []

        with get_db(self._session_factory) as db:
            for _ in range(settings.claim_candidate_limit):
                query = self._eligible(db, target_filter, include_broadcast)
                if skipped:
                    query = query.filter(Task.id.notin_(skipped))

                candidate = (
                    query.order_by(Task.priority.desc(), Task.created_at.asc())
                    .with_for_update(skip_locked=True)
                    .first()
                )
                if candidate is None:
                    logger.debug("claim_empty", consumer_id=consumer_id, target_filter=target_filter)
                    return None

                now = utcnow()
                won = self._guarded_update(
                    db,
                    candidate.id,
                    expected_status=TaskStatus.PENDING,
                    status=TaskStatus.CLAIMED,
                    claimed_by=consumer_id,
                    claimed_at=now,
                )
                if won:
                    db.refresh(candidate)
                    logger.info(
                        "task_claimed",
                        task_id=str(candidate.id),
                        consumer_id=consumer_id,
                        priority=candidate.priority,
                        target=candidate.target,
                    )
                    return candidate

                # Another claimant committed first; move on to the next row
                skipped.append(candidate.id)
                logger.debug("claim_race_lost", task_id=str(candidate.id), consumer_id=consumer_id)

        logger.warning(
            "claim_gave_up",
            consumer_id=consumer_id,
            candidates_examined=len(skipped),
        )
        return None

    def start(self, task_id: EntityId, consumer_id: Optional[str] = None) -> bool:
        """Mark a claimed task as in progress."""
        return self._transition(
            task_id,
            action="start",
            allowed={TaskStatus.CLAIMED},
            consumer_id=consumer_id,
            values=lambda task, now: {"status": TaskStatus.IN_PROGRESS},
        )

    def complete(
        self,
        task_id: EntityId,
        result: Optional[Dict[str, Any]] = None,
        consumer_id: Optional[str] = None,
    ) -> bool:
        """Complete a claimed or in-progress task.

        Returns:
            False if the task is missing, not held, or already terminal
        """
        if result is not None:
            validate_document(result, "result")

        def values(task: Task, now: datetime) -> Dict[str, Any]:
            changes = {"status": TaskStatus.COMPLETED, "completed_at": now}
            if result is not None:
                changes["result"] = result
            return changes

        return self._transition(
            task_id,
            action="complete",
            allowed=set(HELD_TASK_STATUSES),
            consumer_id=consumer_id,
            values=values,
        )

    def fail(self, task_id: EntityId, error_message: str) -> bool:
        """Record a failure, returning the task to pending while retries remain.

        Once retry_count has reached max_retries the task fails permanently.

        Returns:
            False if the task is missing, still pending or already terminal
        """

        def values(task: Task, now: datetime) -> Dict[str, Any]:
            if task.retry_count < task.max_retries:
                return {
                    "status": TaskStatus.PENDING,
                    "retry_count": task.retry_count + 1,
                    "claimed_by": None,
                    "claimed_at": None,
                    "error_message": error_message,
                }
            return {
                "status": TaskStatus.FAILED,
                "error_message": error_message,
                "completed_at": now,
            }

        return self._transition(
            task_id,
            action="fail",
            allowed=set(HELD_TASK_STATUSES),
            values=values,
        )

    # =========================================================================
    # Administration
    # =========================================================================

    def cancel(self, task_id: EntityId, reason: str) -> bool:
        """Cancel a single pending task."""
        return self._transition(
            task_id,
            action="cancel",
            allowed={TaskStatus.PENDING},
            values=lambda task, now: {
                "status": TaskStatus.CANCELLED,
                "error_message": reason,
                "completed_at": now,
            },
        )

    def expire_stale(self, older_than: timedelta, reason: str = "Expired: pending too long") -> int:
        """Cancel every pending task created before now - older_than.

        Returns:
            Number of tasks cancelled
        """
        now = utcnow()
        cutoff = now - older_than

        with get_db(self._session_factory) as db:
            result = db.execute(
                update(Task)
                .where(Task.status == TaskStatus.PENDING, Task.created_at < cutoff)
                .values(
                    status=TaskStatus.CANCELLED,
                    error_message=reason,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            cancelled = result.rowcount or 0

        logger.info("stale_tasks_expired", cancelled=cancelled, cutoff=cutoff.isoformat(), reason=reason)
        return cancelled

    def reap_abandoned(
        self,
        claimed_longer_than: timedelta,
        error_message: str = "Reaped: claim abandoned",
    ) -> int:
        """Fail every held task whose claim is older than the threshold.

        Goes through fail(), so retry bounds still apply.

        Returns:
            Number of tasks failed
        """
        cutoff = utcnow() - claimed_longer_than

        with get_db(self._session_factory) as db:
            stale_ids = [
                row.id
                for row in db.query(Task.id).filter(
                    Task.status.in_(list(HELD_TASK_STATUSES)),
                    Task.claimed_at < cutoff,
                ).all()
            ]

        reaped = sum(1 for task_id in stale_ids if self.fail(task_id, error_message))

        logger.info("abandoned_claims_reaped", candidates=len(stale_ids), reaped=reaped)
        return reaped

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, task_id: EntityId) -> Optional[Task]:
        """Get a task by ID."""
        task_uuid = as_uuid(task_id)
        if task_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            return db.query(Task).filter(Task.id == task_uuid).first()

    def list_tasks(
        self,
        status: Optional[Union[TaskStatus, str]] = None,
        target: Optional[str] = None,
        source: Optional[str] = None,
        kind: Optional[Union[TaskKind, str]] = None,
        min_priority: Optional[int] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Task]:
        """List tasks in claim order, filtered by the given criteria."""
        with get_db(self._session_factory) as db:
            query = db.query(Task)

            if status is not None:
                query = query.filter(Task.status == TaskStatus(status))
            if target is not None:
                query = query.filter(Task.target == target)
            if source is not None:
                query = query.filter(Task.source == source)
            if kind is not None:
                query = query.filter(Task.kind == TaskKind(kind))
            if min_priority is not None:
                query = query.filter(Task.priority >= min_priority)
            if created_after is not None:
                query = query.filter(Task.created_at >= created_after)
            if created_before is not None:
                query = query.filter(Task.created_at < created_before)

            return query.order_by(
                Task.priority.desc(), Task.created_at.asc()
            ).offset(offset).limit(limit).all()

    def stats(self) -> Dict[str, int]:
        """Count tasks per status."""
        with get_db(self._session_factory) as db:
            rows = db.query(Task.status, func.count(Task.id)).group_by(Task.status).all()

        counts = {status.value: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status).value] = count
        return counts

    # =========================================================================
    # Internals
    # =========================================================================

    def _eligible(self, db: Session, target_filter: Optional[str], include_broadcast: bool):
        query = db.query(Task).filter(Task.status == TaskStatus.PENDING)
        if target_filter is None:
            return query
        if include_broadcast:
            return query.filter(or_(Task.target == target_filter, Task.target.is_(None)))
        return query.filter(Task.target == target_filter)

    def _guarded_update(
        self,
        db: Session,
        task_id: UUID,
        expected_status: TaskStatus,
        expected_retry_count: Optional[int] = None,
        **values: Any,
    ) -> bool:
        """Apply values only if the row still has the observed status."""
        stmt = update(Task).where(Task.id == task_id, Task.status == expected_status)
        if expected_retry_count is not None:
            stmt = stmt.where(Task.retry_count == expected_retry_count)

        result = db.execute(
            stmt.values(updated_at=utcnow(), **values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _transition(
        self,
        task_id: EntityId,
        action: str,
        allowed: set,
        values,
        consumer_id: Optional[str] = None,
    ) -> bool:
        task_uuid = as_uuid(task_id)
        if task_uuid is None:
            logger.info("task_not_found", task_id=str(task_id), action=action)
            return False

        with get_db(self._session_factory) as db:
            for _ in range(MAX_TRANSITION_ATTEMPTS):
                task = (
                    db.query(Task)
                    .populate_existing()
                    .filter(Task.id == task_uuid)
                    .with_for_update()
                    .first()
                )
                if task is None:
                    logger.info("task_not_found", task_id=str(task_id), action=action)
                    return False

                if task.status not in allowed:
                    logger.info(
                        "task_transition_rejected",
                        task_id=str(task_id),
                        action=action,
                        status=task.status.value,
                        terminal=task.status in TERMINAL_TASK_STATUSES,
                    )
                    return False

                if consumer_id is not None and task.claimed_by != consumer_id:
                    logger.info(
                        "task_transition_rejected",
                        task_id=str(task_id),
                        action=action,
                        reason="not_holder",
                        claimed_by=task.claimed_by,
                        consumer_id=consumer_id,
                    )
                    return False

                changes = values(task, utcnow())
                if self._guarded_update(
                    db,
                    task.id,
                    expected_status=task.status,
                    expected_retry_count=task.retry_count,
                    **changes,
                ):
                    new_status = changes["status"]
                    log = logger.warning if new_status == TaskStatus.FAILED else logger.info
                    log(
                        f"task_{action}",
                        task_id=str(task_id),
                        from_status=task.status.value,
                        to_status=new_status.value,
                        retry_count=changes.get("retry_count", task.retry_count),
                        max_retries=task.max_retries,
                    )
                    return True

        logger.warning("task_transition_conflict", task_id=str(task_id), action=action)
        return False


# Global work queue instance
_work_queue: Optional[WorkQueue] = None


def get_work_queue() -> WorkQueue:
    """Get the global work queue instance."""
    global _work_queue
    if _work_queue is None:
        _work_queue = WorkQueue()
    return _work_queue
