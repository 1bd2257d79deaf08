"""Learning registry with review workflow and effectiveness scoring.

Provides:
- Recording learnings discovered by agents
- Submission review (approve, reject, request revision, resubmit)
- Automatic rejection of submissions below the quality bar
- Effectiveness feedback that retires learnings which keep failing
"""

from typing import Any, Dict, List, Optional, Set, Union

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.logging import get_logger
from agentsync.core.models import (
    Learning,
    LearningSubmission,
    LearningType,
    SubmissionStatus,
    utcnow,
)
from agentsync.core.notifications import NotificationDispatcher
from agentsync.core.quality_gate import SubmissionQualityGate
from agentsync.core.validation import EntityId, as_uuid, validate_document

logger = get_logger(__name__)

SYSTEM_REVIEWER = "system"

REVIEWABLE_STATUSES = frozenset({SubmissionStatus.PENDING, SubmissionStatus.NEEDS_REVISION})


class LearningRegistry:
    """Stores learnings and moves their submissions through review."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        gate: Optional[SubmissionQualityGate] = None,
    ):
        self._session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher(session_factory)
        self.gate = gate or SubmissionQualityGate()

    # =========================================================================
    # Learnings
    # =========================================================================

    def record_learning(
        self,
        learning_type: Union[LearningType, str],
        title: str,
        description: str,
        trigger_condition: Optional[str] = None,
        recommended_action: Optional[str] = None,
        examples: Optional[List[Any]] = None,
        discovered_by: Optional[str] = None,
        discovered_in_context: Optional[str] = None,
    ) -> Learning:
        """Record a new active learning with a zero effectiveness score."""
        if not title or not description:
            raise ValueError("title and description are required")
        examples = [] if examples is None else examples
        validate_document(examples, "examples")

        learning = Learning(
            learning_type=LearningType(learning_type),
            title=title,
            description=description,
            trigger_condition=trigger_condition,
            recommended_action=recommended_action,
            examples=examples,
            effectiveness_score=0,
            discovered_by=discovered_by,
            discovered_in_context=discovered_in_context,
            is_active=True,
            created_at=utcnow(),
        )

        with get_db(self._session_factory) as db:
            db.add(learning)
            db.flush()

        logger.info(
            "learning_recorded",
            learning_id=str(learning.id),
            learning_type=learning.learning_type.value,
            discovered_by=discovered_by,
        )
        return learning

    def get_learning(self, learning_id: EntityId) -> Optional[Learning]:
        learning_uuid = as_uuid(learning_id)
        if learning_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            return db.query(Learning).filter(Learning.id == learning_uuid).first()

    def active_learnings(
        self,
        learning_type: Optional[Union[LearningType, str]] = None,
        limit: int = 50,
    ) -> List[Learning]:
        """Active learnings, most effective first."""
        with get_db(self._session_factory) as db:
            query = db.query(Learning).filter(Learning.is_active.is_(True))
            if learning_type is not None:
                query = query.filter(Learning.learning_type == LearningType(learning_type))
            return query.order_by(
                Learning.effectiveness_score.desc(),
                Learning.created_at.desc(),
            ).limit(limit).all()

    def revise_learning(self, learning_id: EntityId, **fields: Any) -> bool:
        """Edit the text of a learning, typically before resubmitting it."""
        editable = {"title", "description", "trigger_condition", "recommended_action", "examples"}
        unknown = set(fields) - editable
        if unknown:
            raise ValueError(f"cannot revise fields: {', '.join(sorted(unknown))}")
        if "examples" in fields:
            validate_document(fields["examples"], "examples")

        learning_uuid = as_uuid(learning_id)
        if learning_uuid is None or not fields:
            return False

        with get_db(self._session_factory) as db:
            result = db.execute(
                update(Learning)
                .where(Learning.id == learning_uuid)
                .values(updated_at=utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            found = result.rowcount == 1

        if found:
            logger.info("learning_revised", learning_id=str(learning_id), fields=sorted(fields))
        return found

    def update_effectiveness(self, learning_id: EntityId, delta: int) -> bool:
        """Add delta to the effectiveness score.

        A negative delta that leaves the score below the deactivation
        threshold retires the learning. Deactivated learnings are never
        reactivated by later positive feedback.

        Returns:
            False if the learning does not exist
        """
        learning_uuid = as_uuid(learning_id)
        if learning_uuid is None:
            return False

        threshold = settings.learning_deactivation_threshold
        with get_db(self._session_factory) as db:
            result = db.execute(
                update(Learning)
                .where(Learning.id == learning_uuid)
                .values(
                    effectiveness_score=Learning.effectiveness_score + delta,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("learning_not_found", learning_id=str(learning_id))
                return False

            deactivated = False
            if delta < 0:
                deactivated = db.execute(
                    update(Learning)
                    .where(
                        Learning.id == learning_uuid,
                        Learning.is_active.is_(True),
                        Learning.effectiveness_score < threshold,
                    )
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                ).rowcount == 1

        logger.info("learning_effectiveness_updated", learning_id=str(learning_id), delta=delta)
        if deactivated:
            logger.warning("learning_deactivated", learning_id=str(learning_id), threshold=threshold)
        return True

    # =========================================================================
    # Submissions
    # =========================================================================

    def submit_for_review(self, learning_id: EntityId, submitted_by: str) -> Optional[LearningSubmission]:
        """Put a learning forward for review.

        The quality gate runs immediately; a learning below the bar is
        stored as rejected by the system reviewer.

        Returns:
            The submission, or None if the learning does not exist
        """
        learning_uuid = as_uuid(learning_id)
        if learning_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            learning = db.query(Learning).filter(Learning.id == learning_uuid).first()
            if learning is None:
                logger.info("learning_not_found", learning_id=str(learning_id))
                return None

            now = utcnow()
            submission = LearningSubmission(
                learning_id=learning.id,
                submitted_by=submitted_by,
                submitted_at=now,
                status=SubmissionStatus.PENDING,
                revision_count=0,
            )

            verdict = self.gate.check_learning(learning)
            if not verdict.passed:
                submission.status = SubmissionStatus.REJECTED
                submission.reviewer = SYSTEM_REVIEWER
                submission.reviewed_at = now
                submission.review_notes = verdict.review_notes

            db.add(submission)
            db.flush()

        if verdict.passed:
            logger.info("submission_created", submission_id=str(submission.id), learning_id=str(learning_id))
        else:
            logger.info(
                "submission_auto_rejected",
                submission_id=str(submission.id),
                learning_id=str(learning_id),
                reason=verdict.reason,
            )
        return submission

    def get_submission(self, submission_id: EntityId) -> Optional[LearningSubmission]:
        submission_uuid = as_uuid(submission_id)
        if submission_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            return db.query(LearningSubmission).filter(LearningSubmission.id == submission_uuid).first()

    def list_submissions(
        self,
        status: Optional[Union[SubmissionStatus, str]] = None,
        limit: int = 50,
    ) -> List[LearningSubmission]:
        """Submissions in arrival order, optionally filtered by status."""
        with get_db(self._session_factory) as db:
            query = db.query(LearningSubmission)
            if status is not None:
                query = query.filter(LearningSubmission.status == SubmissionStatus(status))
            return query.order_by(LearningSubmission.submitted_at.asc()).limit(limit).all()

    def approve(self, submission_id: EntityId, reviewer: str, notes: Optional[str] = None) -> bool:
        """Approve a submission and notify auto-sync consumers in the same transaction."""
        return self._review(
            submission_id,
            action="approve",
            allowed=REVIEWABLE_STATUSES,
            values=lambda submission, now: {
                "status": SubmissionStatus.APPROVED,
                "reviewer": reviewer,
                "reviewed_at": now,
                "review_notes": notes,
            },
        )

    def reject(self, submission_id: EntityId, reviewer: str, notes: Optional[str] = None) -> bool:
        return self._review(
            submission_id,
            action="reject",
            allowed=REVIEWABLE_STATUSES,
            values=lambda submission, now: {
                "status": SubmissionStatus.REJECTED,
                "reviewer": reviewer,
                "reviewed_at": now,
                "review_notes": notes,
            },
        )

    def request_revision(self, submission_id: EntityId, reviewer: str, notes: Optional[str] = None) -> bool:
        """Send a submission back to its author for changes."""
        return self._review(
            submission_id,
            action="request_revision",
            allowed=REVIEWABLE_STATUSES,
            values=lambda submission, now: {
                "status": SubmissionStatus.NEEDS_REVISION,
                "reviewer": reviewer,
                "reviewed_at": now,
                "review_notes": notes,
                "revision_count": submission.revision_count + 1,
            },
        )

    def resubmit(self, submission_id: EntityId) -> Optional[LearningSubmission]:
        """Return a revised submission to the review queue.

        The quality gate runs again against the current learning text.

        Returns:
            The updated submission (pending, or rejected by the gate), or None
            if the submission is missing or not awaiting revision
        """

        def values(submission: LearningSubmission, now) -> Dict[str, Any]:
            verdict = self.gate.check_learning(submission.learning)
            if verdict.passed:
                return {"status": SubmissionStatus.PENDING, "submitted_at": now}
            return {
                "status": SubmissionStatus.REJECTED,
                "reviewer": SYSTEM_REVIEWER,
                "reviewed_at": now,
                "review_notes": verdict.review_notes,
            }

        if not self._review(
            submission_id,
            action="resubmit",
            allowed=frozenset({SubmissionStatus.NEEDS_REVISION}),
            values=values,
        ):
            return None
        return self.get_submission(submission_id)

    def _review(self, submission_id: EntityId, action: str, allowed: Set[SubmissionStatus], values) -> bool:
        submission_uuid = as_uuid(submission_id)
        if submission_uuid is None:
            logger.info("submission_not_found", submission_id=str(submission_id), action=action)
            return False

        with get_db(self._session_factory) as db:
            submission = (
                db.query(LearningSubmission)
                .populate_existing()
                .filter(LearningSubmission.id == submission_uuid)
                .with_for_update()
                .first()
            )
            if submission is None:
                logger.info("submission_not_found", submission_id=str(submission_id), action=action)
                return False

            previous_status = submission.status
            if previous_status not in allowed:
                logger.info(
                    "submission_transition_rejected",
                    submission_id=str(submission_id),
                    action=action,
                    status=previous_status.value,
                )
                return False

            now = utcnow()
            changes = values(submission, now)
            result = db.execute(
                update(LearningSubmission)
                .where(
                    LearningSubmission.id == submission_uuid,
                    LearningSubmission.status == previous_status,
                )
                .values(updated_at=now, **changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another reviewer got there first
                logger.info("submission_transition_conflict", submission_id=str(submission_id), action=action)
                return False

            db.refresh(submission)
            notified = self.dispatcher.on_approved(db, submission, previous_status)

        logger.info(
            f"submission_{action}",
            submission_id=str(submission_id),
            from_status=previous_status.value,
            to_status=changes["status"].value,
            notified=notified,
        )
        return True


# Global registry instance
_registry: Optional[LearningRegistry] = None


def get_learning_registry() -> LearningRegistry:
    """Get the global learning registry instance."""
    global _registry
    if _registry is None:
        _registry = LearningRegistry()
    return _registry
