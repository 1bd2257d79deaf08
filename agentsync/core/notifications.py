"""Capability notifications for consumers.

Provides:
- Consumer registration and auto-sync preferences
- Fan-out of one notification per auto-sync consumer when a learning is approved
- Prioritized fetching of pending notifications
- Monotone read / dismiss / apply flags
"""

import uuid
from typing import List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager, sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.logging import get_logger
from agentsync.core.models import (
    CapabilityNotification,
    Consumer,
    Learning,
    LearningSubmission,
    NotificationType,
    SubmissionStatus,
    utcnow,
)
from agentsync.core.validation import EntityId, as_uuid

logger = get_logger(__name__)


class NotificationDispatcher:
    """Tells consumers about newly approved learnings."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    # =========================================================================
    # Consumers
    # =========================================================================

    def register_consumer(
        self,
        consumer_id: str,
        display_name: Optional[str] = None,
        auto_sync_enabled: bool = True,
    ) -> Consumer:
        """Register a consumer, returning the existing row if already known."""
        try:
            with get_db(self._session_factory) as db:
                existing = db.query(Consumer).filter(Consumer.consumer_id == consumer_id).first()
                if existing is not None:
                    return existing

                consumer = Consumer(
                    consumer_id=consumer_id,
                    display_name=display_name,
                    auto_sync_enabled=auto_sync_enabled,
                    current_canon_version=0,
                    created_at=utcnow(),
                )
                db.add(consumer)
                db.flush()
        except IntegrityError:
            # Registered concurrently by another process
            return self.get_consumer(consumer_id)

        logger.info("consumer_registered", consumer_id=consumer_id, auto_sync_enabled=auto_sync_enabled)
        return consumer

    def get_consumer(self, consumer_id: str) -> Optional[Consumer]:
        with get_db(self._session_factory) as db:
            return db.query(Consumer).filter(Consumer.consumer_id == consumer_id).first()

    def list_consumers(self) -> List[Consumer]:
        with get_db(self._session_factory) as db:
            return db.query(Consumer).order_by(Consumer.created_at).all()

    def set_auto_sync(self, consumer_id: str, enabled: bool) -> bool:
        """Opt a consumer in or out of approval notifications."""
        with get_db(self._session_factory) as db:
            result = db.execute(
                update(Consumer)
                .where(Consumer.consumer_id == consumer_id)
                .values(auto_sync_enabled=enabled)
                .execution_options(synchronize_session=False)
            )
            found = result.rowcount == 1

        if found:
            logger.info("consumer_auto_sync_changed", consumer_id=consumer_id, enabled=enabled)
        return found

    # =========================================================================
    # Fan-out
    # =========================================================================

    def on_approved(
        self,
        db: Session,
        submission: LearningSubmission,
        previous_status: Union[SubmissionStatus, str, None],
    ) -> int:
        """Create notifications for a submission that just became approved.

        Runs inside the caller's transaction so the status change and the
        notifications commit together. Only the edge into approved fires.

        Returns:
            Number of notifications created
        """
        if previous_status is not None and SubmissionStatus(previous_status) == SubmissionStatus.APPROVED:
            return 0
        if SubmissionStatus(submission.status) != SubmissionStatus.APPROVED:
            return 0

        already_notified = select(CapabilityNotification.consumer_id).where(
            CapabilityNotification.learning_id == submission.learning_id,
            CapabilityNotification.notification_type == NotificationType.NEW_CAPABILITY,
        )
        recipients = db.query(Consumer.consumer_id).filter(
            Consumer.auto_sync_enabled.is_(True),
            Consumer.consumer_id.notin_(already_notified),
        ).all()

        created = self.notify_consumers(db, submission.learning_id, [row.consumer_id for row in recipients])

        logger.info(
            "capability_notifications_created",
            learning_id=str(submission.learning_id),
            submission_id=str(submission.id),
            recipients=len(recipients),
            created=created,
        )
        return created

    def notify_consumers(self, db: Session, learning_id: uuid.UUID, consumer_ids: List[str]) -> int:
        """Insert new_capability notifications, skipping consumers that already have one.

        Two approvals of the same learning can pick the same recipients
        concurrently; the loser's rows are dropped by ON CONFLICT DO NOTHING
        so the approval itself still commits.

        Returns:
            Number of notifications actually inserted
        """
        consumer_ids = list(dict.fromkeys(consumer_ids))
        if not consumer_ids:
            return 0

        now = utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "consumer_id": consumer_id,
                "learning_id": learning_id,
                "notification_type": NotificationType.NEW_CAPABILITY,
                "is_read": False,
                "is_dismissed": False,
                "is_applied": False,
                "created_at": now,
            }
            for consumer_id in consumer_ids
        ]

        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql_insert(CapabilityNotification.__table__)
        elif dialect == "sqlite":
            stmt = sqlite_insert(CapabilityNotification.__table__)
        else:
            raise NotImplementedError(f"notification fan-out does not support the {dialect} dialect")

        stmt = stmt.values(rows).on_conflict_do_nothing(
            index_elements=["consumer_id", "learning_id", "notification_type"],
        )
        result = db.connection().execute(stmt)
        return result.rowcount or 0

    # =========================================================================
    # Consumer inbox
    # =========================================================================

    def fetch_pending(self, consumer_id: str, limit: Optional[int] = None) -> List[CapabilityNotification]:
        """Unread, undismissed notifications about active learnings.

        Ordered by learning effectiveness, then newest notification first.
        The learning is loaded with each notification.
        """
        limit = settings.notification_fetch_limit if limit is None else limit

        with get_db(self._session_factory) as db:
            return (
                db.query(CapabilityNotification)
                .join(CapabilityNotification.learning)
                .options(contains_eager(CapabilityNotification.learning))
                .filter(
                    CapabilityNotification.consumer_id == consumer_id,
                    CapabilityNotification.is_read.is_(False),
                    CapabilityNotification.is_dismissed.is_(False),
                    Learning.is_active.is_(True),
                )
                .order_by(
                    Learning.effectiveness_score.desc(),
                    CapabilityNotification.created_at.desc(),
                )
                .limit(limit)
                .all()
            )

    def get(self, notification_id: EntityId) -> Optional[CapabilityNotification]:
        notification_uuid = as_uuid(notification_id)
        if notification_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            return db.query(CapabilityNotification).filter(
                CapabilityNotification.id == notification_uuid,
            ).first()

    def mark_read(self, notification_id: EntityId) -> bool:
        return self._set_flags(notification_id, "read", is_read=True)

    def dismiss(self, notification_id: EntityId) -> bool:
        """Dismiss a notification. Dismissed notifications count as read."""
        return self._set_flags(notification_id, "dismissed", is_read=True, is_dismissed=True)

    def apply(self, notification_id: EntityId) -> bool:
        """Record that the consumer adopted the learning."""
        return self._set_flags(
            notification_id,
            "applied",
            is_read=True,
            is_applied=True,
            applied_at=func.coalesce(CapabilityNotification.applied_at, utcnow()),
        )

    def _set_flags(self, notification_id: EntityId, action: str, **values) -> bool:
        notification_uuid = as_uuid(notification_id)
        if notification_uuid is None:
            return False

        # Flags only ever go from false to true; the first read time sticks
        values["read_at"] = func.coalesce(CapabilityNotification.read_at, utcnow())

        with get_db(self._session_factory) as db:
            result = db.execute(
                update(CapabilityNotification)
                .where(CapabilityNotification.id == notification_uuid)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            found = result.rowcount == 1

        if found:
            logger.info(f"notification_{action}", notification_id=str(notification_id))
        else:
            logger.info("notification_not_found", notification_id=str(notification_id), action=action)
        return found


# Global dispatcher instance
_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global notification dispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
