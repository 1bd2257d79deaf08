"""Canon versions: numbered snapshots of the approved, active learnings.

Consumers track the last canon version they synced so they can pull only
what was approved since.
"""

from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.exceptions import WriteConflictError
from agentsync.core.logging import get_logger
from agentsync.core.models import (
    CanonVersion,
    Consumer,
    Learning,
    LearningSubmission,
    SubmissionStatus,
    utcnow,
)

logger = get_logger(__name__)


def _snapshot_entry(learning: Learning) -> Dict[str, Any]:
    return {
        "id": str(learning.id),
        "learning_type": learning.learning_type.value,
        "title": learning.title,
        "effectiveness_score": learning.effectiveness_score,
    }


class CanonManager:
    """Creates canon versions and brings consumers up to date."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def create_canon_version(
        self,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> int:
        """Snapshot the current canon under the next version number."""
        attempts = settings.write_conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                with get_db(self._session_factory) as db:
                    learnings = self._approved_active(db)
                    version_number = self._latest_version_number(db) + 1
                    db.add(CanonVersion(
                        version_number=version_number,
                        description=description,
                        learnings_snapshot=[_snapshot_entry(l) for l in learnings],
                        created_by=created_by,
                        created_at=utcnow(),
                    ))
                    db.flush()
            except IntegrityError:
                logger.info("canon_version_conflict", attempt=attempt)
                continue

            logger.info(
                "canon_version_created",
                version_number=version_number,
                learnings=len(learnings),
                created_by=created_by,
            )
            return version_number

        raise WriteConflictError(
            f"Could not allocate a canon version after {attempts} attempts",
            key="canon",
            attempts=attempts,
        )

    def get_canon_version(self, version_number: int) -> Optional[CanonVersion]:
        with get_db(self._session_factory) as db:
            return db.query(CanonVersion).filter(CanonVersion.version_number == version_number).first()

    def latest_canon_version(self) -> Optional[CanonVersion]:
        with get_db(self._session_factory) as db:
            return db.query(CanonVersion).order_by(CanonVersion.version_number.desc()).first()

    def learnings_since_version(self, version_number: int) -> List[Learning]:
        """Approved, active learnings not included in the given canon version."""
        with get_db(self._session_factory) as db:
            return self._since(db, version_number)

    def sync_consumer(self, consumer_id: str) -> Optional[List[Learning]]:
        """Return what the consumer has not seen and advance it to the latest canon.

        Returns:
            The learnings to apply, or None if the consumer is unknown
        """
        with get_db(self._session_factory) as db:
            consumer = db.query(Consumer).filter(Consumer.consumer_id == consumer_id).first()
            if consumer is None:
                logger.info("consumer_not_found", consumer_id=consumer_id)
                return None

            from_version = consumer.current_canon_version
            learnings = self._since(db, from_version)
            to_version = max(self._latest_version_number(db), from_version)

            db.execute(
                update(Consumer)
                .where(Consumer.id == consumer.id)
                .values(current_canon_version=to_version, last_sync_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "consumer_synced",
            consumer_id=consumer_id,
            from_version=from_version,
            to_version=to_version,
            learnings=len(learnings),
        )
        return learnings

    def _approved_active(self, db: Session) -> List[Learning]:
        approved = select(LearningSubmission.learning_id).where(
            LearningSubmission.status == SubmissionStatus.APPROVED,
        )
        return db.query(Learning).filter(
            Learning.is_active.is_(True),
            Learning.id.in_(approved),
        ).order_by(Learning.effectiveness_score.desc(), Learning.created_at.desc()).all()

    def _since(self, db: Session, version_number: int) -> List[Learning]:
        seen: Set[str] = set()
        if version_number > 0:
            canon = db.query(CanonVersion).filter(CanonVersion.version_number == version_number).first()
            if canon is not None:
                seen = {entry["id"] for entry in canon.learnings_snapshot or []}
        return [l for l in self._approved_active(db) if str(l.id) not in seen]

    def _latest_version_number(self, db: Session) -> int:
        return db.query(func.max(CanonVersion.version_number)).scalar() or 0


# Global canon manager instance
_canon_manager: Optional[CanonManager] = None


def get_canon_manager() -> CanonManager:
    """Get the global canon manager instance."""
    global _canon_manager
    if _canon_manager is None:
        _canon_manager = CanonManager()
    return _canon_manager
