"""Checkpoint log for resumable progress.

Provides:
- Append-only progress snapshots per session
- Collision-free per-session sequence numbers
- One-way verification of checkpoints
- Resume-point lookup (latest verified checkpoint)
"""

from typing import Any, Dict, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.exceptions import WriteConflictError
from agentsync.core.logging import get_logger
from agentsync.core.models import (
    Checkpoint,
    CheckpointSequence,
    VerificationStatus,
    utcnow,
)
from agentsync.core.validation import EntityId, as_uuid, validate_document

logger = get_logger(__name__)


class CheckpointLog:
    """Manages session checkpoints and resume points."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def append(
        self,
        owner_role: str,
        session_key: str,
        description: Optional[str] = None,
        state_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """Append a checkpoint with the next sequence number for the session.

        Args:
            owner_role: Agent role that owns the checkpoint
            session_key: Session the checkpoint belongs to
            description: Human-readable summary
            state_snapshot: Opaque progress document

        Returns:
            The created, unverified Checkpoint
        """
        state_snapshot = {} if state_snapshot is None else state_snapshot
        validate_document(state_snapshot, "state_snapshot")

        attempts = settings.write_conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                with get_db(self._session_factory) as db:
                    sequence_number = self._next_sequence(db, session_key)
                    checkpoint = Checkpoint(
                        sequence_number=sequence_number,
                        owner_role=owner_role,
                        session_key=session_key,
                        description=description,
                        state_snapshot=state_snapshot,
                        verification_status=VerificationStatus.UNVERIFIED,
                        created_at=utcnow(),
                    )
                    db.add(checkpoint)
                    db.flush()
            except IntegrityError:
                # Two first-time appends raced to create the counter row
                logger.info("checkpoint_sequence_conflict", session_key=session_key, attempt=attempt)
                continue

            logger.info(
                "checkpoint_created",
                checkpoint_id=str(checkpoint.id),
                session_key=session_key,
                owner_role=owner_role,
                sequence_number=sequence_number,
            )
            return checkpoint

        raise WriteConflictError(
            f"Could not allocate a checkpoint sequence for session {session_key}",
            key=session_key,
            attempts=attempts,
        )

    def _next_sequence(self, db: Session, session_key: str) -> int:
        """Increment the session counter inside the caller's transaction."""
        result = db.execute(
            update(CheckpointSequence)
            .where(CheckpointSequence.session_key == session_key)
            .values(last_value=CheckpointSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.add(CheckpointSequence(session_key=session_key, last_value=1))
            db.flush()
            return 1

        return db.query(CheckpointSequence.last_value).filter(
            CheckpointSequence.session_key == session_key
        ).scalar()

    def verify(
        self,
        checkpoint_id: EntityId,
        verifier: str,
        status: Union[VerificationStatus, str] = VerificationStatus.VERIFIED,
    ) -> bool:
        """Move an unverified checkpoint to verified or failed.

        Returns:
            False if the checkpoint is missing or was already verified/failed
        """
        status = VerificationStatus(status)
        if status == VerificationStatus.UNVERIFIED:
            raise ValueError("verification status must be 'verified' or 'failed'")

        checkpoint_uuid = as_uuid(checkpoint_id)
        if checkpoint_uuid is None:
            return False

        now = utcnow()
        with get_db(self._session_factory) as db:
            result = db.execute(
                update(Checkpoint)
                .where(
                    Checkpoint.id == checkpoint_uuid,
                    Checkpoint.verification_status == VerificationStatus.UNVERIFIED,
                )
                .values(
                    verification_status=status,
                    verified_by=verifier,
                    verified_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1

        if changed:
            logger.info(
                "checkpoint_verified",
                checkpoint_id=str(checkpoint_id),
                verifier=verifier,
                status=status.value,
            )
        else:
            logger.info("checkpoint_verify_rejected", checkpoint_id=str(checkpoint_id), verifier=verifier)
        return changed

    def latest_verified(self, session_key: str) -> Optional[Checkpoint]:
        """Get the resume point: the newest verified checkpoint of the session."""
        with get_db(self._session_factory) as db:
            return db.query(Checkpoint).filter(
                Checkpoint.session_key == session_key,
                Checkpoint.verification_status == VerificationStatus.VERIFIED,
            ).order_by(Checkpoint.sequence_number.desc()).first()

    def latest(self, session_key: str) -> Optional[Checkpoint]:
        """Get the newest checkpoint of the session regardless of status.

        Not authoritative for resuming; use latest_verified for that.
        """
        with get_db(self._session_factory) as db:
            return db.query(Checkpoint).filter(
                Checkpoint.session_key == session_key,
            ).order_by(Checkpoint.sequence_number.desc()).first()

    def get(self, checkpoint_id: EntityId) -> Optional[Checkpoint]:
        checkpoint_uuid = as_uuid(checkpoint_id)
        if checkpoint_uuid is None:
            return None

        with get_db(self._session_factory) as db:
            return db.query(Checkpoint).filter(Checkpoint.id == checkpoint_uuid).first()

    def list_checkpoints(
        self,
        session_key: str,
        status: Optional[Union[VerificationStatus, str]] = None,
        limit: int = 10,
    ) -> List[Checkpoint]:
        """List checkpoints for a session, newest first."""
        with get_db(self._session_factory) as db:
            query = db.query(Checkpoint).filter(Checkpoint.session_key == session_key)
            if status is not None:
                query = query.filter(Checkpoint.verification_status == VerificationStatus(status))
            return query.order_by(Checkpoint.sequence_number.desc()).limit(limit).all()


# Global checkpoint log instance
_checkpoint_log: Optional[CheckpointLog] = None


def get_checkpoint_log() -> CheckpointLog:
    """Get the global checkpoint log instance."""
    global _checkpoint_log
    if _checkpoint_log is None:
        _checkpoint_log = CheckpointLog()
    return _checkpoint_log
