"""Versioned key-value store for shared state.

Every write creates a new version of the key and retires the previous one,
so exactly one active version exists per key and the history is kept.
"""

from typing import Any, Callable, List, NamedTuple, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from agentsync.core.config import settings
from agentsync.core.database import get_db
from agentsync.core.exceptions import WriteConflictError
from agentsync.core.logging import get_logger
from agentsync.core.models import StateEntry, utcnow
from agentsync.core.validation import validate_document

logger = get_logger(__name__)


class VersionedValue(NamedTuple):
    """The active value of a key and its version number."""

    value: Any
    version: int


class StateStore:
    """Key-value store where each Set appends a new active version."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[VersionedValue]:
        """Get the active value of a key, or None if it was never set."""
        with get_db(self._session_factory) as db:
            entry = self._active_entry(db, key)
            if entry is None:
                return None
            return VersionedValue(entry.value, entry.version)

    def set(self, key: str, value: Any, description: Optional[str] = None) -> int:
        """Write a new version of the key.

        Returns:
            The new version number (1 for a new key)

        Raises:
            WriteConflictError: concurrent writers kept winning every retry
        """
        validate_document(value, "value")
        return self._write(key, value, description, precondition=None)

    def set_if_version(
        self,
        key: str,
        value: Any,
        expected_version: int,
        description: Optional[str] = None,
    ) -> Optional[int]:
        """Write only if the active version still equals expected_version.

        Use expected_version=0 to create a key that must not exist yet.

        Returns:
            The new version number, or None if the key moved on
        """
        validate_document(value, "value")
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")

        def precondition(current: int) -> bool:
            return current == expected_version

        return self._write(key, value, description, precondition=precondition)

    def get_version(self, key: str, version: int) -> Optional[StateEntry]:
        """Get a specific historical version of a key."""
        with get_db(self._session_factory) as db:
            return db.query(StateEntry).filter(
                StateEntry.key == key,
                StateEntry.version == version,
            ).first()

    def history(self, key: str, limit: int = 50) -> List[StateEntry]:
        """All versions of a key, newest first."""
        with get_db(self._session_factory) as db:
            return db.query(StateEntry).filter(
                StateEntry.key == key,
            ).order_by(StateEntry.version.desc()).limit(limit).all()

    def keys(self) -> List[str]:
        """Keys that currently have an active version."""
        with get_db(self._session_factory) as db:
            rows = db.query(StateEntry.key).filter(
                StateEntry.is_active.is_(True),
            ).order_by(StateEntry.key).all()
        return [row.key for row in rows]

    def _active_entry(self, db: Session, key: str) -> Optional[StateEntry]:
        return db.query(StateEntry).filter(
            StateEntry.key == key,
            StateEntry.is_active.is_(True),
        ).order_by(StateEntry.version.desc()).first()

    def _write(
        self,
        key: str,
        value: Any,
        description: Optional[str],
        precondition: Optional[Callable[[int], bool]],
    ) -> Optional[int]:
        attempts = settings.write_conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                with get_db(self._session_factory) as db:
                    now = utcnow()
                    # Taking the write lock first serialises writers of this key
                    db.execute(
                        update(StateEntry)
                        .where(StateEntry.key == key, StateEntry.is_active.is_(True))
                        .values(is_active=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    current = db.query(func.max(StateEntry.version)).filter(
                        StateEntry.key == key,
                    ).scalar() or 0

                    if precondition is not None and not precondition(current):
                        db.rollback()
                        logger.info("state_version_mismatch", key=key, current_version=current)
                        return None

                    version = current + 1
                    db.add(StateEntry(
                        key=key,
                        value=value,
                        version=version,
                        description=description,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    ))
                    db.flush()
            except IntegrityError:
                logger.info("state_write_conflict", key=key, attempt=attempt)
                continue

            logger.info("state_set", key=key, version=version)
            return version

        raise WriteConflictError(
            f"Could not write state key {key} after {attempts} attempts",
            key=key,
            attempts=attempts,
        )


# Global state store instance
_state_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    """Get the global state store instance."""
    global _state_store
    if _state_store is None:
        _state_store = StateStore()
    return _state_store
