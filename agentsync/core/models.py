"""Database models for the coordination layer.

Six core relations (tasks, checkpoints, state entries, learnings, submissions,
notifications) plus the bookkeeping tables they rely on.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, DateTime, Enum, ForeignKey,
    JSON, Integer, Boolean, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import UUID, JSONB

Base = declarative_base()

# Opaque caller documents; JSONB where the backend has it
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls, name: str) -> Enum:
    # Persist the lowercase values, not the member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class TaskStatus(str, enum.Enum):
    """Status of a work-queue task."""
    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
HELD_TASK_STATUSES = frozenset({TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS})


class TaskKind(str, enum.Enum):
    """Kind of message carried by a task."""
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    HANDOFF = "handoff"
    SYNC = "sync"


class VerificationStatus(str, enum.Enum):
    """Verification state of a checkpoint."""
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class LearningType(str, enum.Enum):
    """Category of a recorded learning."""
    PATTERN = "pattern"
    ANTI_PATTERN = "anti_pattern"
    OPTIMIZATION = "optimization"
    TOOL_USAGE = "tool_usage"
    COMMUNICATION = "communication"
    ERROR_RECOVERY = "error_recovery"


class SubmissionStatus(str, enum.Enum):
    """Review status of a learning submission."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


class NotificationType(str, enum.Enum):
    """Kind of capability notification."""
    NEW_CAPABILITY = "new_capability"
    UPDATE = "update"
    DEPRECATION = "deprecation"


class Task(Base):
    """A unit of work or message passed between agents via the queue."""

    __tablename__ = "tasks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Routing
    source = Column(String(255), nullable=True)
    target = Column(String(255), nullable=True)  # NULL = broadcast eligible
    kind = Column(_enum(TaskKind, "task_kind"), nullable=False, default=TaskKind.REQUEST)

    # Opaque caller document
    payload = Column(JSONDocument, nullable=False, default=dict)

    # Lifecycle
    status = Column(_enum(TaskStatus, "task_status"), nullable=False, default=TaskStatus.PENDING)
    priority = Column(Integer, nullable=False, default=5)  # Higher = more urgent
    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Outcome
    result = Column(JSONDocument, nullable=True)
    error_message = Column(Text, nullable=True)

    # Retry accounting
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_tasks_target_status", "target", "status"),
        Index("ix_tasks_source", "source"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class Checkpoint(Base):
    """Immutable snapshot of an agent's progress, ordered per session."""

    __tablename__ = "checkpoints"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sequence_number = Column(Integer, nullable=False)
    owner_role = Column(String(100), nullable=False)
    session_key = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    state_snapshot = Column(JSONDocument, nullable=False, default=dict)

    # The only fields that may change after creation
    verification_status = Column(
        _enum(VerificationStatus, "verification_status"),
        nullable=False,
        default=VerificationStatus.UNVERIFIED,
    )
    verified_by = Column(String(255), nullable=True)
    verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("session_key", "sequence_number", name="uq_checkpoint_session_sequence"),
        Index("ix_checkpoints_verification_status", "verification_status"),
    )


class CheckpointSequence(Base):
    """Per-session monotonic counter backing checkpoint sequence numbers."""

    __tablename__ = "checkpoint_sequences"

    session_key = Column(String(255), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class StateEntry(Base):
    """One version of a key in the versioned state store."""

    __tablename__ = "state_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(255), nullable=False)
    value = Column(JSONDocument, nullable=False)
    version = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("key", "version", name="uq_state_key_version"),
        # At most one active version per key
        Index(
            "uq_state_entries_active_key",
            "key",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )


class Learning(Base):
    """A recorded improvement or pattern subject to review and scoring."""

    __tablename__ = "learnings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    learning_type = Column(_enum(LearningType, "learning_type"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    trigger_condition = Column(Text, nullable=True)  # When to apply this learning
    recommended_action = Column(Text, nullable=True)  # What to do when triggered
    examples = Column(JSONDocument, default=list)
    effectiveness_score = Column(Integer, nullable=False, default=0)
    discovered_by = Column(String(255), nullable=True)
    discovered_in_context = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    submissions = relationship("LearningSubmission", back_populates="learning")

    __table_args__ = (
        Index("ix_learnings_type_active", "learning_type", "is_active"),
    )


class LearningSubmission(Base):
    """A learning put forward for organization-wide review."""

    __tablename__ = "learning_submissions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    learning_id = Column(UUID(as_uuid=True), ForeignKey("learnings.id"), nullable=False)
    submitted_by = Column(String(255), nullable=False)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)

    status = Column(
        _enum(SubmissionStatus, "submission_status"),
        nullable=False,
        default=SubmissionStatus.PENDING,
    )
    reviewer = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    revision_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    learning = relationship("Learning", back_populates="submissions")

    __table_args__ = (
        Index("ix_submissions_status", "status", "submitted_at"),
    )


class Consumer(Base):
    """A process that receives capability notifications."""

    __tablename__ = "consumers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    consumer_id = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=True)
    current_canon_version = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime, default=utcnow)
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class CapabilityNotification(Base):
    """Per-consumer notice that an approved learning is available."""

    __tablename__ = "capability_notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    consumer_id = Column(String(255), nullable=False)
    learning_id = Column(UUID(as_uuid=True), ForeignKey("learnings.id"), nullable=False)
    notification_type = Column(
        _enum(NotificationType, "notification_type"),
        nullable=False,
        default=NotificationType.NEW_CAPABILITY,
    )

    is_read = Column(Boolean, nullable=False, default=False)
    is_dismissed = Column(Boolean, nullable=False, default=False)
    is_applied = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    read_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)

    learning = relationship("Learning")

    __table_args__ = (
        UniqueConstraint(
            "consumer_id", "learning_id", "notification_type",
            name="uq_notification_consumer_learning",
        ),
        Index("ix_notifications_consumer_unread", "consumer_id", "is_read", "is_dismissed"),
    )


# Descending scan indices
Index("ix_tasks_claim_scan", Task.status, Task.priority.desc(), Task.created_at)
Index("ix_checkpoints_session_recency", Checkpoint.session_key, Checkpoint.sequence_number.desc())
Index("ix_state_entries_lookup", StateEntry.key, StateEntry.is_active, StateEntry.version.desc())
Index("ix_learnings_active_score", Learning.is_active, Learning.effectiveness_score.desc())


class CanonVersion(Base):
    """Versioned snapshot of the approved, active learnings."""

    __tablename__ = "canon_versions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    version_number = Column(Integer, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    learnings_snapshot = Column(JSONDocument, nullable=False, default=list)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
