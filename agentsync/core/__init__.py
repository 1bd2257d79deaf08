"""Core module for the agent coordination layer."""

from .config import settings
from .models import (
    Task,
    TaskKind,
    TaskStatus,
    Checkpoint,
    VerificationStatus,
    StateEntry,
    Learning,
    LearningType,
    LearningSubmission,
    SubmissionStatus,
    Consumer,
    CapabilityNotification,
    NotificationType,
    CanonVersion,
)
from .database import get_db, init_db
from .exceptions import CoordinationError, PayloadValidationError, WriteConflictError

from .work_queue import WorkQueue, get_work_queue
from .checkpoint import CheckpointLog, get_checkpoint_log
from .state_store import StateStore, VersionedValue, get_state_store
from .quality_gate import SubmissionQualityGate, QualityGateResult
from .notifications import NotificationDispatcher, get_notification_dispatcher
from .learnings import LearningRegistry, get_learning_registry
from .canon import CanonManager, get_canon_manager

__all__ = [
    # Models
    "Task",
    "TaskKind",
    "TaskStatus",
    "Checkpoint",
    "VerificationStatus",
    "StateEntry",
    "Learning",
    "LearningType",
    "LearningSubmission",
    "SubmissionStatus",
    "Consumer",
    "CapabilityNotification",
    "NotificationType",
    "CanonVersion",
    "settings",
    "get_db",
    "init_db",
    # Errors
    "CoordinationError",
    "PayloadValidationError",
    "WriteConflictError",
    # Work Queue
    "WorkQueue",
    "get_work_queue",
    # Checkpoints
    "CheckpointLog",
    "get_checkpoint_log",
    # Versioned State
    "StateStore",
    "VersionedValue",
    "get_state_store",
    # Learnings
    "SubmissionQualityGate",
    "QualityGateResult",
    "NotificationDispatcher",
    "get_notification_dispatcher",
    "LearningRegistry",
    "get_learning_registry",
    "CanonManager",
    "get_canon_manager",
]
