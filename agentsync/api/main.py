"""FastAPI application for the agent coordination layer.

Exposes:
- Work queue (enqueue, claim, lifecycle, maintenance)
- Checkpoint log and resume points
- Versioned shared state
- Learnings, review workflow, consumer notifications and canon sync
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, validator
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from agentsync import __version__
from agentsync.core.canon import CanonManager, get_canon_manager
from agentsync.core.checkpoint import CheckpointLog, get_checkpoint_log
from agentsync.core.config import settings
from agentsync.core.database import SessionLocal, get_db, init_db
from agentsync.core.exceptions import PayloadValidationError, WriteConflictError
from agentsync.core.learnings import LearningRegistry, get_learning_registry
from agentsync.core.logging import RequestIDMiddleware, bound_context, configure_logging, get_logger
from agentsync.core.models import (
    CanonVersion,
    CapabilityNotification,
    Checkpoint,
    Consumer,
    Learning,
    LearningSubmission,
    LearningType,
    StateEntry,
    SubmissionStatus,
    Task,
    TaskKind,
    TaskStatus,
    VerificationStatus,
)
from agentsync.core.notifications import NotificationDispatcher, get_notification_dispatcher
from agentsync.core.state_store import StateStore, get_state_store
from agentsync.core.work_queue import WorkQueue, get_work_queue

# Configure structured logging
configure_logging()
logger = get_logger(__name__)

# =============================================================================
# FastAPI App Setup
# =============================================================================

app = FastAPI(
    title="AgentSync API",
    description="Coordination and persistence layer for cooperating agents",
    version=__version__,
    docs_url="/docs" if settings.log_level == "DEBUG" else None,  # Hide docs in production
    redoc_url="/redoc" if settings.log_level == "DEBUG" else None,
)

# Add middlewares
app.add_middleware(RequestIDMiddleware)

# CORS middleware
origins = settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Dependencies
# =============================================================================

def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_queue() -> WorkQueue:
    return get_work_queue()


def get_checkpoints() -> CheckpointLog:
    return get_checkpoint_log()


def get_state() -> StateStore:
    return get_state_store()


def get_registry() -> LearningRegistry:
    return get_learning_registry()


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_canon() -> CanonManager:
    return get_canon_manager()


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for HTTP exceptions."""
    logger.warning(
        "http_exception",
        path=request.url.path,
        status_code=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(PayloadValidationError)
async def payload_exception_handler(request: Request, exc: PayloadValidationError):
    logger.warning("payload_rejected", path=request.url.path, error=str(exc), size=exc.size)
    return JSONResponse(
        status_code=413 if exc.size else 422,
        content={"detail": str(exc), "type": "payload_invalid"},
    )


@app.exception_handler(WriteConflictError)
async def write_conflict_handler(request: Request, exc: WriteConflictError):
    logger.warning("write_conflict", path=request.url.path, key=exc.key, attempts=exc.attempts)
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "type": "write_conflict"},
    )


# =============================================================================
# Pydantic Models with Validation
# =============================================================================

class TaskCreate(BaseModel):
    source: Optional[str] = Field(None, max_length=255)
    target: Optional[str] = Field(None, max_length=255, description="Intended consumer; omit to broadcast")
    kind: TaskKind = TaskKind.REQUEST
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = Field(None, description="Higher is more urgent")
    max_retries: Optional[int] = Field(None, ge=0, le=100)


class TaskResponse(BaseModel):
    id: str
    source: Optional[str]
    target: Optional[str]
    kind: str
    payload: Dict[str, Any]
    status: str
    priority: int
    claimed_by: Optional[str]
    claimed_at: Optional[datetime]
    completed_at: Optional[datetime]
    result: Optional[Dict[str, Any]]
    error_message: Optional[str]
    retry_count: int
    max_retries: int
    created_at: datetime

    class Config:
        from_attributes = True


class ClaimRequest(BaseModel):
    consumer_id: str = Field(..., min_length=1, max_length=255)
    target_filter: Optional[str] = None
    include_broadcast: bool = False

    @validator("consumer_id")
    def consumer_id_not_blank(cls, v):
        if not v.strip():
            raise ValueError("consumer_id cannot be empty or whitespace only")
        return v.strip()


class ClaimResponse(BaseModel):
    claimed: bool
    task: Optional[TaskResponse] = None


class HolderRequest(BaseModel):
    consumer_id: Optional[str] = Field(None, description="Reject unless this consumer holds the claim")


class CompleteRequest(HolderRequest):
    result: Optional[Dict[str, Any]] = None


class FailRequest(BaseModel):
    error_message: str = Field(..., min_length=1, max_length=10000)


class CancelRequest(BaseModel):
    reason: str = Field("Cancelled by operator", min_length=1, max_length=10000)


class ExpireRequest(BaseModel):
    older_than_seconds: int = Field(..., ge=0)
    reason: str = Field("Expired: pending too long", min_length=1)


class ReapRequest(BaseModel):
    claimed_longer_than_seconds: int = Field(..., ge=0)
    error_message: str = Field("Reaped: claim abandoned", min_length=1)


class CheckpointCreate(BaseModel):
    owner_role: str = Field(..., min_length=1, max_length=100)
    session_key: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    state_snapshot: Dict[str, Any] = Field(default_factory=dict)


class CheckpointResponse(BaseModel):
    id: str
    sequence_number: int
    owner_role: str
    session_key: str
    description: Optional[str]
    state_snapshot: Dict[str, Any]
    verification_status: str
    verified_by: Optional[str]
    verified_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class VerifyRequest(BaseModel):
    verifier: str = Field(..., min_length=1, max_length=255)
    status: VerificationStatus = VerificationStatus.VERIFIED


class StateWrite(BaseModel):
    value: Any
    description: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=0, description="Write only if the key is at this version")


class StateValueResponse(BaseModel):
    key: str
    value: Any
    version: int


class StateEntryResponse(BaseModel):
    key: str
    value: Any
    version: int
    description: Optional[str]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class LearningCreate(BaseModel):
    learning_type: LearningType
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    trigger_condition: Optional[str] = None
    recommended_action: Optional[str] = None
    examples: List[Any] = Field(default_factory=list)
    discovered_by: Optional[str] = None
    discovered_in_context: Optional[str] = None


class LearningRevise(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, min_length=1)
    trigger_condition: Optional[str] = None
    recommended_action: Optional[str] = None
    examples: Optional[List[Any]] = None


class LearningResponse(BaseModel):
    id: str
    learning_type: str
    title: str
    description: str
    trigger_condition: Optional[str]
    recommended_action: Optional[str]
    examples: List[Any]
    effectiveness_score: int
    discovered_by: Optional[str]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class EffectivenessUpdate(BaseModel):
    delta: int = Field(..., ge=-100, le=100)


class SubmissionCreate(BaseModel):
    submitted_by: str = Field(..., min_length=1, max_length=255)


class SubmissionResponse(BaseModel):
    id: str
    learning_id: str
    submitted_by: str
    submitted_at: datetime
    status: str
    reviewer: Optional[str]
    reviewed_at: Optional[datetime]
    review_notes: Optional[str]
    revision_count: int

    class Config:
        from_attributes = True


class ReviewRequest(BaseModel):
    reviewer: str = Field(..., min_length=1, max_length=255)
    notes: Optional[str] = None


class ConsumerCreate(BaseModel):
    consumer_id: str = Field(..., min_length=1, max_length=255)
    display_name: Optional[str] = None
    auto_sync_enabled: bool = True


class ConsumerUpdate(BaseModel):
    auto_sync_enabled: bool


class ConsumerResponse(BaseModel):
    consumer_id: str
    display_name: Optional[str]
    current_canon_version: int
    last_sync_at: Optional[datetime]
    auto_sync_enabled: bool

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    id: str
    consumer_id: str
    notification_type: str
    is_read: bool
    is_dismissed: bool
    is_applied: bool
    created_at: datetime
    learning: LearningResponse


class SyncResponse(BaseModel):
    consumer_id: str
    current_canon_version: int
    learnings: List[LearningResponse]


class CanonCreate(BaseModel):
    description: Optional[str] = None
    created_by: Optional[str] = None


class CanonResponse(BaseModel):
    version_number: int
    description: Optional[str]
    learnings_snapshot: List[Dict[str, Any]]
    created_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================================
# Startup & Health
# =============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    logger.info("application_starting", version=__version__)
    init_db()
    logger.info("application_started")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "AgentSync API",
        "version": __version__,
        "status": "running",
        "docs": "/docs" if settings.log_level == "DEBUG" else "disabled",
    }


@app.get("/health")
async def health_check(session_factory: sessionmaker = Depends(get_session_factory)):
    """Health check endpoint."""
    # Check database connectivity
    try:
        with get_db(session_factory) as db:
            db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "database": db_status,
    }


# =============================================================================
# Work Queue Endpoints
# =============================================================================

@app.post("/tasks", response_model=TaskResponse)
async def enqueue_task(task_data: TaskCreate, queue: WorkQueue = Depends(get_queue)):
    """Enqueue a pending task."""
    task = queue.enqueue(
        source=task_data.source,
        target=task_data.target,
        kind=task_data.kind,
        payload=task_data.payload,
        priority=task_data.priority,
        max_retries=task_data.max_retries,
    )
    return _task_to_response(task)


@app.get("/tasks", response_model=List[TaskResponse])
async def list_tasks(
    status: Optional[str] = None,
    target: Optional[str] = None,
    source: Optional[str] = None,
    kind: Optional[str] = None,
    min_priority: Optional[int] = None,
    created_after: Optional[datetime] = Query(None, description="Only tasks created at or after this time"),
    created_before: Optional[datetime] = Query(None, description="Only tasks created before this time"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    queue: WorkQueue = Depends(get_queue),
):
    """List tasks in claim order."""
    status_enum = _parse_enum(TaskStatus, status, "status")
    kind_enum = _parse_enum(TaskKind, kind, "kind")

    tasks = queue.list_tasks(
        status=status_enum,
        target=target,
        source=source,
        kind=kind_enum,
        min_priority=min_priority,
        created_after=_as_naive_utc(created_after),
        created_before=_as_naive_utc(created_before),
        limit=limit,
        offset=offset,
    )
    return [_task_to_response(task) for task in tasks]


@app.get("/tasks/stats")
async def task_stats(queue: WorkQueue = Depends(get_queue)):
    """Task counts per status."""
    return queue.stats()


@app.post("/tasks/claim", response_model=ClaimResponse)
async def claim_task(claim: ClaimRequest, queue: WorkQueue = Depends(get_queue)):
    """Claim the most urgent eligible task, if any."""
    with bound_context(consumer_id=claim.consumer_id):
        task = queue.claim(
            claim.consumer_id,
            target_filter=claim.target_filter,
            include_broadcast=claim.include_broadcast,
        )
    if task is None:
        return ClaimResponse(claimed=False)
    return ClaimResponse(claimed=True, task=_task_to_response(task))


@app.post("/tasks/expire")
async def expire_tasks(request: ExpireRequest, queue: WorkQueue = Depends(get_queue)):
    """Cancel pending tasks older than the cutoff."""
    cancelled = queue.expire_stale(timedelta(seconds=request.older_than_seconds), request.reason)
    return {"cancelled": cancelled}


@app.post("/tasks/reap")
async def reap_tasks(request: ReapRequest, queue: WorkQueue = Depends(get_queue)):
    """Fail held tasks whose claim is older than the cutoff."""
    reaped = queue.reap_abandoned(
        timedelta(seconds=request.claimed_longer_than_seconds),
        request.error_message,
    )
    return {"reaped": reaped}


@app.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, queue: WorkQueue = Depends(get_queue)):
    """Get details of a specific task."""
    task = queue.get(_parse_id(task_id, "task"))
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return _task_to_response(task)


@app.post("/tasks/{task_id}/start", response_model=TaskResponse)
async def start_task(task_id: str, request: HolderRequest, queue: WorkQueue = Depends(get_queue)):
    task_uuid = _parse_id(task_id, "task")
    _require_transition(queue.start(task_uuid, consumer_id=request.consumer_id), queue.get(task_uuid), "Task")
    return _task_to_response(queue.get(task_uuid))


@app.post("/tasks/{task_id}/complete", response_model=TaskResponse)
async def complete_task(task_id: str, request: CompleteRequest, queue: WorkQueue = Depends(get_queue)):
    """Complete a held task with an optional result document."""
    task_uuid = _parse_id(task_id, "task")
    completed = queue.complete(task_uuid, result=request.result, consumer_id=request.consumer_id)
    _require_transition(completed, queue.get(task_uuid), "Task")
    return _task_to_response(queue.get(task_uuid))


@app.post("/tasks/{task_id}/fail", response_model=TaskResponse)
async def fail_task(task_id: str, request: FailRequest, queue: WorkQueue = Depends(get_queue)):
    """Record a failure; the task returns to pending while retries remain."""
    task_uuid = _parse_id(task_id, "task")
    _require_transition(queue.fail(task_uuid, request.error_message), queue.get(task_uuid), "Task")
    return _task_to_response(queue.get(task_uuid))


@app.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, request: CancelRequest, queue: WorkQueue = Depends(get_queue)):
    task_uuid = _parse_id(task_id, "task")
    _require_transition(queue.cancel(task_uuid, request.reason), queue.get(task_uuid), "Task")
    return _task_to_response(queue.get(task_uuid))


# =============================================================================
# Checkpoint Endpoints
# =============================================================================

@app.post("/checkpoints", response_model=CheckpointResponse)
async def create_checkpoint(data: CheckpointCreate, checkpoints: CheckpointLog = Depends(get_checkpoints)):
    """Append a checkpoint to a session."""
    with bound_context(session_key=data.session_key):
        checkpoint = checkpoints.append(
            owner_role=data.owner_role,
            session_key=data.session_key,
            description=data.description,
            state_snapshot=data.state_snapshot,
        )
    return _checkpoint_to_response(checkpoint)


@app.get("/checkpoints/{checkpoint_id}", response_model=CheckpointResponse)
async def get_checkpoint(checkpoint_id: str, checkpoints: CheckpointLog = Depends(get_checkpoints)):
    checkpoint = checkpoints.get(_parse_id(checkpoint_id, "checkpoint"))
    if not checkpoint:
        raise HTTPException(status_code=404, detail="Checkpoint not found")
    return _checkpoint_to_response(checkpoint)


@app.post("/checkpoints/{checkpoint_id}/verify", response_model=CheckpointResponse)
async def verify_checkpoint(
    checkpoint_id: str,
    request: VerifyRequest,
    checkpoints: CheckpointLog = Depends(get_checkpoints),
):
    """Mark an unverified checkpoint as verified or failed."""
    checkpoint_uuid = _parse_id(checkpoint_id, "checkpoint")
    try:
        verified = checkpoints.verify(checkpoint_uuid, request.verifier, request.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _require_transition(verified, checkpoints.get(checkpoint_uuid), "Checkpoint")
    return _checkpoint_to_response(checkpoints.get(checkpoint_uuid))


@app.get("/sessions/{session_key}/checkpoints", response_model=List[CheckpointResponse])
async def list_session_checkpoints(
    session_key: str,
    status: Optional[str] = None,
    limit: int = Query(10, ge=1, le=500),
    checkpoints: CheckpointLog = Depends(get_checkpoints),
):
    """List a session's checkpoints, newest first."""
    status_enum = _parse_enum(VerificationStatus, status, "status")
    return [
        _checkpoint_to_response(checkpoint)
        for checkpoint in checkpoints.list_checkpoints(session_key, status=status_enum, limit=limit)
    ]


@app.get("/sessions/{session_key}/checkpoints/latest", response_model=CheckpointResponse)
async def latest_session_checkpoint(
    session_key: str,
    verified_only: bool = True,
    checkpoints: CheckpointLog = Depends(get_checkpoints),
):
    """Resume point of a session (latest verified checkpoint by default)."""
    if verified_only:
        checkpoint = checkpoints.latest_verified(session_key)
    else:
        checkpoint = checkpoints.latest(session_key)

    if not checkpoint:
        raise HTTPException(status_code=404, detail="No checkpoint found")
    return _checkpoint_to_response(checkpoint)


# =============================================================================
# Versioned State Endpoints
# =============================================================================

@app.get("/state", response_model=List[str])
async def list_state_keys(state: StateStore = Depends(get_state)):
    return state.keys()


@app.get("/state/{key}", response_model=StateValueResponse)
async def get_state_value(key: str, state: StateStore = Depends(get_state)):
    """Get the active value of a key."""
    current = state.get(key)
    if current is None:
        raise HTTPException(status_code=404, detail="State key not found")
    return StateValueResponse(key=key, value=current.value, version=current.version)


@app.put("/state/{key}", response_model=StateValueResponse)
async def put_state_value(key: str, data: StateWrite, state: StateStore = Depends(get_state)):
    """Write a new version of a key, optionally only from an expected version."""
    if data.expected_version is None:
        version = state.set(key, data.value, description=data.description)
    else:
        version = state.set_if_version(key, data.value, data.expected_version, description=data.description)
        if version is None:
            raise HTTPException(status_code=409, detail="State key has moved past the expected version")

    return StateValueResponse(key=key, value=data.value, version=version)


@app.get("/state/{key}/history", response_model=List[StateEntryResponse])
async def get_state_history(
    key: str,
    limit: int = Query(50, ge=1, le=500),
    state: StateStore = Depends(get_state),
):
    """All versions of a key, newest first."""
    return [_state_entry_to_response(entry) for entry in state.history(key, limit=limit)]


# =============================================================================
# Learning Endpoints
# =============================================================================

@app.post("/learnings", response_model=LearningResponse)
async def create_learning(data: LearningCreate, registry: LearningRegistry = Depends(get_registry)):
    """Record a new learning."""
    learning = registry.record_learning(
        learning_type=data.learning_type,
        title=data.title,
        description=data.description,
        trigger_condition=data.trigger_condition,
        recommended_action=data.recommended_action,
        examples=data.examples,
        discovered_by=data.discovered_by,
        discovered_in_context=data.discovered_in_context,
    )
    return _learning_to_response(learning)


@app.get("/learnings", response_model=List[LearningResponse])
async def list_learnings(
    learning_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    registry: LearningRegistry = Depends(get_registry),
):
    """Active learnings, most effective first."""
    type_enum = _parse_enum(LearningType, learning_type, "learning_type")
    return [
        _learning_to_response(learning)
        for learning in registry.active_learnings(learning_type=type_enum, limit=limit)
    ]


@app.get("/learnings/{learning_id}", response_model=LearningResponse)
async def get_learning(learning_id: str, registry: LearningRegistry = Depends(get_registry)):
    learning = registry.get_learning(_parse_id(learning_id, "learning"))
    if not learning:
        raise HTTPException(status_code=404, detail="Learning not found")
    return _learning_to_response(learning)


@app.patch("/learnings/{learning_id}", response_model=LearningResponse)
async def revise_learning(
    learning_id: str,
    data: LearningRevise,
    registry: LearningRegistry = Depends(get_registry),
):
    """Edit a learning's text before resubmitting it."""
    learning_uuid = _parse_id(learning_id, "learning")
    fields = {k: v for k, v in data.dict().items() if v is not None}
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to revise")

    if not registry.revise_learning(learning_uuid, **fields):
        raise HTTPException(status_code=404, detail="Learning not found")
    return _learning_to_response(registry.get_learning(learning_uuid))


@app.post("/learnings/{learning_id}/effectiveness", response_model=LearningResponse)
async def update_learning_effectiveness(
    learning_id: str,
    data: EffectivenessUpdate,
    registry: LearningRegistry = Depends(get_registry),
):
    """Apply effectiveness feedback to a learning."""
    learning_uuid = _parse_id(learning_id, "learning")
    if not registry.update_effectiveness(learning_uuid, data.delta):
        raise HTTPException(status_code=404, detail="Learning not found")
    return _learning_to_response(registry.get_learning(learning_uuid))


@app.post("/learnings/{learning_id}/submissions", response_model=SubmissionResponse)
async def submit_learning(
    learning_id: str,
    data: SubmissionCreate,
    registry: LearningRegistry = Depends(get_registry),
):
    """Put a learning forward for review. Low-quality learnings come back rejected."""
    submission = registry.submit_for_review(_parse_id(learning_id, "learning"), data.submitted_by)
    if not submission:
        raise HTTPException(status_code=404, detail="Learning not found")
    return _submission_to_response(submission)


@app.get("/submissions", response_model=List[SubmissionResponse])
async def list_submissions(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    registry: LearningRegistry = Depends(get_registry),
):
    status_enum = _parse_enum(SubmissionStatus, status, "status")
    return [
        _submission_to_response(submission)
        for submission in registry.list_submissions(status=status_enum, limit=limit)
    ]


@app.post("/submissions/{submission_id}/approve", response_model=SubmissionResponse)
async def approve_submission(
    submission_id: str,
    review: ReviewRequest,
    registry: LearningRegistry = Depends(get_registry),
):
    """Approve a submission and notify auto-sync consumers."""
    submission_uuid = _parse_id(submission_id, "submission")
    approved = registry.approve(submission_uuid, review.reviewer, review.notes)
    _require_transition(approved, registry.get_submission(submission_uuid), "Submission")
    return _submission_to_response(registry.get_submission(submission_uuid))


@app.post("/submissions/{submission_id}/reject", response_model=SubmissionResponse)
async def reject_submission(
    submission_id: str,
    review: ReviewRequest,
    registry: LearningRegistry = Depends(get_registry),
):
    submission_uuid = _parse_id(submission_id, "submission")
    rejected = registry.reject(submission_uuid, review.reviewer, review.notes)
    _require_transition(rejected, registry.get_submission(submission_uuid), "Submission")
    return _submission_to_response(registry.get_submission(submission_uuid))


@app.post("/submissions/{submission_id}/revise", response_model=SubmissionResponse)
async def request_submission_revision(
    submission_id: str,
    review: ReviewRequest,
    registry: LearningRegistry = Depends(get_registry),
):
    """Send a submission back for changes."""
    submission_uuid = _parse_id(submission_id, "submission")
    sent_back = registry.request_revision(submission_uuid, review.reviewer, review.notes)
    _require_transition(sent_back, registry.get_submission(submission_uuid), "Submission")
    return _submission_to_response(registry.get_submission(submission_uuid))


@app.post("/submissions/{submission_id}/resubmit", response_model=SubmissionResponse)
async def resubmit_submission(submission_id: str, registry: LearningRegistry = Depends(get_registry)):
    """Return a revised submission to review (the quality gate runs again)."""
    submission_uuid = _parse_id(submission_id, "submission")
    submission = registry.resubmit(submission_uuid)
    _require_transition(submission is not None, registry.get_submission(submission_uuid), "Submission")
    return _submission_to_response(submission)


# =============================================================================
# Consumer & Notification Endpoints
# =============================================================================

@app.post("/consumers", response_model=ConsumerResponse)
async def register_consumer(data: ConsumerCreate, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    """Register a consumer (idempotent)."""
    consumer = dispatcher.register_consumer(
        data.consumer_id,
        display_name=data.display_name,
        auto_sync_enabled=data.auto_sync_enabled,
    )
    return _consumer_to_response(consumer)


@app.get("/consumers/{consumer_id}", response_model=ConsumerResponse)
async def get_consumer(consumer_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    consumer = dispatcher.get_consumer(consumer_id)
    if not consumer:
        raise HTTPException(status_code=404, detail="Consumer not found")
    return _consumer_to_response(consumer)


@app.patch("/consumers/{consumer_id}", response_model=ConsumerResponse)
async def update_consumer(
    consumer_id: str,
    data: ConsumerUpdate,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Opt a consumer in or out of approval notifications."""
    if not dispatcher.set_auto_sync(consumer_id, data.auto_sync_enabled):
        raise HTTPException(status_code=404, detail="Consumer not found")
    return _consumer_to_response(dispatcher.get_consumer(consumer_id))


@app.get("/consumers/{consumer_id}/notifications", response_model=List[NotificationResponse])
async def get_consumer_notifications(
    consumer_id: str,
    limit: Optional[int] = Query(None, ge=1, le=100),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Pending notifications, most effective learning first."""
    with bound_context(consumer_id=consumer_id):
        notifications = dispatcher.fetch_pending(consumer_id, limit=limit)
    return [_notification_to_response(notification) for notification in notifications]


@app.post("/consumers/{consumer_id}/sync", response_model=SyncResponse)
async def sync_consumer(consumer_id: str, canon: CanonManager = Depends(get_canon)):
    """Return learnings the consumer has not seen and advance its canon version."""
    learnings = canon.sync_consumer(consumer_id)
    if learnings is None:
        raise HTTPException(status_code=404, detail="Consumer not found")

    latest = canon.latest_canon_version()
    return SyncResponse(
        consumer_id=consumer_id,
        current_canon_version=latest.version_number if latest else 0,
        learnings=[_learning_to_response(learning) for learning in learnings],
    )


@app.post("/notifications/{notification_id}/read")
async def read_notification(notification_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    if not dispatcher.mark_read(_parse_id(notification_id, "notification")):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "read", "notification_id": notification_id}


@app.post("/notifications/{notification_id}/dismiss")
async def dismiss_notification(notification_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    if not dispatcher.dismiss(_parse_id(notification_id, "notification")):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "dismissed", "notification_id": notification_id}


@app.post("/notifications/{notification_id}/apply")
async def apply_notification(notification_id: str, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    if not dispatcher.apply(_parse_id(notification_id, "notification")):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "applied", "notification_id": notification_id}


# =============================================================================
# Canon Endpoints
# =============================================================================

@app.post("/canon", response_model=CanonResponse)
async def create_canon(data: CanonCreate, canon: CanonManager = Depends(get_canon)):
    """Snapshot the approved, active learnings as a new canon version."""
    version_number = canon.create_canon_version(description=data.description, created_by=data.created_by)
    return _canon_to_response(canon.get_canon_version(version_number))


@app.get("/canon/latest", response_model=CanonResponse)
async def get_latest_canon(canon: CanonManager = Depends(get_canon)):
    latest = canon.latest_canon_version()
    if not latest:
        raise HTTPException(status_code=404, detail="No canon version exists")
    return _canon_to_response(latest)


# =============================================================================
# Helper Functions
# =============================================================================

def _parse_id(value: str, label: str) -> uuid.UUID:
    # Validate UUID format
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID format")


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Columns hold naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field}. Valid values: {[e.value for e in enum_cls]}",
        )


def _require_transition(changed: bool, current: Optional[Any], label: str) -> None:
    """Map a refused transition to 404 (unknown id) or 409 (wrong state)."""
    if changed:
        return
    if current is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    raise HTTPException(
        status_code=409,
        detail=f"{label} cannot make this transition from status '{_status_of(current)}'",
    )


def _status_of(entity: Any) -> str:
    status = getattr(entity, "status", None) or getattr(entity, "verification_status", None)
    return status.value if status is not None else "unknown"


def _task_to_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=str(task.id),
        source=task.source,
        target=task.target,
        kind=task.kind.value,
        payload=task.payload or {},
        status=task.status.value,
        priority=task.priority,
        claimed_by=task.claimed_by,
        claimed_at=task.claimed_at,
        completed_at=task.completed_at,
        result=task.result,
        error_message=task.error_message,
        retry_count=task.retry_count,
        max_retries=task.max_retries,
        created_at=task.created_at,
    )


def _checkpoint_to_response(checkpoint: Checkpoint) -> CheckpointResponse:
    return CheckpointResponse(
        id=str(checkpoint.id),
        sequence_number=checkpoint.sequence_number,
        owner_role=checkpoint.owner_role,
        session_key=checkpoint.session_key,
        description=checkpoint.description,
        state_snapshot=checkpoint.state_snapshot or {},
        verification_status=checkpoint.verification_status.value,
        verified_by=checkpoint.verified_by,
        verified_at=checkpoint.verified_at,
        created_at=checkpoint.created_at,
    )


def _state_entry_to_response(entry: StateEntry) -> StateEntryResponse:
    return StateEntryResponse(
        key=entry.key,
        value=entry.value,
        version=entry.version,
        description=entry.description,
        is_active=entry.is_active,
        created_at=entry.created_at,
    )


def _learning_to_response(learning: Learning) -> LearningResponse:
    return LearningResponse(
        id=str(learning.id),
        learning_type=learning.learning_type.value,
        title=learning.title,
        description=learning.description,
        trigger_condition=learning.trigger_condition,
        recommended_action=learning.recommended_action,
        examples=learning.examples or [],
        effectiveness_score=learning.effectiveness_score,
        discovered_by=learning.discovered_by,
        is_active=learning.is_active,
        created_at=learning.created_at,
    )


def _submission_to_response(submission: LearningSubmission) -> SubmissionResponse:
    return SubmissionResponse(
        id=str(submission.id),
        learning_id=str(submission.learning_id),
        submitted_by=submission.submitted_by,
        submitted_at=submission.submitted_at,
        status=submission.status.value,
        reviewer=submission.reviewer,
        reviewed_at=submission.reviewed_at,
        review_notes=submission.review_notes,
        revision_count=submission.revision_count,
    )


def _consumer_to_response(consumer: Consumer) -> ConsumerResponse:
    return ConsumerResponse(
        consumer_id=consumer.consumer_id,
        display_name=consumer.display_name,
        current_canon_version=consumer.current_canon_version,
        last_sync_at=consumer.last_sync_at,
        auto_sync_enabled=consumer.auto_sync_enabled,
    )


def _notification_to_response(notification: CapabilityNotification) -> NotificationResponse:
    return NotificationResponse(
        id=str(notification.id),
        consumer_id=notification.consumer_id,
        notification_type=notification.notification_type.value,
        is_read=notification.is_read,
        is_dismissed=notification.is_dismissed,
        is_applied=notification.is_applied,
        created_at=notification.created_at,
        learning=_learning_to_response(notification.learning),
    )


def _canon_to_response(canon: CanonVersion) -> CanonResponse:
    return CanonResponse(
        version_number=canon.version_number,
        description=canon.description,
        learnings_snapshot=canon.learnings_snapshot or [],
        created_by=canon.created_by,
        created_at=canon.created_at,
    )
