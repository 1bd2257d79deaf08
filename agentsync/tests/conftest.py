"""Pytest configuration and fixtures."""

import os
import pytest

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["LOG_FORMAT"] = "text"
os.environ["REAPER_ENABLED"] = "false"
os.environ["STALE_TASK_EXPIRY_ENABLED"] = "false"

from fastapi.testclient import TestClient

from agentsync.core.canon import CanonManager
from agentsync.core.checkpoint import CheckpointLog
from agentsync.core.database import create_db_engine, create_session_factory
from agentsync.core.learnings import LearningRegistry
from agentsync.core.models import Base, LearningType
from agentsync.core.notifications import NotificationDispatcher
from agentsync.core.state_store import StateStore
from agentsync.core.work_queue import WorkQueue


@pytest.fixture
def db_engine(tmp_path):
    """Fresh file-backed database per test so threads can share it."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'agentsync.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def work_queue(session_factory) -> WorkQueue:
    return WorkQueue(session_factory)


@pytest.fixture
def checkpoint_log(session_factory) -> CheckpointLog:
    return CheckpointLog(session_factory)


@pytest.fixture
def state_store(session_factory) -> StateStore:
    return StateStore(session_factory)


@pytest.fixture
def dispatcher(session_factory) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory)


@pytest.fixture
def registry(session_factory, dispatcher) -> LearningRegistry:
    return LearningRegistry(session_factory, dispatcher=dispatcher)


@pytest.fixture
def canon(session_factory) -> CanonManager:
    return CanonManager(session_factory)


@pytest.fixture
def good_learning_fields() -> dict:
    """Learning text that clears every quality threshold."""
    return {
        "learning_type": LearningType.PATTERN,
        "title": "Batch database writes per run",
        "description": "Grouping inserts into a single transaction per run cut checkpoint latency in half.",
        "trigger_condition": "More than ten checkpoints per minute",
        "recommended_action": "Buffer snapshots and append them together",
        "discovered_by": "backend_engineer",
    }


@pytest.fixture
def approved_learning(registry, good_learning_fields):
    """A learning whose submission has been approved."""
    learning = registry.record_learning(**good_learning_fields)
    submission = registry.submit_for_review(learning.id, "backend_engineer")
    assert registry.approve(submission.id, "tech_lead")
    return learning


@pytest.fixture
def client(session_factory, work_queue, checkpoint_log, state_store, dispatcher, registry, canon):
    """Test client with every service bound to the per-test database."""
    from agentsync.api import main as api

    api.app.dependency_overrides = {
        api.get_session_factory: lambda: session_factory,
        api.get_queue: lambda: work_queue,
        api.get_checkpoints: lambda: checkpoint_log,
        api.get_state: lambda: state_store,
        api.get_dispatcher: lambda: dispatcher,
        api.get_registry: lambda: registry,
        api.get_canon: lambda: canon,
    }
    yield TestClient(api.app)
    api.app.dependency_overrides = {}
