"""Tests for capability notifications."""

import uuid

from agentsync.core.database import get_db
from agentsync.core.models import SubmissionStatus


def _approve(registry, fields, **overrides):
    learning = registry.record_learning(**{**fields, **overrides})
    submission = registry.submit_for_review(learning.id, "backend_engineer")
    assert registry.approve(submission.id, "tech_lead")
    return learning, submission


class TestConsumers:
    """Tests for consumer registration."""

    def test_register_is_idempotent(self, dispatcher):
        first = dispatcher.register_consumer("frontend", display_name="Frontend Engineer")
        second = dispatcher.register_consumer("frontend")

        assert first.id == second.id
        assert second.current_canon_version == 0
        assert len(dispatcher.list_consumers()) == 1

    def test_set_auto_sync(self, dispatcher):
        dispatcher.register_consumer("frontend")

        assert dispatcher.set_auto_sync("frontend", False) is True
        assert dispatcher.get_consumer("frontend").auto_sync_enabled is False
        assert dispatcher.set_auto_sync("nobody", False) is False


class TestFanOut:
    """Tests for notifications created on approval."""

    def test_approval_notifies_auto_sync_consumers(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        dispatcher.register_consumer("backend")
        dispatcher.register_consumer("quiet", auto_sync_enabled=False)

        learning, _ = _approve(registry, good_learning_fields)

        assert [n.learning_id for n in dispatcher.fetch_pending("frontend")] == [learning.id]
        assert len(dispatcher.fetch_pending("backend")) == 1
        assert dispatcher.fetch_pending("quiet") == []

    def test_pending_submission_creates_nothing(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        learning = registry.record_learning(**good_learning_fields)
        registry.submit_for_review(learning.id, "backend_engineer")

        assert dispatcher.fetch_pending("frontend") == []

    def test_reapproval_does_not_duplicate(self, registry, dispatcher, good_learning_fields, session_factory):
        dispatcher.register_consumer("frontend")
        learning, submission = _approve(registry, good_learning_fields)

        assert registry.approve(submission.id, "tech_lead") is False

        with get_db(session_factory) as db:
            stored = registry.get_submission(submission.id)
            created = dispatcher.on_approved(db, stored, SubmissionStatus.APPROVED)
        assert created == 0
        assert len(dispatcher.fetch_pending("frontend")) == 1

    def test_concurrent_fan_out_skips_existing_rows(self, registry, dispatcher, good_learning_fields, session_factory):
        """A second fan-out that picked an already-notified consumer inserts only the new ones."""
        dispatcher.register_consumer("frontend")
        learning, _ = _approve(registry, good_learning_fields)

        with get_db(session_factory) as db:
            created = dispatcher.notify_consumers(db, learning.id, ["frontend", "backend", "backend"])

        assert created == 1
        assert len(dispatcher.fetch_pending("frontend")) == 1
        assert len(dispatcher.fetch_pending("backend")) == 1

    def test_notify_nobody(self, dispatcher, session_factory):
        with get_db(session_factory) as db:
            assert dispatcher.notify_consumers(db, uuid.uuid4(), []) == 0

    def test_second_submission_of_same_learning_skips_notified(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        learning, _ = _approve(registry, good_learning_fields)
        again = registry.submit_for_review(learning.id, "code_reviewer")
        dispatcher.register_consumer("late")

        assert registry.approve(again.id, "tech_lead") is True
        assert len(dispatcher.fetch_pending("frontend")) == 1
        assert len(dispatcher.fetch_pending("late")) == 1

    def test_late_consumers_are_not_backfilled(self, registry, dispatcher, good_learning_fields):
        _approve(registry, good_learning_fields)
        dispatcher.register_consumer("late")

        assert dispatcher.fetch_pending("late") == []


class TestFetchPending:
    """Tests for inbox ordering and filtering."""

    def test_ordered_by_effectiveness_then_recency(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        weak, _ = _approve(registry, good_learning_fields, title="Weak but valid learning")
        strong, _ = _approve(registry, good_learning_fields, title="Strong and valid learning")
        newest, _ = _approve(registry, good_learning_fields, title="Newest and valid learning")
        registry.update_effectiveness(strong.id, 3)

        pending = dispatcher.fetch_pending("frontend", limit=10)

        assert [n.learning_id for n in pending] == [strong.id, newest.id, weak.id]
        assert pending[0].learning.title == "Strong and valid learning"

    def test_default_limit(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        for i in range(5):
            _approve(registry, good_learning_fields, title=f"Valid learning number {i}")

        assert len(dispatcher.fetch_pending("frontend")) == 3

    def test_deactivated_learnings_hidden(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        learning, _ = _approve(registry, good_learning_fields)
        registry.update_effectiveness(learning.id, -4)

        assert dispatcher.fetch_pending("frontend") == []


class TestFlags:
    """Tests for read, dismiss and apply."""

    def test_mark_read_hides_notification(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        _approve(registry, good_learning_fields)
        notification = dispatcher.fetch_pending("frontend")[0]

        assert dispatcher.mark_read(notification.id) is True
        assert dispatcher.fetch_pending("frontend") == []
        assert dispatcher.get(notification.id).read_at is not None

    def test_dismiss_implies_read(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        _approve(registry, good_learning_fields)
        notification = dispatcher.fetch_pending("frontend")[0]

        assert dispatcher.dismiss(notification.id) is True

        stored = dispatcher.get(notification.id)
        assert stored.is_dismissed is True
        assert stored.is_read is True

    def test_apply_implies_read(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        _approve(registry, good_learning_fields)
        notification = dispatcher.fetch_pending("frontend")[0]

        assert dispatcher.apply(notification.id) is True

        stored = dispatcher.get(notification.id)
        assert stored.is_applied is True
        assert stored.is_read is True
        assert stored.applied_at is not None

    def test_flags_are_monotone(self, registry, dispatcher, good_learning_fields):
        dispatcher.register_consumer("frontend")
        _approve(registry, good_learning_fields)
        notification = dispatcher.fetch_pending("frontend")[0]
        dispatcher.mark_read(notification.id)
        first_read = dispatcher.get(notification.id).read_at

        dispatcher.apply(notification.id)
        dispatcher.mark_read(notification.id)

        stored = dispatcher.get(notification.id)
        assert stored.read_at == first_read
        assert stored.is_applied is True

    def test_unknown_notification(self, dispatcher):
        assert dispatcher.mark_read(uuid.uuid4()) is False
        assert dispatcher.dismiss("garbage") is False
        assert dispatcher.apply(uuid.uuid4()) is False
