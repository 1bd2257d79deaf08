"""Tests for canon versions and consumer sync."""


class TestCanonVersions:
    """Tests for snapshots of the approved canon."""

    def test_first_version_snapshots_approved_learnings(self, canon, registry, approved_learning, good_learning_fields):
        unreviewed = registry.record_learning(**{**good_learning_fields, "title": "Not reviewed yet at all"})

        version = canon.create_canon_version("Initial canon", created_by="tech_lead")

        snapshot = canon.get_canon_version(version)
        assert version == 1
        ids = [entry["id"] for entry in snapshot.learnings_snapshot]
        assert ids == [str(approved_learning.id)]
        assert str(unreviewed.id) not in ids

    def test_versions_increase(self, canon, approved_learning):
        assert canon.create_canon_version() == 1
        assert canon.create_canon_version() == 2
        assert canon.latest_canon_version().version_number == 2

    def test_deactivated_learnings_leave_the_canon(self, canon, registry, approved_learning):
        registry.update_effectiveness(approved_learning.id, -10)

        version = canon.create_canon_version()

        assert canon.get_canon_version(version).learnings_snapshot == []

    def test_learnings_since_version(self, canon, registry, approved_learning, good_learning_fields):
        canon.create_canon_version()
        newer = registry.record_learning(**{**good_learning_fields, "title": "Approved after the canon"})
        submission = registry.submit_for_review(newer.id, "backend_engineer")
        registry.approve(submission.id, "tech_lead")

        assert [l.id for l in canon.learnings_since_version(1)] == [newer.id]
        assert len(canon.learnings_since_version(0)) == 2


class TestConsumerSync:
    """Tests for bringing consumers up to date."""

    def test_sync_returns_unseen_and_advances(self, canon, dispatcher, approved_learning):
        dispatcher.register_consumer("frontend")
        canon.create_canon_version()

        learnings = canon.sync_consumer("frontend")

        assert [l.id for l in learnings] == [approved_learning.id]
        consumer = dispatcher.get_consumer("frontend")
        assert consumer.current_canon_version == 1
        assert consumer.last_sync_at is not None

    def test_second_sync_is_empty(self, canon, dispatcher, approved_learning):
        dispatcher.register_consumer("frontend")
        canon.create_canon_version()
        canon.sync_consumer("frontend")

        assert canon.sync_consumer("frontend") == []

    def test_sync_unknown_consumer(self, canon):
        assert canon.sync_consumer("nobody") is None
