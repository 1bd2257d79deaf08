"""Tests for the checkpoint log."""

import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from agentsync.core.exceptions import PayloadValidationError
from agentsync.core.models import VerificationStatus


class TestAppend:
    """Tests for appending checkpoints."""

    def test_sequence_numbers_increase_per_session(self, checkpoint_log):
        a = checkpoint_log.append("backend_engineer", "s", "A", {"step": "a"})
        b = checkpoint_log.append("backend_engineer", "s", "B", {"step": "b"})
        c = checkpoint_log.append("backend_engineer", "s", "C", {"step": "c"})

        assert [a.sequence_number, b.sequence_number, c.sequence_number] == [1, 2, 3]
        assert a.verification_status == VerificationStatus.UNVERIFIED

    def test_sessions_are_numbered_independently(self, checkpoint_log):
        checkpoint_log.append("backend_engineer", "s1", "A")
        checkpoint_log.append("backend_engineer", "s1", "B")
        other = checkpoint_log.append("frontend_engineer", "s2", "A")

        assert other.sequence_number == 1

    def test_snapshot_defaults_to_empty_document(self, checkpoint_log):
        checkpoint = checkpoint_log.append("backend_engineer", "s", "no snapshot")

        assert checkpoint_log.get(checkpoint.id).state_snapshot == {}

    def test_oversized_snapshot_rejected(self, checkpoint_log):
        with pytest.raises(PayloadValidationError):
            checkpoint_log.append("backend_engineer", "s", "big", {"blob": "x" * (1024 * 1024 + 1)})

    def test_concurrent_appends_never_reuse_a_sequence(self, checkpoint_log):
        with ThreadPoolExecutor(max_workers=6) as pool:
            checkpoints = list(pool.map(
                lambda n: checkpoint_log.append("backend_engineer", "shared", f"step {n}", {"n": n}),
                range(12),
            ))

        sequences = sorted(c.sequence_number for c in checkpoints)
        assert sequences == list(range(1, 13))


class TestVerify:
    """Tests for verification and resume points."""

    def test_latest_verified_is_none_until_verified(self, checkpoint_log):
        checkpoint_log.append("backend_engineer", "s", "A")
        checkpoint_log.append("backend_engineer", "s", "B")

        assert checkpoint_log.latest_verified("s") is None
        assert checkpoint_log.latest("s").description == "B"

    def test_resume_point_ignores_later_unverified(self, checkpoint_log):
        a = checkpoint_log.append("backend_engineer", "s", "A")
        b = checkpoint_log.append("backend_engineer", "s", "B")
        checkpoint_log.append("backend_engineer", "s", "C")

        checkpoint_log.verify(a.id, "code_reviewer")
        assert checkpoint_log.latest_verified("s").id == a.id

        checkpoint_log.verify(b.id, "code_reviewer")
        resume = checkpoint_log.latest_verified("s")
        assert resume.id == b.id
        assert resume.verified_by == "code_reviewer"
        assert resume.verified_at is not None

    def test_failed_verification_is_not_a_resume_point(self, checkpoint_log):
        a = checkpoint_log.append("backend_engineer", "s", "A")

        assert checkpoint_log.verify(a.id, "code_reviewer", VerificationStatus.FAILED) is True
        assert checkpoint_log.latest_verified("s") is None
        assert checkpoint_log.get(a.id).verification_status == VerificationStatus.FAILED

    def test_verification_is_one_way(self, checkpoint_log):
        a = checkpoint_log.append("backend_engineer", "s", "A")
        checkpoint_log.verify(a.id, "code_reviewer", "verified")

        assert checkpoint_log.verify(a.id, "security_reviewer", "failed") is False

        stored = checkpoint_log.get(a.id)
        assert stored.verification_status == VerificationStatus.VERIFIED
        assert stored.verified_by == "code_reviewer"

    def test_verify_to_unverified_is_an_error(self, checkpoint_log):
        a = checkpoint_log.append("backend_engineer", "s", "A")

        with pytest.raises(ValueError):
            checkpoint_log.verify(a.id, "code_reviewer", "unverified")

    def test_verify_unknown_checkpoint(self, checkpoint_log):
        assert checkpoint_log.verify(uuid.uuid4(), "code_reviewer") is False
        assert checkpoint_log.verify("garbage", "code_reviewer") is False

    def test_list_checkpoints_newest_first(self, checkpoint_log):
        for name in "ABCD":
            checkpoint_log.append("backend_engineer", "s", name)
        first = checkpoint_log.list_checkpoints("s")[-1]
        checkpoint_log.verify(first.id, "code_reviewer")

        assert [c.description for c in checkpoint_log.list_checkpoints("s", limit=2)] == ["D", "C"]
        verified = checkpoint_log.list_checkpoints("s", status="verified")
        assert [c.description for c in verified] == ["A"]
