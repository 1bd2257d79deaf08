"""Tests for the versioned state store."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from agentsync.core.database import get_db
from agentsync.core.exceptions import PayloadValidationError, WriteConflictError
from agentsync.core.models import StateEntry


def _active_count(session_factory, key):
    with get_db(session_factory) as db:
        return db.query(StateEntry).filter(StateEntry.key == key, StateEntry.is_active.is_(True)).count()


class TestSetAndGet:
    """Tests for basic versioned writes."""

    def test_get_missing_key(self, state_store):
        assert state_store.get("project/phase") is None

    def test_first_set_is_version_one(self, state_store):
        assert state_store.set("project/phase", {"phase": "planning"}) == 1
        assert state_store.get("project/phase") == ({"phase": "planning"}, 1)

    def test_second_set_replaces_active_version(self, state_store, session_factory):
        state_store.set("project/phase", "planning")
        version = state_store.set("project/phase", "building")

        current = state_store.get("project/phase")
        assert version == 2
        assert current.value == "building"
        assert current.version == 2
        assert _active_count(session_factory, "project/phase") == 1

    def test_history_is_retained(self, state_store):
        for value in ("a", "b", "c"):
            state_store.set("k", value, description=f"set {value}")

        history = state_store.history("k")
        assert [e.version for e in history] == [3, 2, 1]
        assert [e.is_active for e in history] == [True, False, False]
        assert state_store.get_version("k", 1).value == "a"
        assert state_store.get_version("k", 1).description == "set a"

    def test_keys_are_independent(self, state_store):
        state_store.set("a", 1)
        state_store.set("a", 2)
        assert state_store.set("b", 1) == 1
        assert state_store.keys() == ["a", "b"]

    def test_scalar_and_list_values(self, state_store):
        state_store.set("count", 3)
        state_store.set("roles", ["tech_lead", "code_reviewer"])

        assert state_store.get("count").value == 3
        assert state_store.get("roles").value == ["tech_lead", "code_reviewer"]

    def test_none_value_rejected(self, state_store):
        with pytest.raises(PayloadValidationError):
            state_store.set("k", None)


class TestCompareAndSwap:
    """Tests for set_if_version."""

    def test_create_when_absent(self, state_store):
        assert state_store.set_if_version("lock", {"owner": "a"}, expected_version=0) == 1

    def test_create_fails_when_present(self, state_store):
        state_store.set("lock", {"owner": "a"})

        assert state_store.set_if_version("lock", {"owner": "b"}, expected_version=0) is None
        assert state_store.get("lock").value == {"owner": "a"}

    def test_stale_version_rejected(self, state_store, session_factory):
        state_store.set("k", "v1")
        state_store.set("k", "v2")

        assert state_store.set_if_version("k", "v3", expected_version=1) is None
        assert state_store.get("k") == ("v2", 2)
        assert _active_count(session_factory, "k") == 1

    def test_matching_version_applies(self, state_store):
        state_store.set("k", "v1")

        assert state_store.set_if_version("k", "v2", expected_version=1) == 2


class TestConcurrency:
    """Tests for concurrent writers."""

    def test_concurrent_sets_keep_one_active_version(self, state_store, session_factory):
        with ThreadPoolExecutor(max_workers=6) as pool:
            versions = list(pool.map(lambda n: state_store.set("shared", {"writer": n}), range(12)))

        assert sorted(versions) == list(range(1, 13))
        assert _active_count(session_factory, "shared") == 1
        assert state_store.get("shared").version == 12

    def test_conflict_retries_then_gives_up(self, state_store):
        conflict = IntegrityError("INSERT", {}, Exception("duplicate key"))

        with patch("agentsync.core.state_store.utcnow", side_effect=conflict):
            with pytest.raises(WriteConflictError) as exc_info:
                state_store.set("k", "v")

        assert exc_info.value.key == "k"
        assert exc_info.value.attempts == 5
