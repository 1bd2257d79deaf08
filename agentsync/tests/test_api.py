"""Tests for the API endpoints."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch


GOOD_LEARNING = {
    "learning_type": "pattern",
    "title": "Batch database writes per run",
    "description": "Grouping inserts into a single transaction per run cut checkpoint latency in half.",
    "trigger_condition": "More than ten checkpoints per minute",
}


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check_returns_200(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_check_reports_degraded(self, client):
        with patch("agentsync.api.main.get_db") as mock_db:
            mock_db.return_value.__enter__ = MagicMock(side_effect=RuntimeError("connection refused"))
            mock_db.return_value.__exit__ = MagicMock(return_value=None)

            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_root_returns_api_info(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "AgentSync API"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"


class TestTaskEndpoints:
    """Tests for the work queue endpoints."""

    def test_enqueue_and_claim_in_priority_order(self, client):
        client.post("/tasks", json={"source": "planner", "target": "W1", "priority": 5})
        client.post("/tasks", json={"source": "planner", "target": "W1", "priority": 8})

        first = client.post("/tasks/claim", json={"consumer_id": "consumer-A", "target_filter": "W1"}).json()
        second = client.post("/tasks/claim", json={"consumer_id": "consumer-A", "target_filter": "W1"}).json()
        third = client.post("/tasks/claim", json={"consumer_id": "consumer-A", "target_filter": "W1"}).json()

        assert first["task"]["priority"] == 8
        assert first["task"]["status"] == "claimed"
        assert second["task"]["priority"] == 5
        assert third == {"claimed": False, "task": None}

    def test_claim_requires_consumer_id(self, client):
        response = client.post("/tasks/claim", json={"consumer_id": "   "})

        assert response.status_code == 422

    def test_complete_flow(self, client):
        task_id = client.post("/tasks", json={"target": "W1"}).json()["id"]
        client.post("/tasks/claim", json={"consumer_id": "consumer-A"})

        response = client.post(f"/tasks/{task_id}/complete", json={"result": {"ok": True}})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["result"] == {"ok": True}

    def test_complete_twice_conflicts(self, client):
        task_id = client.post("/tasks", json={"target": "W1"}).json()["id"]
        client.post("/tasks/claim", json={"consumer_id": "consumer-A"})
        client.post(f"/tasks/{task_id}/complete", json={})

        response = client.post(f"/tasks/{task_id}/complete", json={})

        assert response.status_code == 409

    def test_fail_returns_task_to_pending(self, client):
        task_id = client.post("/tasks", json={"target": "W1", "max_retries": 1}).json()["id"]
        client.post("/tasks/claim", json={"consumer_id": "consumer-A"})

        response = client.post(f"/tasks/{task_id}/fail", json={"error_message": "timeout"})

        assert response.json()["status"] == "pending"
        assert response.json()["retry_count"] == 1

    def test_fail_unclaimed_task_conflicts(self, client):
        task_id = client.post("/tasks", json={"target": "W1"}).json()["id"]

        response = client.post(f"/tasks/{task_id}/fail", json={"error_message": "timeout"})

        assert response.status_code == 409
        assert client.get(f"/tasks/{task_id}").json()["retry_count"] == 0

    def test_start_then_cancel_conflicts(self, client):
        task_id = client.post("/tasks", json={"target": "W1"}).json()["id"]
        client.post("/tasks/claim", json={"consumer_id": "consumer-A"})

        assert client.post(f"/tasks/{task_id}/start", json={"consumer_id": "consumer-A"}).json()["status"] == "in_progress"
        assert client.post(f"/tasks/{task_id}/cancel", json={}).status_code == 409

    def test_unknown_task_returns_404(self, client):
        task_id = str(uuid.uuid4())

        assert client.get(f"/tasks/{task_id}").status_code == 404
        assert client.post(f"/tasks/{task_id}/complete", json={}).status_code == 404

    def test_malformed_task_id_returns_400(self, client):
        assert client.get("/tasks/not-a-uuid").status_code == 400

    def test_oversized_payload_returns_413(self, client):
        response = client.post("/tasks", json={"payload": {"blob": "x" * (1024 * 1024 + 1)}})

        assert response.status_code == 413

    def test_list_and_stats(self, client):
        client.post("/tasks", json={"target": "W1", "priority": 2})
        client.post("/tasks", json={"target": "W2", "priority": 6})

        assert [t["priority"] for t in client.get("/tasks").json()] == [6, 2]
        assert len(client.get("/tasks", params={"target": "W2"}).json()) == 1
        assert client.get("/tasks/stats").json()["pending"] == 2

    def test_list_by_creation_window(self, client):
        client.post("/tasks", json={"target": "W1"})
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        earlier = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)

        assert client.get("/tasks", params={"created_after": later.isoformat()}).json() == []
        assert len(client.get("/tasks", params={"created_before": later.isoformat()}).json()) == 1
        assert len(client.get("/tasks", params={"created_after": earlier.isoformat()}).json()) == 1

    def test_invalid_status_filter_returns_400(self, client):
        assert client.get("/tasks", params={"status": "sleeping"}).status_code == 400

    def test_expire_and_reap(self, client):
        client.post("/tasks", json={"target": "W1"})

        assert client.post("/tasks/expire", json={"older_than_seconds": 3600}).json() == {"cancelled": 0}
        assert client.post("/tasks/reap", json={"claimed_longer_than_seconds": 3600}).json() == {"reaped": 0}


class TestCheckpointEndpoints:
    """Tests for checkpoints and resume points."""

    def test_append_verify_and_resume(self, client):
        first = client.post("/checkpoints", json={
            "owner_role": "backend_engineer",
            "session_key": "s",
            "description": "A",
            "state_snapshot": {"step": 1},
        }).json()
        client.post("/checkpoints", json={"owner_role": "backend_engineer", "session_key": "s", "description": "B"})

        assert client.get("/sessions/s/checkpoints/latest").status_code == 404
        assert client.get("/sessions/s/checkpoints/latest", params={"verified_only": False}).json()["description"] == "B"

        verified = client.post(f"/checkpoints/{first['id']}/verify", json={"verifier": "code_reviewer"})
        assert verified.json()["verification_status"] == "verified"

        resume = client.get("/sessions/s/checkpoints/latest").json()
        assert resume["id"] == first["id"]
        assert resume["state_snapshot"] == {"step": 1}

    def test_reverify_conflicts(self, client):
        checkpoint = client.post("/checkpoints", json={"owner_role": "qa", "session_key": "s"}).json()
        client.post(f"/checkpoints/{checkpoint['id']}/verify", json={"verifier": "code_reviewer"})

        response = client.post(
            f"/checkpoints/{checkpoint['id']}/verify",
            json={"verifier": "code_reviewer", "status": "failed"},
        )

        assert response.status_code == 409

    def test_verify_to_unverified_returns_400(self, client):
        checkpoint = client.post("/checkpoints", json={"owner_role": "qa", "session_key": "s"}).json()

        response = client.post(
            f"/checkpoints/{checkpoint['id']}/verify",
            json={"verifier": "code_reviewer", "status": "unverified"},
        )

        assert response.status_code == 400

    def test_list_session_checkpoints(self, client):
        for name in "ABC":
            client.post("/checkpoints", json={"owner_role": "qa", "session_key": "s", "description": name})

        listed = client.get("/sessions/s/checkpoints").json()

        assert [c["sequence_number"] for c in listed] == [3, 2, 1]


class TestStateEndpoints:
    """Tests for versioned state."""

    def test_put_and_get(self, client):
        assert client.put("/state/phase", json={"value": "planning"}).json()["version"] == 1
        assert client.put("/state/phase", json={"value": "building"}).json()["version"] == 2

        current = client.get("/state/phase").json()
        assert current == {"key": "phase", "value": "building", "version": 2}
        assert [e["version"] for e in client.get("/state/phase/history").json()] == [2, 1]
        assert client.get("/state").json() == ["phase"]

    def test_missing_key_returns_404(self, client):
        assert client.get("/state/nothing").status_code == 404

    def test_expected_version_mismatch_returns_409(self, client):
        client.put("/state/phase", json={"value": "planning"})

        response = client.put("/state/phase", json={"value": "building", "expected_version": 0})

        assert response.status_code == 409


class TestLearningEndpoints:
    """Tests for learnings, review and notifications."""

    def test_review_flow_notifies_consumers(self, client):
        client.post("/consumers", json={"consumer_id": "frontend"})
        learning = client.post("/learnings", json=GOOD_LEARNING).json()
        submission = client.post(f"/learnings/{learning['id']}/submissions", json={"submitted_by": "backend"}).json()
        assert submission["status"] == "pending"

        approved = client.post(f"/submissions/{submission['id']}/approve", json={"reviewer": "tech_lead"})
        assert approved.json()["status"] == "approved"
        assert client.post(f"/submissions/{submission['id']}/approve", json={"reviewer": "tech_lead"}).status_code == 409

        notifications = client.get("/consumers/frontend/notifications").json()
        assert len(notifications) == 1
        assert notifications[0]["learning"]["id"] == learning["id"]

        notification_id = notifications[0]["id"]
        assert client.post(f"/notifications/{notification_id}/apply").json()["status"] == "applied"
        assert client.get("/consumers/frontend/notifications").json() == []

    def test_low_quality_submission_auto_rejected(self, client):
        learning = client.post("/learnings", json={**GOOD_LEARNING, "title": "Retry"}).json()

        submission = client.post(f"/learnings/{learning['id']}/submissions", json={"submitted_by": "backend"}).json()

        assert submission["status"] == "rejected"
        assert submission["reviewer"] == "system"

    def test_revise_and_resubmit(self, client):
        learning = client.post("/learnings", json=GOOD_LEARNING).json()
        submission = client.post(f"/learnings/{learning['id']}/submissions", json={"submitted_by": "backend"}).json()

        revised = client.post(f"/submissions/{submission['id']}/revise", json={"reviewer": "tech_lead"}).json()
        assert revised["status"] == "needs_revision"
        assert revised["revision_count"] == 1

        patched = client.patch(f"/learnings/{learning['id']}", json={"recommended_action": "Buffer writes"})
        assert patched.json()["recommended_action"] == "Buffer writes"

        assert client.post(f"/submissions/{submission['id']}/resubmit").json()["status"] == "pending"
        assert client.post(f"/submissions/{submission['id']}/resubmit").status_code == 409

    def test_effectiveness_deactivates(self, client):
        learning = client.post("/learnings", json=GOOD_LEARNING).json()

        response = client.post(f"/learnings/{learning['id']}/effectiveness", json={"delta": -4})

        assert response.json()["is_active"] is False
        assert client.get("/learnings").json() == []

    def test_unknown_notification_returns_404(self, client):
        assert client.post(f"/notifications/{uuid.uuid4()}/read").status_code == 404

    def test_consumer_sync(self, client):
        client.post("/consumers", json={"consumer_id": "frontend"})
        learning = client.post("/learnings", json=GOOD_LEARNING).json()
        submission = client.post(f"/learnings/{learning['id']}/submissions", json={"submitted_by": "backend"}).json()
        client.post(f"/submissions/{submission['id']}/approve", json={"reviewer": "tech_lead"})
        assert client.post("/canon", json={"description": "v1"}).json()["version_number"] == 1

        synced = client.post("/consumers/frontend/sync").json()

        assert synced["current_canon_version"] == 1
        assert [l["id"] for l in synced["learnings"]] == [learning["id"]]
        assert client.get("/consumers/frontend").json()["current_canon_version"] == 1
        assert client.post("/consumers/nobody/sync").status_code == 404

    def test_disable_auto_sync(self, client):
        client.post("/consumers", json={"consumer_id": "frontend"})

        response = client.patch("/consumers/frontend", json={"auto_sync_enabled": False})

        assert response.json()["auto_sync_enabled"] is False
