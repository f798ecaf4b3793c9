"""
HTTP layer: routing, request validation and error mapping.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from consensus_engine.db.deps import get_db
from consensus_engine.main import app


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestHealth:
    def test_live(self, client):
        response = client.get("/api/v1/health/live")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_db(self, client):
        assert client.get("/api/v1/health/db").status_code == 200


class TestConsensusApi:
    def test_finalize(self, client, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)

        response = client.post(f"/api/v1/consensus/{submission.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["final_xp"] == 42
        assert body["divergent"] is False

    def test_finalize_twice_conflicts(self, client, reviewed_submission):
        submission, _ = reviewed_submission([40, 45, 42], ai_xp=40)
        client.post(f"/api/v1/consensus/{submission.id}")

        assert client.post(f"/api/v1/consensus/{submission.id}").status_code == 409
        assert client.post(f"/api/v1/consensus/{submission.id}?recompute=true").status_code == 200

    def test_unknown_submission(self, client):
        assert client.post("/api/v1/consensus/999").status_code == 404

    def test_not_ready(self, client, make_submission):
        submission = make_submission()
        assert client.post(f"/api/v1/consensus/{submission.id}").status_code == 400

    def test_summary(self, client):
        response = client.get("/api/v1/consensus/summary")
        assert response.status_code == 200
        assert response.json()["total_finalized"] == 0


class TestVotesApi:
    def test_vote_flow(self, client, reviewed_submission):
        submission, _ = reviewed_submission([10, 95])
        assert client.post(f"/api/v1/consensus/{submission.id}").json()["divergent"] is True

        cases = client.get("/api/v1/votes/cases").json()
        assert [c["submission_id"] for c in cases] == [submission.id]

        payload = {"submission_id": submission.id, "wallet_address": "0xAbC", "vote_xp": 50, "signature": "sig"}
        response = client.post("/api/v1/votes/", json=payload)
        assert response.status_code == 201
        assert response.json()["wallet_address"] == "0xabc"

        assert client.post("/api/v1/votes/", json=payload).status_code == 409

        consensus = client.get(f"/api/v1/votes/{submission.id}/consensus").json()
        assert consensus["total_votes"] == 1
        assert consensus["has_consensus"] is False

        assert client.post(f"/api/v1/votes/{submission.id}/resolve").status_code == 400

    def test_invalid_vote(self, client):
        payload = {"submission_id": 1, "wallet_address": "0xabc", "vote_xp": -1, "signature": "sig"}
        assert client.post("/api/v1/votes/", json=payload).status_code == 422

    def test_vote_without_case(self, client, reviewed_submission):
        submission, _ = reviewed_submission([40, 45])
        payload = {"submission_id": submission.id, "wallet_address": "0xabc", "vote_xp": 50, "signature": "sig"}
        assert client.post("/api/v1/votes/", json=payload).status_code == 409

    def test_consensus_without_case(self, client):
        assert client.get("/api/v1/votes/999/consensus").status_code == 404


class TestAdminApi:
    def test_award_and_revoke(self, client, make_user, credit):
        user = make_user("winner")
        credit(user, 120, created_at=datetime(2025, 8, 12, tzinfo=timezone.utc))

        response = client.post("/api/v1/admin/winners/2025-08/award")
        assert response.status_code == 200
        winners = response.json()["winners"]
        assert [(w["rank"], w["user_id"], w["xp_awarded"]) for w in winners] == [(1, user.id, 2000)]

        listed = client.get("/api/v1/admin/winners", params={"month": "2025-08"}).json()
        assert len(listed) == 1

        response = client.delete(f"/api/v1/admin/winners/{winners[0]['id']}")
        assert response.status_code == 200
        assert response.json()["revoked"][0]["delta"] == -2000

    def test_bad_month(self, client):
        assert client.post("/api/v1/admin/winners/2025-13/award").status_code == 400

    def test_override_cooldown_conflict(self, client, make_user, credit):
        user = make_user("winner")
        credit(user, 120, created_at=datetime(2025, 8, 12, tzinfo=timezone.utc))
        client.post("/api/v1/admin/winners/2025-08/award")

        response = client.post(
            "/api/v1/admin/winners/2025-09/override",
            json={"user_id": user.id, "rank": 1, "reason": "manual"},
        )
        assert response.status_code == 409

    def test_adjust_xp(self, client, make_user):
        user = make_user()
        response = client.post(
            f"/api/v1/admin/users/{user.id}/adjust-xp",
            json={"amount": 15, "reason": "bonus"},
        )
        assert response.status_code == 200
        assert response.json()["user_total_xp"] == 15

    def test_weekly_reset_and_insights(self, client):
        response = client.post("/api/v1/admin/jobs/weekly-reset")
        assert response.status_code == 200
        body = response.json()

        insights = client.get(f"/api/v1/admin/weekly-insights/{body['year']}/{body['week_number']}")
        assert insights.status_code == 200
        assert insights.json()["closed"] is True

    def test_reliability_audit(self, client, reviewed_submission):
        reviewed_submission([40, 45, 42], ai_xp=40)

        response = client.get("/api/v1/admin/reliability/audit")

        assert response.status_code == 200
        body = response.json()
        assert body["is_inverse_signal"] is False
        assert len(body["middle_tier"]) == 3
