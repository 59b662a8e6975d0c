"""
API tests: envelope, auth, status code mapping and the end-to-end approval flows.
Runs the FastAPI app in-process against an in-memory database.
"""
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from auth import create_access_token
from database import get_db, get_transaction_client
from server import app

from conftest import ADMIN, OWNER, OTHER_BENEFICIARY, DONOR


def _headers(user):
    token = create_access_token({"user_id": user["user_id"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


ADMIN_H = _headers(ADMIN)
OWNER_H = _headers(OWNER)
OTHER_H = _headers(OTHER_BENEFICIARY)
DONOR_H = _headers(DONOR)


@pytest.fixture
def client():
    test_db = AsyncMongoMockClient()["aid_ledger_api_test"]
    app.dependency_overrides[get_db] = lambda: test_db
    app.dependency_overrides[get_transaction_client] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def project_id(client):
    response = client.post("/api/projects", headers=OWNER_H, json={
        "title": "School roof",
        "description": "Replace the roof of the primary school",
        "category": "education",
        "requested_amount": 1000
    })
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "healthy"

    def test_missing_token(self, client):
        response = client.get("/api/projects")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_garbage_token(self, client):
        response = client.get("/api/projects", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_role(self, client):
        response = client.get("/api/projects", headers=_headers({"user_id": "x", "role": "auditor"}))
        assert response.status_code == 401


class TestProjects:

    def test_create_and_read(self, client, project_id):
        response = client.get(f"/api/projects/{project_id}", headers=DONOR_H)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["beneficiary_id"] == OWNER["user_id"]
        assert body["data"]["total_disbursed"] == 0.0

    def test_donor_cannot_create(self, client):
        response = client.post("/api/projects", headers=DONOR_H, json={
            "title": "x", "description": "y", "requested_amount": 10
        })
        assert response.status_code == 403

    def test_admin_must_name_beneficiary(self, client):
        response = client.post("/api/projects", headers=ADMIN_H, json={
            "title": "x", "description": "y", "requested_amount": 10
        })
        assert response.status_code == 400

    def test_malformed_id_is_404(self, client):
        response = client.get("/api/projects/not-an-id", headers=ADMIN_H)
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Project not found"}

    def test_mine(self, client, project_id):
        mine = client.get("/api/projects/mine", headers=OWNER_H).json()["data"]
        others = client.get("/api/projects/mine", headers=OTHER_H).json()["data"]
        assert [p["id"] for p in mine] == [project_id]
        assert others == []

    def test_update_by_owner_only(self, client, project_id):
        updated = client.put(f"/api/projects/{project_id}", headers=OWNER_H, json={"title": "School roof and gutters"})
        assert updated.status_code == 200
        assert updated.json()["data"]["title"] == "School roof and gutters"

        assert client.put(f"/api/projects/{project_id}", headers=OTHER_H, json={"title": "x"}).status_code == 403
        assert client.put(f"/api/projects/{project_id}", headers=OWNER_H,
                          json={"requested_amount": -1}).status_code == 400

    def test_admin_review(self, client, project_id):
        assert client.patch(f"/api/projects/{project_id}/approve", headers=OWNER_H).status_code == 403

        approved = client.patch(f"/api/projects/{project_id}/approve", headers=ADMIN_H)
        assert approved.status_code == 200
        assert approved.json()["data"]["status"] == "approved"

        rejected = client.patch(f"/api/projects/{project_id}/reject", headers=ADMIN_H, json={"reason": "late"})
        assert rejected.status_code == 409

    def test_reject_with_reason(self, client, project_id):
        rejected = client.patch(f"/api/projects/{project_id}/reject", headers=ADMIN_H, json={"reason": "No budget"})
        assert rejected.json()["data"]["status"] == "rejected"
        assert rejected.json()["data"]["rejection_reason"] == "No budget"

    def test_delete_keeps_transactions(self, client, project_id):
        client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "expense", "amount": 5
        })

        assert client.delete(f"/api/projects/{project_id}", headers=OTHER_H).status_code == 403
        deleted = client.delete(f"/api/projects/{project_id}", headers=OWNER_H)
        assert deleted.json() == {"success": True, "data": {"id": project_id, "deleted": True}}

        assert client.get(f"/api/projects/{project_id}", headers=ADMIN_H).status_code == 404
        listing = client.get(f"/api/transactions?project_id={project_id}", headers=ADMIN_H).json()["data"]
        assert listing["pagination"]["total"] == 1


class TestTransactions:

    def test_owner_201_non_owner_403(self, client, project_id):
        payload = {"project_id": project_id, "type": "expense", "amount": 25}

        assert client.post("/api/transactions", headers=OWNER_H, json=payload).status_code == 201
        assert client.post("/api/transactions", headers=OTHER_H, json=payload).status_code == 403

    def test_invalid_body_is_400(self, client, project_id):
        response = client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "refund", "amount": 25
        })
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_non_positive_amount_is_400(self, client, project_id):
        response = client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "expense", "amount": 0
        })
        assert response.status_code == 400

    def test_balance_snapshot_and_listing(self, client, project_id):
        client.post("/api/transactions", headers=ADMIN_H, json={
            "project_id": project_id, "type": "disbursement", "amount": 500, "date": "2024-01-01T00:00:00"
        })
        response = client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "expense", "amount": 120, "date": "2024-01-02T00:00:00"
        })
        assert response.json()["data"]["balance"] == 380.0

        listing = client.get(f"/api/projects/{project_id}/transactions", headers=DONOR_H).json()["data"]
        assert [t["type"] for t in listing] == ["expense", "disbursement"]

    def test_update_and_delete(self, client, project_id):
        created = client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "expense", "amount": 10
        }).json()["data"]

        updated = client.put(f"/api/transactions/{created['id']}", headers=OWNER_H,
                             json={"description": "nails"})
        assert updated.json()["data"]["description"] == "nails"

        assert client.delete(f"/api/transactions/{created['id']}", headers=OWNER_H).status_code == 403
        assert client.delete(f"/api/transactions/{created['id']}", headers=ADMIN_H).status_code == 200
        assert client.get(f"/api/transactions/{created['id']}", headers=ADMIN_H).status_code == 404


class TestMilestoneFlow:

    def _milestone_with_tranche(self, client, project_id, amount=400):
        milestone = client.post("/api/milestones", headers=OWNER_H, json={
            "project_id": project_id, "title": "Roof frame", "tranche_amount": amount
        }).json()["data"]
        tranche = client.post(f"/api/projects/{project_id}/tranches", headers=ADMIN_H, json={
            "milestone_id": milestone["id"], "amount": amount
        })
        assert tranche.status_code == 201, tranche.text
        return milestone

    def test_full_approval_flow(self, client, project_id):
        milestone = self._milestone_with_tranche(client, project_id)
        mid = milestone["id"]

        started = client.patch(f"/api/milestones/{mid}/start", headers=OWNER_H)
        assert started.json()["data"]["status"] == "pending"

        evidence = client.post(f"/api/milestones/{mid}/evidence", headers=OWNER_H, json={
            "evidence": [{"url": "https://files.example/frame.jpg", "description": "frame up"}]
        })
        assert evidence.json()["data"]["status"] == "evidence_submitted"

        assert client.patch(f"/api/milestones/{mid}/approve", headers=OWNER_H).status_code == 403

        approved = client.patch(f"/api/milestones/{mid}/approve", headers=ADMIN_H)
        assert approved.status_code == 200
        data = approved.json()["data"]
        assert data["milestone"]["status"] == "approved"
        assert data["release"]["tranche"]["status"] == "released"
        assert data["release"]["transaction"]["amount"] == 400.0
        assert data["release"]["transaction"]["source"]["id"] == mid

        project = client.get(f"/api/projects/{project_id}", headers=ADMIN_H).json()["data"]
        assert project["total_disbursed"] == 400.0
        assert project["tranches"][0]["status"] == "released"

        again = client.patch(f"/api/milestones/{mid}/approve", headers=ADMIN_H)
        assert again.status_code == 409
        project = client.get(f"/api/projects/{project_id}", headers=ADMIN_H).json()["data"]
        assert project["total_disbursed"] == 400.0

    def test_reject_with_reason(self, client, project_id):
        milestone = self._milestone_with_tranche(client, project_id)
        mid = milestone["id"]
        client.post(f"/api/milestones/{mid}/evidence", headers=OWNER_H,
                    json={"evidence": [{"url": "https://files.example/a.jpg"}]})

        rejected = client.patch(f"/api/milestones/{mid}/reject", headers=ADMIN_H,
                                json={"reason": "Wrong site"})
        assert rejected.json()["data"]["rejection_reason"] == "Wrong site"

        kpis = client.get(f"/api/projects/{project_id}/kpis", headers=DONOR_H).json()["data"]
        assert kpis["completed_milestones"] == 0
        assert kpis["total_disbursed"] == 0.0

    def test_unknown_milestone(self, client):
        response = client.patch("/api/milestones/000000000000000000000000/approve", headers=ADMIN_H)
        assert response.status_code == 404


class TestFundingRequests:

    def test_approve_and_reopen(self, client, project_id):
        created = client.post("/api/funding-requests", headers=OWNER_H, json={
            "project_id": project_id, "requested_amount": 1200, "purpose": "Roofing sheets"
        })
        assert created.status_code == 201
        rid = created.json()["data"]["id"]

        approved = client.patch(f"/api/funding-requests/{rid}/approve", headers=ADMIN_H,
                                json={"note": "ok"})
        assert approved.status_code == 200
        data = approved.json()["data"]
        assert data["funding_request"]["status"] == "approved"
        assert data["transaction"]["amount"] == 1200.0

        project = client.get(f"/api/projects/{project_id}", headers=ADMIN_H).json()["data"]
        assert project["total_disbursed"] == 1200.0

        assert client.patch(f"/api/funding-requests/{rid}/reject", headers=ADMIN_H).status_code == 409
        assert client.patch(f"/api/funding-requests/{rid}/reopen", headers=ADMIN_H).status_code == 200

    def test_listing_scoped_to_owner(self, client, project_id):
        client.post("/api/funding-requests", headers=OWNER_H, json={
            "project_id": project_id, "requested_amount": 50
        })
        mine = client.get("/api/funding-requests", headers=OWNER_H).json()["data"]
        theirs = client.get("/api/funding-requests", headers=OTHER_H).json()["data"]
        assert mine["pagination"]["total"] == 1
        assert theirs["pagination"]["total"] == 0

    def test_unknown_status_filter_is_400(self, client):
        response = client.get("/api/funding-requests?status=disbursed", headers=ADMIN_H)
        assert response.status_code == 400
        assert response.json()["success"] is False

        response = client.get("/api/milestones?status=done", headers=ADMIN_H)
        assert response.status_code == 400


class TestPledges:

    def test_pledge_flow_and_donor_projects(self, client, project_id):
        payload = {"project_id": project_id, "amount": 300}
        assert client.post("/api/pledges", headers=DONOR_H, json=payload).status_code == 400

        client.patch(f"/api/projects/{project_id}/approve", headers=ADMIN_H)
        created = client.post("/api/pledges", headers=DONOR_H, json=payload)
        assert created.status_code == 201
        pledge_id = created.json()["data"]["id"]

        assert client.post("/api/pledges", headers=OWNER_H, json=payload).status_code == 403

        mine = client.get("/api/projects/mine", headers=DONOR_H).json()["data"]
        assert [p["id"] for p in mine] == [project_id]

        listing = client.get("/api/pledges", headers=DONOR_H).json()["data"]
        assert listing["pagination"]["total"] == 1

        assert client.patch(f"/api/pledges/{pledge_id}/confirm", headers=DONOR_H).status_code == 403
        confirmed = client.patch(f"/api/pledges/{pledge_id}/confirm", headers=ADMIN_H)
        assert confirmed.json()["data"]["status"] == "confirmed"

        cancelled = client.patch(f"/api/pledges/{pledge_id}/cancel", headers=DONOR_H)
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert client.get("/api/projects/mine", headers=DONOR_H).json()["data"] == []

    def test_unknown_pledge(self, client):
        assert client.get("/api/pledges/000000000000000000000000", headers=ADMIN_H).status_code == 404


class TestAdminReads:

    def test_reconcile_and_audit_logs(self, client, project_id):
        client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "revenue", "amount": 70
        })

        report = client.get(f"/api/projects/{project_id}/ledger/reconcile", headers=ADMIN_H)
        assert report.status_code == 200
        assert report.json()["data"]["drift_count"] == 0

        assert client.get(f"/api/projects/{project_id}/ledger/reconcile", headers=OWNER_H).status_code == 403

        logs = client.get(f"/api/projects/{project_id}/audit-logs", headers=ADMIN_H).json()["data"]
        assert {log["entity_type"] for log in logs} >= {"PROJECT", "TRANSACTION"}

    def test_analytics(self, client, project_id):
        client.post("/api/transactions", headers=OWNER_H, json={
            "project_id": project_id, "type": "expense", "amount": 30, "date": "2024-04-10T00:00:00"
        })
        analytics = client.get(f"/api/projects/{project_id}/analytics", headers=DONOR_H).json()["data"]
        assert analytics["monthly_data"]["2024-04"] == {"expenses": 30.0, "revenue": 0.0}
        assert len(analytics["recent_transactions"]) == 1
