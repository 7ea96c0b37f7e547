"""
HTTP contract tests for the corrective action plan blueprint.
"""

from datetime import date, timedelta

import pytest

from factories import make_cap, make_finding, make_milestone, make_org, make_review, make_user
from peer_review.models.cap import CorrectiveActionPlan

BASE = "/api/v1/caps"


@pytest.fixture()
def world():
    host = make_org("Host ANSP", "HST")
    review = make_review(host, status="REPORT_DRAFTING", phase="REPORTING")
    return {
        "host": host,
        "review": review,
        "finding": make_finding(review, severity="MINOR", status="CAP_REQUIRED"),
        "manager": make_user(role="QUALITY_MANAGER", org=host),
        "coordinator": make_user(role="PROGRAMME_COORDINATOR"),
    }


# ── Create + transition ──────────────────────────────────────────────────────


class TestLifecycle:
    def test_create(self, client, world, as_user):
        res = client.post(BASE, headers=as_user(world["manager"]), json={
            "finding_id": world["finding"].id,
            "root_cause": "Training gap",
            "corrective_action": "Refresher course",
            "milestones": [{"title": "Course booked", "target_date": "2026-12-01"}],
        })
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "DRAFT"
        assert len(body["milestones"]) == 1

    def test_create_requires_actor(self, client, world):
        res = client.post(BASE, json={"finding_id": world["finding"].id})
        assert res.status_code == 401

    def test_create_requires_finding_id(self, client, world, as_user):
        res = client.post(BASE, headers=as_user(world["manager"]), json={"finding_id": "x"})
        assert res.status_code == 400

    def test_create_twice_is_409(self, client, world, as_user):
        payload = {"finding_id": world["finding"].id}
        client.post(BASE, headers=as_user(world["manager"]), json=payload)
        res = client.post(BASE, headers=as_user(world["manager"]), json=payload)
        assert res.status_code == 409

    def test_walk_to_accepted(self, client, world, as_user, session):
        cap = make_cap(world["finding"])
        url = f"{BASE}/{cap.id}/transition"
        assert client.post(url, headers=as_user(world["manager"]), json={"status": "submitted"}).status_code == 200
        assert client.post(url, headers=as_user(world["coordinator"]), json={"status": "UNDER_REVIEW"}).status_code == 200
        res = client.post(url, headers=as_user(world["coordinator"]),
                          json={"status": "ACCEPTED", "comments": "Good plan"})
        assert res.status_code == 200
        assert res.get_json()["review_comments"] == "Good plan"

        session.expire_all()
        assert session.get(CorrectiveActionPlan, cap.id).status == "ACCEPTED"

    def test_invalid_edge_is_409(self, client, world, as_user):
        cap = make_cap(world["finding"])
        res = client.post(f"{BASE}/{cap.id}/transition", headers=as_user(world["coordinator"]),
                          json={"status": "CLOSED"})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "CAP_INVALID_TRANSITION"
        assert body["details"]["allowed"] == ["SUBMITTED"]

    def test_wrong_role_is_403(self, client, world, as_user):
        cap = make_cap(world["finding"], status="UNDER_REVIEW")
        res = client.post(f"{BASE}/{cap.id}/transition", headers=as_user(world["manager"]),
                          json={"status": "ACCEPTED"})
        assert res.status_code == 403

    def test_unknown_status_is_422(self, client, world, as_user):
        cap = make_cap(world["finding"])
        res = client.post(f"{BASE}/{cap.id}/transition", headers=as_user(world["manager"]),
                          json={"status": "FINISHED"})
        assert res.status_code == 422

    def test_missing_status_is_400(self, client, world, as_user):
        cap = make_cap(world["finding"])
        res = client.post(f"{BASE}/{cap.id}/transition", headers=as_user(world["manager"]), json={})
        assert res.status_code == 400

    def test_allowed_transitions(self, client, world):
        cap = make_cap(world["finding"], status="COMPLETED")
        res = client.get(f"{BASE}/{cap.id}/allowed-transitions")
        assert res.get_json()["allowed"] == ["VERIFIED", "IN_PROGRESS"]

    def test_allowed_transitions_unknown_cap(self, client):
        assert client.get(f"{BASE}/9999/allowed-transitions").status_code == 404

    @pytest.mark.parametrize("src,tgt,expected", [
        ("draft", "submitted", True),
        ("DRAFT", "CLOSED", False),
        ("CLOSED", "CLOSED", True),
    ])
    def test_validate(self, client, src, tgt, expected):
        res = client.get(f"{BASE}/transitions/validate?from={src}&to={tgt}")
        assert res.status_code == 200
        assert res.get_json()["is_valid"] is expected

    def test_validate_unknown_status(self, client):
        res = client.get(f"{BASE}/transitions/validate?from=DRAFT&to=DONE")
        assert res.status_code == 400


# ── Deadlines ────────────────────────────────────────────────────────────────


class TestDeadlines:
    def test_deadline_for_cap(self, client, world):
        cap = make_cap(world["finding"], due_date=date.today() - timedelta(days=2))
        res = client.get(f"{BASE}/{cap.id}/deadline")
        assert res.status_code == 200
        info = res.get_json()["deadline_info"]
        assert info["is_overdue"] is True
        assert info["urgency_level"] == "overdue"

    def test_deadlines_list(self, client, world):
        make_cap(world["finding"], due_date=date.today() + timedelta(days=3))
        res = client.get(f"{BASE}/deadlines?organization_id={world['host'].id}")
        assert res.get_json()["total"] == 1
        res = client.get(f"{BASE}/deadlines?overdue_only=true")
        assert res.get_json()["total"] == 0

    def test_due_within(self, client, world):
        make_cap(world["finding"], due_date=date.today() + timedelta(days=3))
        res = client.get(f"{BASE}/due-within/7")
        assert res.get_json()["days"] == 7
        assert res.get_json()["total"] == 1

    def test_overdue_milestones(self, client, world):
        cap = make_cap(world["finding"], status="IN_PROGRESS")
        make_milestone(cap, date.today() - timedelta(days=1))
        res = client.get(f"{BASE}/milestones/overdue")
        assert res.get_json()["total"] == 1

    def test_escalations_preview(self, client, world):
        make_cap(world["finding"], due_date=date.today())
        res = client.get(f"{BASE}/escalations")
        assert res.status_code == 200
        assert [e["type"] for e in res.get_json()["events"]] == ["DUE_TODAY"]

    def test_stats(self, client, world):
        make_cap(world["finding"], status="SUBMITTED")
        res = client.get(f"{BASE}/stats")
        assert res.status_code == 200
        assert res.get_json()["by_status"]["SUBMITTED"] == 1
