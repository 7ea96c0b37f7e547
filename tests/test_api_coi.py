"""
HTTP contract tests for the COI blueprint and the health probes.

Covers status codes, error envelopes and the X-User-Id actor header.
"""

from datetime import date, timedelta

import pytest

from factories import add_team_member, make_org, make_review, make_reviewer, make_user
from peer_review.models.audit import AUDIT_ACTIONS, AuditLog

BASE = "/api/v1"
JUSTIFICATION = "Steering committee accepts the residual risk for this observation-only role."


@pytest.fixture()
def roster():
    home = make_org("Home ANSP", "HOME")
    visited = make_org("Visited ANSP", "VIS")
    reviewer = make_reviewer(home_org=home)
    past = make_review(visited, status="COMPLETED", phase="CLOSED",
                       actual_end_date=date.today() - timedelta(days=100))
    add_team_member(past, reviewer)
    return {
        "home": home,
        "visited": visited,
        "reviewer": reviewer,
        "admin": make_user(role="SYSTEM_ADMIN"),
    }


# ── Health ───────────────────────────────────────────────────────────────────


def test_health_ready(client):
    res = client.get(f"{BASE}/health/ready")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}


def test_health_live(client):
    res = client.get(f"{BASE}/health/live")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["checklist_template"]["items"] == 14


def test_unknown_route_is_json_404(client):
    res = client.get(f"{BASE}/nope")
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ── Checks ───────────────────────────────────────────────────────────────────


class TestCheck:
    def test_hard_block(self, client, roster):
        res = client.post(f"{BASE}/coi/check", json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["home"].id,
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["has_hard_block"] is True
        assert body["hard_blocks"][0]["type"] == "HOME_ORGANIZATION"

    def test_missing_field(self, client, roster):
        res = client.post(f"{BASE}/coi/check", json={"reviewer_profile_id": roster["reviewer"].id})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_non_integer_field(self, client, roster):
        res = client.post(f"{BASE}/coi/check", json={
            "reviewer_profile_id": "abc", "organization_id": roster["home"].id,
        })
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_reviewer(self, client, roster):
        res = client.post(f"{BASE}/coi/check", json={
            "reviewer_profile_id": 9999, "organization_id": roster["home"].id,
        })
        assert res.status_code == 404

    def test_team(self, client, roster):
        other = make_reviewer()
        res = client.post(f"{BASE}/coi/check-team", json={
            "reviewer_profile_ids": [roster["reviewer"].id, other.id],
            "organization_id": roster["visited"].id,
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["can_proceed"] is True
        assert body["summary"]["warning"] == 1
        assert body["summary"]["eligible"] == 1

    def test_team_requires_list(self, client, roster):
        res = client.post(f"{BASE}/coi/check-team", json={
            "reviewer_profile_ids": [], "organization_id": roster["visited"].id,
        })
        assert res.status_code == 400


# ── Registry ─────────────────────────────────────────────────────────────────


class TestRegistry:
    def test_sync_requires_actor(self, client, roster):
        res = client.post(f"{BASE}/reviewers/{roster['reviewer'].id}/coi/sync")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_actor_is_unauthenticated(self, client, roster):
        res = client.post(
            f"{BASE}/reviewers/{roster['reviewer'].id}/coi/sync", headers={"X-User-Id": "9999"},
        )
        assert res.status_code == 401

    def test_sync_then_list(self, client, roster, as_user):
        url = f"{BASE}/reviewers/{roster['reviewer'].id}/coi/sync"
        res = client.post(url, headers=as_user(roster["admin"]))
        assert res.status_code == 200
        assert res.get_json()["created"] == 2

        res = client.post(url, headers=as_user(roster["admin"]))
        assert res.get_json()["created"] == 0

        res = client.get(f"{BASE}/coi?reviewer_profile_id={roster['reviewer'].id}&active_only=true")
        assert res.get_json()["total"] == 2

    def test_declare_and_deactivate(self, client, roster, as_user):
        res = client.post(f"{BASE}/coi", headers=as_user(roster["admin"]), json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "coi_type": "FAMILY_RELATIONSHIP",
            "reason": "Spouse is head of ATM operations",
        })
        assert res.status_code == 201
        coi_id = res.get_json()["id"]
        assert res.get_json()["severity"] == "HARD_BLOCK"

        res = client.post(f"{BASE}/coi/{coi_id}/deactivate", headers=as_user(roster["admin"]),
                          json={"reason": "Divorced"})
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False

    def test_declare_duplicate_is_409(self, client, roster, as_user):
        payload = {
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "coi_type": "BUSINESS_INTEREST",
            "reason": "Consultancy contract until 2027",
        }
        client.post(f"{BASE}/coi", headers=as_user(roster["admin"]), json=payload)
        res = client.post(f"{BASE}/coi", headers=as_user(roster["admin"]), json=payload)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_declare_auto_type_is_422(self, client, roster, as_user):
        res = client.post(f"{BASE}/coi", headers=as_user(roster["admin"]), json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "coi_type": "HOME_ORGANIZATION",
            "reason": "Declared by hand for some reason",
        })
        assert res.status_code == 422

    def test_declare_for_someone_else_is_403(self, client, roster, as_user):
        stranger = make_user(role="PEER_REVIEWER")
        res = client.post(f"{BASE}/coi", headers=as_user(stranger), json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "coi_type": "OTHER",
            "reason": "Something long enough",
        })
        assert res.status_code == 403
        assert "SYSTEM_ADMIN" in res.get_json()["details"]["required_roles"]

    def test_stats(self, client, roster, as_user):
        client.post(f"{BASE}/reviewers/{roster['reviewer'].id}/coi/sync", headers=as_user(roster["admin"]))
        res = client.get(f"{BASE}/coi/stats")
        assert res.status_code == 200
        assert res.get_json()["by_type"]["RECENT_REVIEW"] == 1


# ── Overrides ────────────────────────────────────────────────────────────────


class TestOverrides:
    def _issue(self, client, roster, as_user, **extra):
        payload = {
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "justification": JUSTIFICATION,
        }
        payload.update(extra)
        return client.post(f"{BASE}/coi/overrides", headers=as_user(roster["admin"]), json=payload)

    def test_issue_and_revoke(self, client, roster, as_user):
        res = self._issue(client, roster, as_user)
        assert res.status_code == 201
        grant = res.get_json()
        assert grant["is_valid"] is True

        res = client.post(f"{BASE}/coi/check", json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
        })
        assert res.get_json()["can_proceed_with_override"] is True

        res = client.post(f"{BASE}/coi/overrides/{grant['id']}/revoke",
                          headers=as_user(roster["admin"]), json={"reason": "Withdrawn"})
        assert res.status_code == 200
        assert res.get_json()["action"] == "revoked"

        res = client.get(f"{BASE}/coi/overrides?reviewer_profile_id={roster['reviewer'].id}")
        assert [e["action"] for e in res.get_json()["items"]] == ["issued", "revoked"]

    def test_hard_block_is_422(self, client, roster, as_user):
        res = self._issue(client, roster, as_user, organization_id=roster["home"].id)
        assert res.status_code == 422
        assert res.get_json()["code"] == "COI_INVALID_OVERRIDE"

    def test_short_justification_is_422(self, client, roster, as_user):
        res = self._issue(client, roster, as_user, justification="ok")
        assert res.status_code == 422

    def test_bad_expiry_is_400(self, client, roster, as_user):
        res = self._issue(client, roster, as_user, expires_at="next tuesday")
        assert res.status_code == 400

    def test_duplicate_is_409(self, client, roster, as_user):
        self._issue(client, roster, as_user)
        res = self._issue(client, roster, as_user)
        assert res.status_code == 409

    def test_reviewer_cannot_issue(self, client, roster, as_user):
        res = client.post(f"{BASE}/coi/overrides", headers=as_user(make_user(role="LEAD_REVIEWER")), json={
            "reviewer_profile_id": roster["reviewer"].id,
            "organization_id": roster["visited"].id,
            "justification": JUSTIFICATION,
        })
        assert res.status_code == 403

    def test_history_requires_reviewer(self, client):
        res = client.get(f"{BASE}/coi/overrides")
        assert res.status_code == 400

    def test_every_written_action_is_catalogued(self, client, roster, as_user, session):
        self._issue(client, roster, as_user)
        client.post(f"{BASE}/reviewers/{roster['reviewer'].id}/coi/sync", headers=as_user(roster["admin"]))
        session.expire_all()
        actions = {a.action for a in session.query(AuditLog).all()}
        assert actions
        assert actions <= AUDIT_ACTIONS


# ── Rate limit key ───────────────────────────────────────────────────────────


def test_rate_limit_key_prefers_actor(app, roster):
    from flask import g

    from peer_review.middleware.rate_limiter import rate_limit_key

    with app.test_request_context("/api/v1/coi", environ_base={"REMOTE_ADDR": "10.0.0.7"}):
        g.actor = None
        assert rate_limit_key() == "10.0.0.7"
        g.actor = roster["admin"]
        assert rate_limit_key() == f"user:{roster['admin'].id}"
