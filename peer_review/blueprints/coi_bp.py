"""
Conflict of Interest Blueprint.

Endpoints:
    POST   /api/v1/coi/check                        single reviewer vs organization
    POST   /api/v1/coi/check-team                   proposed team vs organization
    POST   /api/v1/reviewers/<rid>/coi/sync         reconcile auto-detected conflicts
    GET    /api/v1/coi                              list conflict records
    POST   /api/v1/coi                              declare a manual conflict
    POST   /api/v1/coi/<id>/deactivate              retire a conflict record
    GET    /api/v1/coi/stats                        registry statistics
    POST   /api/v1/coi/overrides                    issue an override
    POST   /api/v1/coi/overrides/<id>/revoke        revoke an override
    GET    /api/v1/coi/overrides                    override history for a reviewer

Layer contract:
    - Blueprint: parse input, read thresholds from app config, call service.
    - Role checks and all writes live in the services.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from peer_review.middleware.actor_context import require_actor
from peer_review.models import db
from peer_review.services import coi_detection, coi_eligibility, coi_override
from peer_review.utils.errors import E, api_error, register_engine_error_handlers
from peer_review.utils.helpers import parse_date, parse_datetime

logger = logging.getLogger(__name__)

coi_bp = Blueprint("coi", __name__, url_prefix="/api/v1")
register_engine_error_handlers(coi_bp)


def _cooldown():
    return current_app.config["COI_RECENT_REVIEW_COOLDOWN_DAYS"]


def _require_ints(data, *fields):
    """Return ({field: int}, None) or (None, error_response)."""
    values = {}
    for field in fields:
        raw = data.get(field)
        if raw is None or raw == "":
            return None, api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
        try:
            values[field] = int(raw)
        except (TypeError, ValueError):
            return None, api_error(E.VALIDATION_INVALID, f"Field '{field}' must be an integer.")
    return values, None


def _optional_int(value):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ── Checks (read-only) ─────────────────────────────────────────────────────────


@coi_bp.route("/coi/check", methods=["POST"])
def check_reviewer():
    data = request.get_json(silent=True) or {}
    ids, err = _require_ints(data, "reviewer_profile_id", "organization_id")
    if err:
        return err
    result = coi_eligibility.check_reviewer_coi(
        db.session, ids["reviewer_profile_id"], ids["organization_id"],
        _optional_int(data.get("review_id")), cooldown_days=_cooldown(),
    )
    return jsonify(result), 200


@coi_bp.route("/coi/check-team", methods=["POST"])
def check_team():
    data = request.get_json(silent=True) or {}
    ids, err = _require_ints(data, "organization_id")
    if err:
        return err
    reviewer_ids = data.get("reviewer_profile_ids")
    if not isinstance(reviewer_ids, list) or not reviewer_ids:
        return api_error(E.VALIDATION_REQUIRED, "Field 'reviewer_profile_ids' must be a non-empty list.")
    try:
        reviewer_ids = [int(r) for r in reviewer_ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "reviewer_profile_ids must contain integers.")
    result = coi_eligibility.check_team_coi(
        db.session, reviewer_ids, ids["organization_id"],
        _optional_int(data.get("review_id")), cooldown_days=_cooldown(),
    )
    return jsonify(result), 200


# ── Registry ───────────────────────────────────────────────────────────────────


@coi_bp.route("/reviewers/<int:reviewer_profile_id>/coi/sync", methods=["POST"])
@require_actor
def sync_reviewer(reviewer_profile_id):
    result = coi_detection.sync_auto_detected_cois(
        db.session, reviewer_profile_id, cooldown_days=_cooldown(),
    )
    return jsonify({"reviewer_profile_id": reviewer_profile_id, **result}), 200


@coi_bp.route("/coi", methods=["GET"])
def list_conflicts():
    items = coi_detection.list_conflicts(
        db.session,
        reviewer_profile_id=_optional_int(request.args.get("reviewer_profile_id")),
        organization_id=_optional_int(request.args.get("organization_id")),
        active_only=request.args.get("active_only") == "true",
    )
    return jsonify({"items": items, "total": len(items)}), 200


@coi_bp.route("/coi", methods=["POST"])
@require_actor
def declare_conflict():
    data = request.get_json(silent=True) or {}
    ids, err = _require_ints(data, "reviewer_profile_id", "organization_id")
    if err:
        return err
    coi_type = (data.get("coi_type") or "").strip()
    if not coi_type:
        return api_error(E.VALIDATION_REQUIRED, "Field 'coi_type' is required.")
    record = coi_detection.declare_conflict(
        db.session, g.actor,
        reviewer_profile_id=ids["reviewer_profile_id"],
        organization_id=ids["organization_id"],
        coi_type=coi_type,
        reason=data.get("reason") or "",
        severity=data.get("severity"),
        start_date=parse_date(data.get("start_date")),
        end_date=parse_date(data.get("end_date")),
    )
    return jsonify(record), 201


@coi_bp.route("/coi/<int:coi_id>/deactivate", methods=["POST"])
@require_actor
def deactivate_conflict(coi_id):
    data = request.get_json(silent=True) or {}
    record = coi_detection.deactivate_conflict(db.session, g.actor, coi_id, reason=data.get("reason"))
    return jsonify(record), 200


@coi_bp.route("/coi/stats", methods=["GET"])
def stats():
    result = coi_eligibility.get_coi_stats(
        db.session,
        reviewer_profile_id=_optional_int(request.args.get("reviewer_profile_id")),
        organization_id=_optional_int(request.args.get("organization_id")),
    )
    return jsonify(result), 200


# ── Overrides ──────────────────────────────────────────────────────────────────


@coi_bp.route("/coi/overrides", methods=["POST"])
@require_actor
def issue_override():
    data = request.get_json(silent=True) or {}
    ids, err = _require_ints(data, "reviewer_profile_id", "organization_id")
    if err:
        return err
    expires_at = None
    if data.get("expires_at"):
        expires_at = parse_datetime(data["expires_at"])
        if expires_at is None:
            return api_error(E.VALIDATION_INVALID, "expires_at must be an ISO datetime.")
    override = coi_override.issue_override(
        db.session, g.actor,
        reviewer_profile_id=ids["reviewer_profile_id"],
        organization_id=ids["organization_id"],
        review_id=_optional_int(data.get("review_id")),
        justification=data.get("justification") or "",
        expires_at=expires_at,
        min_justification=current_app.config["COI_MIN_OVERRIDE_JUSTIFICATION"],
        cooldown_days=_cooldown(),
    )
    return jsonify(override), 201


@coi_bp.route("/coi/overrides/<int:override_id>/revoke", methods=["POST"])
@require_actor
def revoke_override(override_id):
    data = request.get_json(silent=True) or {}
    override = coi_override.revoke_override(db.session, g.actor, override_id, data.get("reason") or "")
    return jsonify(override), 200


@coi_bp.route("/coi/overrides", methods=["GET"])
def override_history():
    reviewer_id = _optional_int(request.args.get("reviewer_profile_id"))
    if reviewer_id is None:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'reviewer_profile_id' is required.")
    history = coi_override.list_override_history(
        db.session, reviewer_id,
        organization_id=_optional_int(request.args.get("organization_id")),
    )
    return jsonify({"items": history, "total": len(history)}), 200
