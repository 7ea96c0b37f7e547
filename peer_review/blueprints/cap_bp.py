"""
Corrective Action Plan Blueprint.

Endpoints:
    POST   /api/v1/caps                              create a plan for a finding
    POST   /api/v1/caps/<id>/transition              Body: {"status": "...", "comments": "..."}
    GET    /api/v1/caps/<id>/deadline                deadline info for one plan
    GET    /api/v1/caps/<id>/allowed-transitions
    GET    /api/v1/caps/deadlines                    ?organization_id&include_completed&overdue_only
    GET    /api/v1/caps/due-within/<days>
    GET    /api/v1/caps/milestones/overdue
    GET    /api/v1/caps/escalations                  detector preview (no dispatch)
    GET    /api/v1/caps/transitions/validate         ?from=&to=
    GET    /api/v1/caps/stats                        ?organization_id
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from peer_review.middleware.actor_context import require_actor
from peer_review.models import db
from peer_review.models.cap import CAP_STATUSES
from peer_review.services import cap_deadline, cap_status
from peer_review.utils.errors import E, api_error, register_engine_error_handlers

logger = logging.getLogger(__name__)

cap_bp = Blueprint("cap", __name__, url_prefix="/api/v1/caps")
register_engine_error_handlers(cap_bp)


def _thresholds():
    return {
        "warning_days": current_app.config["CAP_WARNING_THRESHOLD_DAYS"],
        "critical_days": current_app.config["CAP_CRITICAL_THRESHOLD_DAYS"],
    }


def _org_filter():
    raw = request.args.get("organization_id")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ── Lifecycle ──────────────────────────────────────────────────────────────────


@cap_bp.route("", methods=["POST"])
@require_actor
def create_cap():
    data = request.get_json(silent=True) or {}
    finding_id = data.get("finding_id")
    if not isinstance(finding_id, int):
        return api_error(E.VALIDATION_REQUIRED, "Field 'finding_id' (integer) is required.")
    milestones = data.get("milestones") or []
    if not isinstance(milestones, list):
        return api_error(E.VALIDATION_INVALID, "milestones must be a list.")
    cap = cap_status.create_cap(
        db.session, g.actor, finding_id,
        root_cause=data.get("root_cause", ""),
        corrective_action=data.get("corrective_action", ""),
        preventive_action=data.get("preventive_action", ""),
        due_date=data.get("due_date"),
        assigned_to_id=data.get("assigned_to_id"),
        milestones=milestones,
    )
    return jsonify(cap), 201


@cap_bp.route("/<int:cap_id>/transition", methods=["POST"])
@require_actor
def transition(cap_id):
    data = request.get_json(silent=True) or {}
    new_status = (data.get("status") or "").strip().upper()
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "Field 'status' is required.")
    cap = cap_status.transition_cap(
        db.session, g.actor, cap_id, new_status, comments=data.get("comments"),
    )
    return jsonify(cap), 200


@cap_bp.route("/<int:cap_id>/allowed-transitions", methods=["GET"])
def allowed_transitions(cap_id):
    cap = cap_status.get_cap(db.session, cap_id)
    return jsonify({
        "cap_id": cap.id,
        "status": cap.status,
        "allowed": cap_status.get_allowed_next_statuses(cap.status),
    }), 200


@cap_bp.route("/transitions/validate", methods=["GET"])
def validate_transition():
    current = (request.args.get("from") or "").upper()
    target = (request.args.get("to") or "").upper()
    unknown = [s for s in (current, target) if s not in CAP_STATUSES]
    if unknown:
        return api_error(E.VALIDATION_INVALID, f"Unknown CAP status: {unknown[0] or '(empty)'}",
                         details={"allowed": CAP_STATUSES})
    return jsonify({
        "from": current,
        "to": target,
        "is_valid": cap_status.is_valid_transition(current, target),
    }), 200


# ── Deadlines ──────────────────────────────────────────────────────────────────


@cap_bp.route("/<int:cap_id>/deadline", methods=["GET"])
def deadline(cap_id):
    return jsonify(cap_deadline.get_cap_deadline(db.session, cap_id, **_thresholds())), 200


@cap_bp.route("/deadlines", methods=["GET"])
def deadlines():
    items = cap_deadline.get_caps_with_deadline_info(
        db.session,
        organization_id=_org_filter(),
        include_completed=request.args.get("include_completed") == "true",
        overdue_only=request.args.get("overdue_only") == "true",
        **_thresholds(),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@cap_bp.route("/due-within/<int:days>", methods=["GET"])
def due_within(days):
    items = cap_deadline.get_caps_due_within_days(db.session, days, **_thresholds())
    return jsonify({"days": days, "items": items, "total": len(items)}), 200


@cap_bp.route("/milestones/overdue", methods=["GET"])
def overdue_milestones():
    items = cap_deadline.get_overdue_milestones(db.session)
    return jsonify({"items": items, "total": len(items)}), 200


@cap_bp.route("/escalations", methods=["GET"])
def escalations():
    return jsonify(cap_deadline.detect_escalation_events(db.session, **_thresholds())), 200


@cap_bp.route("/stats", methods=["GET"])
def stats():
    result = cap_deadline.get_cap_statistics(
        db.session,
        organization_id=_org_filter(),
        warning_days=current_app.config["CAP_WARNING_THRESHOLD_DAYS"],
    )
    return jsonify(result), 200
