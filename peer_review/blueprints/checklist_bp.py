"""
Fieldwork Checklist Blueprint.

Endpoints:
    POST   /api/v1/reviews/<rid>/checklist/initialize
    GET    /api/v1/reviews/<rid>/checklist
    GET    /api/v1/reviews/<rid>/checklist/completion
    POST   /api/v1/reviews/<rid>/checklist/<code>/toggle        Body: {"is_completed": bool?}
    POST   /api/v1/reviews/<rid>/checklist/<code>/override      Body: {"justification": "..."}
    DELETE /api/v1/reviews/<rid>/checklist/<code>/override
    GET    /api/v1/reviews/<rid>/checklist/overrides            override ledger
    POST   /api/v1/reviews/<rid>/complete-fieldwork

A rule that refuses completion comes back as 422 CHECKLIST_BLOCKED with the
validation result under ``details.validation``.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from peer_review.middleware.actor_context import require_actor
from peer_review.models import db
from peer_review.services import checklist_service
from peer_review.utils.errors import E, api_error, register_engine_error_handlers

logger = logging.getLogger(__name__)

checklist_bp = Blueprint("checklist", __name__, url_prefix="/api/v1/reviews/<int:review_id>")
register_engine_error_handlers(checklist_bp)


@checklist_bp.route("/checklist/initialize", methods=["POST"])
@require_actor
def initialize(review_id):
    items, created = checklist_service.initialize_checklist(db.session, review_id, actor=g.actor)
    return jsonify({"review_id": review_id, "created": created, "items": items}), 201 if created else 200


@checklist_bp.route("/checklist", methods=["GET"])
def get_checklist(review_id):
    return jsonify(checklist_service.get_checklist(db.session, review_id)), 200


@checklist_bp.route("/checklist/completion", methods=["GET"])
def completion(review_id):
    return jsonify(checklist_service.get_completion_status(db.session, review_id)), 200


@checklist_bp.route("/checklist/<item_code>/toggle", methods=["POST"])
@require_actor
def toggle(review_id, item_code):
    data = request.get_json(silent=True) or {}
    target = data.get("is_completed")
    if target is not None and not isinstance(target, bool):
        return api_error(E.VALIDATION_INVALID, "is_completed must be a boolean.")

    item, failure = checklist_service.toggle_item(
        db.session, review_id, item_code, g.actor, is_completed=target,
    )
    if failure:
        return api_error(
            E.CHECKLIST_BLOCKED, failure["error"],
            status=failure["status"], details={"validation": failure["validation"]},
        )
    return jsonify(item), 200


@checklist_bp.route("/checklist/<item_code>/override", methods=["POST"])
@require_actor
def override(review_id, item_code):
    data = request.get_json(silent=True) or {}
    item = checklist_service.override_item(
        db.session, review_id, item_code, g.actor,
        justification=data.get("justification") or data.get("reason") or "",
        min_justification=current_app.config["CHECKLIST_MIN_OVERRIDE_JUSTIFICATION"],
    )
    return jsonify(item), 200


@checklist_bp.route("/checklist/<item_code>/override", methods=["DELETE"])
@require_actor
def remove_override(review_id, item_code):
    item = checklist_service.remove_override(db.session, review_id, item_code, g.actor)
    return jsonify(item), 200


@checklist_bp.route("/checklist/overrides", methods=["GET"])
def override_events(review_id):
    events = checklist_service.list_override_events(
        db.session, review_id, item_code=request.args.get("item_code") or None,
    )
    return jsonify({"items": events, "total": len(events)}), 200


@checklist_bp.route("/complete-fieldwork", methods=["POST"])
@require_actor
def complete_fieldwork(review_id):
    result = checklist_service.complete_fieldwork(db.session, review_id, g.actor)
    return jsonify(result), 200
