"""Standardised API error responses.

Usage
-----
    from peer_review.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Review not found")
    return api_error(E.CHECKLIST_BLOCKED, "Rule not satisfied", details={"validation": result})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • CHECKLIST_ / COI_ / CAP_ prefixes for engine-specific gate errors
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"

    # Engine gates
    CHECKLIST_BLOCKED = "CHECKLIST_BLOCKED"
    COI_INVALID_OVERRIDE = "COI_INVALID_OVERRIDE"
    CAP_INVALID_TRANSITION = "CAP_INVALID_TRANSITION"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INTERNAL: 500,
    E.CHECKLIST_BLOCKED: 422,
    E.COI_INVALID_OVERRIDE: 422,
    E.CAP_INVALID_TRANSITION: 409,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (validation result, blockers, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_engine_error_handlers(bp):
    """Attach the engine exception → HTTP mapping to a blueprint.

    Every engine blueprint calls this once after creation so the status
    codes stay identical across the COI, checklist and CAP surfaces.
    """
    import logging

    from flask import request
    from werkzeug.exceptions import HTTPException

    from peer_review.core.exceptions import (
        ConflictError,
        InvalidOverrideError,
        InvalidTransitionError,
        NotFoundError,
        PermissionDeniedError,
        ValidationError,
    )

    logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidOverrideError)
    def _handle_invalid_override(error: InvalidOverrideError):
        return api_error(E.COI_INVALID_OVERRIDE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(error: PermissionDeniedError):
        return api_error(E.FORBIDDEN, str(error), details={"required_roles": error.required_roles})

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        details = {"current": error.current, "requested": error.requested}
        details.update(error.details)
        return api_error(E.CAP_INVALID_TRANSITION, str(error), details=details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
