"""
Actor Context Middleware — resolves the acting user for API requests.

The identity system upstream of this engine authenticates the caller and
forwards the user id in the ``X-User-Id`` header.  This middleware loads the
matching ``User`` row into ``g.actor`` so services can perform their own
role checks.

This middleware does NOT block requests without an actor.  Mutating
endpoints opt in with ``@require_actor``.

Usage:
    @bp.route("/reviews/<int:review_id>/checklist/<code>/toggle", methods=["POST"])
    @require_actor
    def toggle(review_id, code):
        ...
"""

import functools
import logging

from flask import g, request

from peer_review.models import db
from peer_review.models.roster import User
from peer_review.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

# Paths that never resolve an actor
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_actor_context(app):
    """Register actor resolution as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        raw = request.headers.get(ACTOR_HEADER)
        if not raw:
            return None
        try:
            user_id = int(raw)
        except ValueError:
            logger.warning("Malformed %s header: %r", ACTOR_HEADER, raw)
            return None

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("Unknown or inactive actor id=%s", user_id,
                           extra={"actor_id": user_id})
            return None

        g.actor = user
        return None


def require_actor(f):
    """Decorator: refuse the request with 401 when no actor was resolved."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "actor", None) is None:
            return api_error(E.UNAUTHENTICATED, f"Missing or unknown {ACTOR_HEADER} header")
        return f(*args, **kwargs)

    return decorated
