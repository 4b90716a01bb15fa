# Overview: Request decorators and error rendering for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .errors import ConsistencyError, PressTrackError
from .services.permission_service import ActorContext


ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
ACTOR_DEPARTMENT_HEADER = "X-Actor-Department"
ACTOR_NAME_HEADER = "X-Actor-Name"


def require_actor(f):
    """
    Establish the actor context for a mutating or reading route.

    The auth gateway in front of us has already authenticated the caller and
    forwards who they are in headers. Sets:
    - g.actor: ActorContext(actor_id, actor_role, actor_department, actor_name)

    Returns 401 if the actor id or role header is missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
        actor_role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip()

        if not actor_id or not actor_role:
            return jsonify({"error": "Actor context required"}), 401

        g.actor = ActorContext(
            actor_id=actor_id,
            actor_role=actor_role,
            actor_department=(request.headers.get(ACTOR_DEPARTMENT_HEADER) or "").strip() or None,
            actor_name=(request.headers.get(ACTOR_NAME_HEADER) or "").strip() or None,
        )
        return f(*args, **kwargs)

    return decorated_function


def error_response(exc: PressTrackError):
    """Render a domain error as JSON with its class-level status."""
    if isinstance(exc, ConsistencyError):
        current_app.logger.critical(
            "Consistency error surfaced to client: %s %s during %s",
            exc.entity, exc.entity_id, exc.operation,
        )
    return jsonify(exc.to_dict()), exc.http_status
