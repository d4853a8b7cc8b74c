# Overview: Request decorators for API routes.

from functools import wraps

from flask import current_app, g, request

from .exceptions import EngineError


ACTOR_HEADER = "X-Actor"


def _resolve_actor() -> str | None:
    header = request.headers.get(ACTOR_HEADER)
    if header and header.strip():
        return header.strip()
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        actor = payload.get("actor")
        if isinstance(actor, str) and actor.strip():
            return actor.strip()
    return None


def require_actor(f):
    """
    Require an acting identity for audited writes.

    Authentication happens upstream; the caller forwards who is acting in
    the X-Actor header (or an "actor" field in the JSON body). Sets g.actor.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = _resolve_actor()
        if not actor:
            return {"error": "Actor is required (X-Actor header or 'actor' field)", "code": "ACTOR_REQUIRED"}, 401
        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def engine_errors(f):
    """
    Translate engine errors into JSON responses.

    EngineError subclasses carry their own status and details. Anything
    else is logged with its traceback and surfaced as a generic 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except EngineError as e:
            if e.http_status >= 500:
                current_app.logger.warning("%s on %s %s: %s", e.code, request.method, request.path, e.message)
            return e.to_dict(), e.http_status
        except Exception:
            current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
            return {"error": "Internal server error", "code": "INTERNAL_ERROR"}, 500

    return decorated_function
