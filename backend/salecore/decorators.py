# Overview: Request decorators establishing tenant and actor context for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import Organization


def _header_int(name: str):
    raw = (request.headers.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return False


def require_context(f):
    """
    Establish tenant context from headers set by the upstream auth layer.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.org_id: The organization ID (tenant context) - REQUIRED
    - g.actor_user_id: The acting user's ID, None when not supplied

    Returns 401 when X-Org-Id is missing or malformed, 403 when the
    organization is unknown or deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        org_id = _header_int("X-Org-Id")
        if not org_id:
            return jsonify({"error": "Tenant context required"}), 401

        actor_user_id = _header_int("X-Actor-Id")
        if actor_user_id is False:
            return jsonify({"error": "Invalid X-Actor-Id header"}), 400

        org = db.session.get(Organization, org_id)
        if org is None or not org.is_active:
            return jsonify({"error": "Organization not found or inactive"}), 403

        g.org_id = org_id
        g.actor_user_id = actor_user_id
        return f(*args, **kwargs)

    return decorated_function
