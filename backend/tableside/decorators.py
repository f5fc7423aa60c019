# Overview: Request and permission decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request


def _presented_staff_key() -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return request.headers.get("X-Staff-Key")


def is_staff_request() -> bool:
    """True when the request carries the configured staff API key."""
    expected = current_app.config.get("STAFF_API_KEY")
    presented = _presented_staff_key()
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def get_table_token(data: dict | None = None) -> str | None:
    """
    Guest table token from, in order: X-Table-Token header, ?token= query
    parameter, "token" field of the JSON body.
    """
    token = request.headers.get("X-Table-Token") or request.args.get("token")
    if not token and isinstance(data, dict):
        token = data.get("token")
    if isinstance(token, str):
        token = token.strip()
    return token or None


def require_staff(f):
    """
    Require the staff API key.

    Sets g.is_staff so handlers shared with guests can tell the callers apart.

    Returns 401 if the key is missing or wrong.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_staff_request():
            return jsonify({"error": "Staff authentication required"}), 401
        g.is_staff = True
        return f(*args, **kwargs)

    return decorated_function
