# Overview: Flask API routes for tables operations; parses input and returns JSON responses.

"""
Table API Routes

WHY: The QR flow lives here. A guest scans, asks for a token, polls the
session, and the staff board drives the table state machine.

DESIGN:
- GET session is a read: it never changes table status
- Staff callers skip the token requirement everywhere
- Guard failures answer 409 with the current table so boards can re-render

SECURITY:
- Guest endpoints need the table token (X-Table-Token, ?token= or body)
- Staff endpoints need the staff API key
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import get_table_token, is_staff_request, require_staff
from ..errors import TablesideError, ValidationError
from ..services import order_service, table_service, table_session_service, token_service, waiter_call_service
from tableside.time_utils import to_utc_z


tables_bp = Blueprint("tables", __name__, url_prefix="/api/tables")


def _token_required() -> bool:
    return bool(current_app.config.get("TABLE_TOKEN_REQUIRED", True)) and not is_staff_request()


# =============================================================================
# TABLE BOARD
# =============================================================================

@tables_bp.get("")
@require_staff
def list_tables_route():
    """
    List every table with status and pending waiter calls.

    Query params:
    - status: only tables in this status (awaiting_payment is accepted for needs_attention)
    """
    try:
        tables = table_service.list_tables(request.args.get("status"))
        return jsonify({"tables": [t.to_dict() for t in tables]}), 200
    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list tables")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.patch("/<int:table_id>/status")
@require_staff
def update_table_status_route(table_id: int):
    """
    Apply a state machine action to a table.

    Request body:
    {
        "action": "close_bill" | "confirm_payment" | "occupy" | "free"
                  | "need_attention" | "reserve"
    }

    Returns:
        200: {success, table, message, changed}
        400: Unknown action
        404: Unknown table
        409: Guard failed; body carries the current table
    """
    try:
        data = request.get_json(silent=True) or {}
        action = data.get("action")
        if not action:
            return jsonify({"error": "action is required"}), 400

        result = table_service.apply_action(table_id, action)

        return jsonify({
            "success": True,
            "changed": result.changed,
            "table": result.table.to_dict(),
            "message": result.message,
        }), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update table status")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SESSION
# =============================================================================

@tables_bp.get("/<int:table_id>/session")
def get_table_session_route(table_id: int):
    """
    Check the guest session for a table.

    Query params:
    - token: table token (or X-Table-Token header)

    Returns:
        200: {table, session: {isValid, hasActiveOrders, hasRecentOrders,
              lastOrderTime, tokenValid?, tokenExpires?}}
        403: {reason, requiresNewToken, message} when the token is bad
        404: Unknown table
    """
    try:
        verdict = table_session_service.check(
            table_id,
            get_table_token(),
            require_token=_token_required(),
        )
        if verdict.token_failed:
            denial = verdict.to_error()
            return jsonify(denial.to_dict()), denial.status_code

        return jsonify(verdict.to_dict()), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check table session")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.delete("/<int:table_id>/session")
@require_staff
def close_table_session_route(table_id: int):
    """Force-close a table session: table available, token revoked."""
    try:
        table = table_service.force_close_session(table_id)
        return jsonify({
            "success": True,
            "table": table.to_dict(),
            "message": f"Table {table.number} session closed.",
        }), 200
    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to close table session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TOKENS
# =============================================================================

@tables_bp.post("/<int:table_id>/tokens")
def issue_table_token_route(table_id: int):
    """
    Issue a fresh access token for a table (QR scan).

    Request body (optional):
    {
        "ttl_class": "guest" | "operator"   (default: guest)
    }

    Guest tokens are public; operator tokens need the staff key. Issuing a
    token never changes table status and replaces any previous token.

    Returns:
        201: {token, expiresAt, accessUrl, tokenClass}
    """
    try:
        data = request.get_json(silent=True) or {}
        ttl_class = data.get("ttl_class") or token_service.TOKEN_CLASS_GUEST

        if ttl_class == token_service.TOKEN_CLASS_OPERATOR and not is_staff_request():
            return jsonify({"error": "Staff authentication required for operator tokens"}), 401

        token, expires_at = token_service.issue(table_id, ttl_class)

        return jsonify({
            "token": token,
            "expiresAt": to_utc_z(expires_at),
            "accessUrl": token_service.build_access_url(table_id, token),
            "tokenClass": ttl_class,
        }), 201

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to issue table token")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TABLE ORDERS / WAITER
# =============================================================================

@tables_bp.get("/<int:table_id>/orders")
def list_table_orders_route(table_id: int):
    """Orders for one table, newest first. Guest token or staff key."""
    try:
        if _token_required():
            table_session_service.require_valid_token(table_id, get_table_token())

        orders = order_service.list_table_orders(table_id)
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list table orders")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.post("/<int:table_id>/call-waiter")
def call_waiter_route(table_id: int):
    """
    Ring for a waiter.

    Request body:
    {
        "reason": "Need more napkins"   (optional)
    }

    Allowed while awaiting payment; only the token is checked.
    """
    try:
        data = request.get_json(silent=True) or {}
        if _token_required():
            table_session_service.require_valid_token(table_id, get_table_token(data))

        reason = data.get("reason")
        if reason is not None and not isinstance(reason, str):
            raise ValidationError("reason must be a string")

        call = waiter_call_service.call_waiter(table_id, reason)
        return jsonify({
            "success": True,
            "waiter_call": call.to_dict(),
            "message": "A waiter is on the way.",
        }), 201

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to call waiter")
        return jsonify({"error": "Internal server error"}), 500
