# Overview: Flask API routes for waiter call operations; parses input and returns JSON responses.

from flask import Blueprint, current_app, jsonify

from ..decorators import require_staff
from ..errors import TablesideError
from ..services import waiter_call_service


waiter_calls_bp = Blueprint("waiter_calls", __name__, url_prefix="/api/waiter-calls")


@waiter_calls_bp.get("")
@require_staff
def list_waiter_calls_route():
    """Pending waiter calls, oldest first."""
    try:
        calls = waiter_call_service.list_pending_calls()
        return jsonify({"waiter_calls": [c.to_dict() for c in calls]}), 200
    except Exception:
        current_app.logger.exception("Failed to list waiter calls")
        return jsonify({"error": "Internal server error"}), 500


@waiter_calls_bp.post("/<int:call_id>/acknowledge")
@require_staff
def acknowledge_waiter_call_route(call_id: int):
    """Mark a waiter call handled. Acknowledging twice returns the same call."""
    try:
        call = waiter_call_service.acknowledge_call(call_id)
        return jsonify({
            "success": True,
            "waiter_call": call.to_dict(),
        }), 200
    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to acknowledge waiter call")
        return jsonify({"error": "Internal server error"}), 500
