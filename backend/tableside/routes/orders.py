# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

"""
Order API Routes

WHY: Guests submit carts from the table; the kitchen and waiters move orders
along the board.

DESIGN:
- Placement goes through the session check, then the table's order_submitted
  transition, in that order
- Staff may place orders for any table without a token
- Status filters accept comma-separated lists (?status=pending,preparing)
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import get_table_token, is_staff_request, require_staff
from ..errors import TablesideError, ValidationError
from ..services import order_service, table_session_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


# =============================================================================
# ORDER PLACEMENT
# =============================================================================

@orders_bp.post("")
def place_order_route():
    """
    Place an order for a table.

    Request body:
    {
        "table_id": 3,
        "items": [{"menu_item_id": 1, "quantity": 2, "notes": "no onions"}],
        "notes": "birthday table",   (optional)
        "token": "..."               (or X-Table-Token header)
    }

    Returns:
        201: Order created, table occupied
        400: Invalid items
        403: Token invalid or table awaiting payment
        404: Unknown table
    """
    try:
        data = request.get_json(silent=True) or {}

        table_id = data.get("table_id")
        if not isinstance(table_id, int) or isinstance(table_id, bool):
            raise ValidationError("table_id must be an integer")
        notes = data.get("notes")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string")

        if not is_staff_request():
            table_session_service.require_table_access(
                table_id,
                get_table_token(data),
                require_token=bool(current_app.config.get("TABLE_TOKEN_REQUIRED", True)),
            )

        order = order_service.place_order(table_id, data.get("items"), notes)

        return jsonify({
            "success": True,
            "order": order.to_dict(),
        }), 201

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER QUERIES
# =============================================================================

@orders_bp.get("")
@require_staff
def list_orders_route():
    """
    Kitchen/waiter board.

    Query params:
    - status: comma-separated statuses; filtered lists are oldest first
    """
    try:
        raw = request.args.get("status", "")
        statuses = [s for s in (part.strip() for part in raw.split(",")) if s]

        orders = order_service.list_orders(statuses or None)
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    """Single order with items. Guest token of the order's table or staff key."""
    try:
        order = order_service.get_order(order_id)
        if not is_staff_request() and current_app.config.get("TABLE_TOKEN_REQUIRED", True):
            table_session_service.require_valid_token(order.table_id, get_table_token())

        return jsonify({"order": order.to_dict()}), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS UPDATES
# =============================================================================

@orders_bp.patch("/<int:order_id>")
@require_staff
def update_order_route(order_id: int):
    """
    Move an order along the kitchen flow.

    Request body:
    {
        "status": "preparing" | "ready" | "delivered" | "cancelled"
    }

    Returns:
        200: Updated order
        400: Unknown status
        404: Unknown order
        409: Transition not allowed from the current status
    """
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_order_status(order_id, data.get("status"))
        return jsonify({
            "success": True,
            "order": order.to_dict(),
        }), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500
