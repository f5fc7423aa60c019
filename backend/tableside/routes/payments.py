# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

"""
Payment API Routes

WHY: Closing the bill. A guest (or waiter) opens a payment, staff confirm
cash/card, and the PIX provider confirms through the webhook.

DESIGN:
- Creating a payment moves the table to needs_attention
- Reads apply the expiry check, so a stale PIX charge shows as cancelled
- The webhook is acknowledged even when it carries nothing usable; only an
  unknown payment id answers 404

SECURITY:
- Guest calls need the table token, staff calls the staff key
- Webhook bodies are HMAC-SHA256 signed when PAYMENT_WEBHOOK_SECRET is set
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import get_table_token, is_staff_request, require_staff
from ..errors import AccessDeniedError, NotFoundError, TablesideError, ValidationError
from ..services import payment_service, table_session_service, token_service


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _guest_must_hold_token() -> bool:
    return not is_staff_request() and bool(current_app.config.get("TABLE_TOKEN_REQUIRED", True))


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("")
def create_payment_route():
    """
    Open a payment for a table's bill.

    Request body:
    {
        "table_id": 3,
        "method": "pix" | "cash" | "card",
        "total_amount_cents": 8750,
        "order_ids": [12, 13],
        "token": "..."   (or X-Table-Token header; not needed with staff key)
    }

    Returns:
        201: Payment created (pix: with qr_code and copy_paste_code)
        400: Invalid input
        403: Token invalid
        404: Unknown table
        409: No open bill, or a payment is already open
        502: PIX provider failed
    """
    try:
        data = request.get_json(silent=True) or {}

        table_id = data.get("table_id")
        if not isinstance(table_id, int) or isinstance(table_id, bool):
            raise ValidationError("table_id must be an integer")

        if _guest_must_hold_token():
            table_session_service.require_valid_token(table_id, get_table_token(data))

        payment = payment_service.create_payment(
            table_id=table_id,
            method=data.get("method"),
            total_amount_cents=data.get("total_amount_cents"),
            order_ids=data.get("order_ids"),
        )

        return jsonify({
            "success": True,
            "payment": payment.to_dict(),
        }), 201

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PROVIDER WEBHOOK
# =============================================================================

@payments_bp.post("/webhook")
def payment_webhook_route():
    """
    Provider callback.

    Request body:
    {
        "payment_id": "pix_12_ab34cd56ef78ab90",   (external payment id)
        "status": "paid" | "approved" | "confirmed" | "pending"
                  | "cancelled" | "expired" | "failed",
        "amount_cents": 8750,      (optional, checked against the payment)
        "transaction_id": "...",   (optional)
        "end_to_end_id": "..."     (optional)
    }

    Header:
        X-Webhook-Signature: sha256=<hex hmac of the raw body>

    Returns:
        200: Acknowledged (applied or ignored)
        401: Bad signature
        404: Unknown payment id
    """
    try:
        raw_body = request.get_data(cache=True)
        if not payment_service.verify_webhook_signature(
            raw_body, request.headers.get("X-Webhook-Signature")
        ):
            current_app.logger.warning("Rejected payment webhook with bad signature")
            return jsonify({"error": "Invalid signature"}), 401

        payload = request.get_json(silent=True)
        result = payment_service.handle_webhook(payload)
        return jsonify(result.to_dict()), 200

    except NotFoundError as e:
        current_app.logger.warning("Payment webhook for unknown payment: %s", e.message)
        return jsonify(e.to_dict()), e.status_code
    except TablesideError as e:
        current_app.logger.warning("Payment webhook not applied: %s", e.message)
        return jsonify({"success": True, "applied": False, "message": e.message}), 200
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT QUERIES / UPDATES
# =============================================================================

@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    """
    Payment status (client polling). Guest token of the table or staff key.

    The token is checked before the read, since reading may expire the
    payment. Guests get the same 403 for unknown and foreign payment ids.
    """
    try:
        if _guest_must_hold_token():
            token = get_table_token()
            table_id = payment_service.get_payment_table_id(payment_id)
            if table_id is None:
                reason = token_service.REASON_TOKEN_MISMATCH if token else token_service.REASON_MISSING_TOKEN
                raise AccessDeniedError(reason, token_service.REASON_MESSAGES[reason], requires_new_token=True)
            table_session_service.require_valid_token(table_id, token)

        payment = payment_service.get_payment(payment_id)

        return jsonify({"payment": payment.to_dict()}), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.patch("/<int:payment_id>")
@require_staff
def update_payment_route(payment_id: int):
    """
    Staff status update (confirming cash/card, recording provider references).

    Request body:
    {
        "status": "processing" | "completed" | "failed" | "cancelled",
        "provider_transaction_id": "...",   (optional)
        "external_payment_id": "..."        (optional)
    }

    Returns:
        200: Updated payment; completed releases the table
        400: Unknown status
        404: Unknown payment
        409: Payment is terminal or the transition is not allowed
    """
    try:
        data = request.get_json(silent=True) or {}

        payment = payment_service.update_payment(
            payment_id,
            data.get("status"),
            provider_transaction_id=data.get("provider_transaction_id"),
            external_payment_id=data.get("external_payment_id"),
        )

        return jsonify({
            "success": True,
            "payment": payment.to_dict(),
        }), 200

    except TablesideError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update payment")
        return jsonify({"error": "Internal server error"}), 500
