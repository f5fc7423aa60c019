# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Lifecycle Service

WHY: Closing a table's bill ends in exactly one outcome: the money arrives
(table released, orders settled) or it does not (payment cancelled/failed,
table keeps waiting). This service owns that decision.

STATE MACHINE:
    pending -> processing -> completed | failed | cancelled

    pending:     cash/card, waiting for staff to confirm
    processing:  pix charge issued, waiting for the provider webhook
    completed:   IMMUTABLE; cascades table release + order settlement
    failed / cancelled: terminal

RULES (NON-NEGOTIABLE):
1. No regression out of a terminal state
2. processing -> cancelled happens automatically once expires_at passes
   (checked on read, on webhook, and by the CLI sweep)
3. Completion and expiry race; one conditional UPDATE decides the winner and
   the loser becomes a no-op
4. The completion cascade runs only for the write that actually moved the
   payment to completed, so replayed webhooks never cascade twice
5. At most one pending/processing payment per table
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, Payment
from ..errors import ConflictError, NotFoundError, ProviderError, ValidationError
from tableside.time_utils import utcnow
from .concurrency import conditional_update, reload, run_with_retry
from .pix_provider import get_provider
from . import order_service, table_service


logger = logging.getLogger(__name__)


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "cash"
METHOD_PIX = "pix"
METHOD_CARD = "card"

VALID_METHODS = [METHOD_CASH, METHOD_PIX, METHOD_CARD]


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PROCESSING = "processing"
PAYMENT_STATUS_COMPLETED = "completed"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUS_CANCELLED = "cancelled"

VALID_PAYMENT_STATUSES = frozenset({
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PROCESSING,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
})

OPEN_PAYMENT_STATUSES = (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PROCESSING)
TERMINAL_PAYMENT_STATUSES = frozenset({
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
})

# target -> statuses it may be reached from
PAYMENT_TRANSITIONS = {
    PAYMENT_STATUS_PROCESSING: {PAYMENT_STATUS_PENDING},
    PAYMENT_STATUS_COMPLETED: set(OPEN_PAYMENT_STATUSES),
    PAYMENT_STATUS_FAILED: set(OPEN_PAYMENT_STATUSES),
    PAYMENT_STATUS_CANCELLED: set(OPEN_PAYMENT_STATUSES),
}

# Provider vocabulary -> internal status
EXTERNAL_STATUS_MAP = {
    "paid": PAYMENT_STATUS_COMPLETED,
    "approved": PAYMENT_STATUS_COMPLETED,
    "confirmed": PAYMENT_STATUS_COMPLETED,
    "pending": PAYMENT_STATUS_PROCESSING,
    "cancelled": PAYMENT_STATUS_CANCELLED,
    "expired": PAYMENT_STATUS_CANCELLED,
    "failed": PAYMENT_STATUS_FAILED,
}
DEFAULT_EXTERNAL_STATUS = PAYMENT_STATUS_PROCESSING


@dataclass
class WebhookResult:
    """Outcome of one provider callback. Always acknowledged to the provider."""

    applied: bool
    message: str
    payment: Payment | None = None
    status: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": True,
            "applied": self.applied,
            "message": self.message,
            "status": self.status,
            "payment": self.payment.to_dict() if self.payment is not None else None,
        }


def map_external_status(external_status: str) -> str:
    """
    Translate a provider status into the internal enum.

    Unknown values fall back to processing so the payment is never dropped.
    """
    key = (external_status or "").strip().lower()
    internal = EXTERNAL_STATUS_MAP.get(key)
    if internal is None:
        logger.warning(
            "Unrecognized provider status %r; treating as %s",
            external_status, DEFAULT_EXTERNAL_STATUS,
        )
        return DEFAULT_EXTERNAL_STATUS
    return internal


def normalize_payment_status(status) -> str:
    if not isinstance(status, str) or not status.strip():
        raise ValidationError("status is required")
    value = status.strip().lower()
    if value not in VALID_PAYMENT_STATUSES:
        raise ValidationError(
            f"Invalid payment status '{status}'. Must be one of: {', '.join(sorted(VALID_PAYMENT_STATUSES))}"
        )
    return value


def verify_webhook_signature(raw_body: bytes, signature: str | None) -> bool:
    """
    Check the provider's HMAC-SHA256 signature when a webhook secret is set.

    Accepts a bare hex digest or one prefixed with "sha256=".
    """
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        return True
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def create_payment(
    table_id: int,
    method: str,
    total_amount_cents: int,
    order_ids: list[int],
) -> Payment:
    """
    Open a payment for a table's bill.

    The table is moved to needs_attention (ordering frozen) in the same
    transaction. PIX payments get provider fields and start in processing;
    cash/card start pending until staff confirm.

    Raises:
        ValidationError: bad method, amount or order ids
        NotFoundError: unknown table
        ConflictError: table has no open bill, or another payment is open
        ProviderError: provider could not issue a charge (nothing is saved)
    """
    if method not in VALID_METHODS:
        raise ValidationError(f"Invalid payment method: {method}. Must be one of {VALID_METHODS}")
    if not isinstance(total_amount_cents, int) or isinstance(total_amount_cents, bool) or total_amount_cents <= 0:
        raise ValidationError("total_amount_cents must be a positive integer")
    if (
        not isinstance(order_ids, list)
        or not order_ids
        or not all(isinstance(i, int) and not isinstance(i, bool) for i in order_ids)
    ):
        raise ValidationError("order_ids must be a non-empty list of integers")
    order_ids = sorted(set(order_ids))

    def _op():
        now = utcnow()

        table_service.close_bill_for_payment(table_id, now)
        _expire_due_payments(now, table_id=table_id)

        open_payment = (
            db.session.query(Payment)
            .filter(Payment.table_id == table_id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .first()
        )
        if open_payment is not None:
            raise ConflictError(
                f"Table already has an open payment ({open_payment.id})",
                current=open_payment.to_dict(),
            )

        orders = db.session.query(Order).filter(Order.id.in_(order_ids)).all()
        found = {o.id: o for o in orders}
        missing = [i for i in order_ids if i not in found]
        if missing:
            raise ValidationError(f"Orders not found: {missing}")
        foreign = [o.id for o in orders if o.table_id != table_id]
        if foreign:
            raise ValidationError(f"Orders {foreign} do not belong to table {table_id}")
        cancelled = [o.id for o in orders if o.status == order_service.ORDER_STATUS_CANCELLED]
        if cancelled:
            raise ValidationError(f"Cancelled orders cannot be paid: {cancelled}")

        expected = sum(o.total_amount_cents for o in orders)
        if expected != total_amount_cents:
            logger.warning(
                "Payment for table %s: amount %s differs from order total %s",
                table_id, total_amount_cents, expected,
            )

        payment = Payment(
            table_id=table_id,
            order_ids=order_ids,
            method=method,
            status=PAYMENT_STATUS_PENDING,
            total_amount_cents=total_amount_cents,
            expires_at=now + timedelta(minutes=current_app.config["PAYMENT_WINDOW_MINUTES"]),
            created_at=now,
            updated_at=now,
        )
        db.session.add(payment)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Table already has an open payment")

        if method == METHOD_PIX:
            charge = get_provider().create_charge(payment.id, total_amount_cents)
            payment.pix_key = charge.pix_key
            payment.qr_code = charge.qr_code
            payment.copy_paste_code = charge.copy_paste_code
            payment.external_payment_id = charge.external_payment_id
            payment.status = PAYMENT_STATUS_PROCESSING

        db.session.commit()
        logger.info(
            "Payment %s created for table %s (%s, %s cents, %s)",
            payment.id, table_id, method, total_amount_cents, payment.status,
        )
        return payment

    try:
        return run_with_retry(_op)
    except ProviderError:
        logger.exception("Provider failed to issue a charge for table %s", table_id)
        raise


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    """Read a payment, applying the expiry check first."""
    def _op():
        now = utcnow()
        payment = reload(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if _expire_if_due(payment.id, now):
            db.session.commit()
            payment = reload(Payment, payment_id)
        return payment

    return run_with_retry(_op)


def get_payment_table_id(payment_id: int) -> int | None:
    """Owning table of a payment, read without the expiry check. None if unknown."""
    return (
        db.session.query(Payment.table_id)
        .filter(Payment.id == payment_id)
        .scalar()
    )


def get_payment_by_external_id(external_payment_id: str) -> Payment:
    payment = (
        db.session.query(Payment)
        .filter(Payment.external_payment_id == external_payment_id)
        .populate_existing()
        .first()
    )
    if payment is None:
        raise NotFoundError(f"Payment with external id {external_payment_id!r} not found")
    return payment


# =============================================================================
# STATUS UPDATES
# =============================================================================

def update_payment(
    payment_id: int,
    status: str,
    *,
    provider_transaction_id: str | None = None,
    external_payment_id: str | None = None,
) -> Payment:
    """
    Manual or polled status update (staff confirming cash/card, client poll).

    Same-status requests are no-ops apart from recording provider references
    on a still-open payment. Terminal payments reject any change.
    """
    target = normalize_payment_status(status)

    def _op():
        now = utcnow()
        payment = reload(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if _expire_if_due(payment.id, now):
            db.session.commit()
            payment = reload(Payment, payment_id)

        refs = {}
        if provider_transaction_id:
            refs["provider_transaction_id"] = provider_transaction_id
        if external_payment_id:
            refs["external_payment_id"] = external_payment_id

        if payment.status == target:
            if refs and payment.status not in TERMINAL_PAYMENT_STATUSES:
                conditional_update(
                    Payment,
                    [Payment.id == payment_id, Payment.status == target],
                    dict(refs, updated_at=now),
                )
            db.session.commit()
            return reload(Payment, payment_id)

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            raise ConflictError(
                f"Payment {payment_id} is already {payment.status}",
                current=payment.to_dict(),
            )

        sources = PAYMENT_TRANSITIONS.get(target, set())
        if payment.status not in sources:
            raise ConflictError(
                f"Cannot move payment {payment_id} from '{payment.status}' to '{target}'",
                current=payment.to_dict(),
            )

        moved = _transition(payment, target, now, refs)
        db.session.commit()

        payment = reload(Payment, payment_id)
        if not moved:
            raise ConflictError(
                f"Payment {payment_id} changed concurrently; now '{payment.status}'",
                current=payment.to_dict(),
            )
        return payment

    try:
        return run_with_retry(_op)
    except IntegrityError:
        raise ConflictError("external_payment_id is already used by another payment")


def handle_webhook(payload) -> WebhookResult:
    """
    Apply a provider callback.

    Expected payload: {"payment_id": <external id>, "status": <provider status>,
    "amount_cents"?: int,
    "transaction_id"?: str, "end_to_end_id"?: str}

    Malformed and duplicate callbacks are logged and acknowledged. An unknown
    payment id raises NotFoundError.
    """
    if not isinstance(payload, dict):
        logger.warning("Ignoring malformed webhook payload: %r", payload)
        return WebhookResult(applied=False, message="Malformed payload ignored")

    external_id = payload.get("payment_id")
    external_status = payload.get("status")
    if not external_id or not isinstance(external_status, str) or not external_status:
        logger.warning("Ignoring webhook without payment_id/status: %r", payload)
        return WebhookResult(applied=False, message="Missing payment_id or status; ignored")

    internal = map_external_status(external_status)

    def _op():
        now = utcnow()
        payment = get_payment_by_external_id(str(external_id))
        if _expire_if_due(payment.id, now):
            db.session.commit()
            payment = reload(Payment, payment.id)

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            logger.info(
                "Webhook for payment %s ignored: already %s (provider said %r)",
                payment.id, payment.status, external_status,
            )
            return WebhookResult(
                applied=False,
                message=f"Payment already {payment.status}; webhook ignored",
                payment=payment,
                status=payment.status,
            )

        reported = payload.get("amount_cents")
        if reported is not None and reported != payment.total_amount_cents:
            logger.warning(
                "Webhook amount %r differs from payment %s total %s",
                reported, payment.id, payment.total_amount_cents,
            )

        values = {"webhook_payload": payload}
        if payload.get("transaction_id"):
            values["provider_transaction_id"] = str(payload["transaction_id"])
        if payload.get("end_to_end_id"):
            values["provider_end_to_end_id"] = str(payload["end_to_end_id"])

        if internal == payment.status or payment.status not in PAYMENT_TRANSITIONS.get(internal, set()):
            conditional_update(
                Payment,
                [Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES)],
                dict(values, updated_at=now),
            )
            db.session.commit()
            payment = reload(Payment, payment.id)
            return WebhookResult(
                applied=False,
                message=f"Payment remains {payment.status}",
                payment=payment,
                status=payment.status,
            )

        moved = _transition(payment, internal, now, values)
        db.session.commit()
        payment = reload(Payment, payment.id)
        if moved:
            logger.info("Webhook moved payment %s to %s", payment.id, payment.status)
        return WebhookResult(
            applied=moved,
            message=f"Payment {payment.status}",
            payment=payment,
            status=payment.status,
        )

    return run_with_retry(_op)


def settle_open_payments(table_id: int, status: str, now: datetime | None = None) -> int:
    """
    Close whatever payment is still open on a table being released by staff.
    Runs inside the caller's transaction; never cascades.
    """
    now = now or utcnow()
    values = {"status": status, "updated_at": now}
    if status == PAYMENT_STATUS_COMPLETED:
        values["paid_at"] = now
    return conditional_update(
        Payment,
        [Payment.table_id == table_id, Payment.status.in_(OPEN_PAYMENT_STATUSES)],
        values,
    )


def expire_stale_payments() -> int:
    """Sweep: cancel every processing payment past its window. Returns count."""
    def _op():
        count = _expire_due_payments(utcnow())
        db.session.commit()
        return count

    count = run_with_retry(_op)
    if count:
        logger.info("Expired %s stale payments", count)
    return count


# =============================================================================
# INTERNALS
# =============================================================================

def _transition(payment: Payment, target: str, now: datetime, extra: dict) -> bool:
    """
    Conditional move from the payment's legal sources to target; cascades on
    completion. Returns False when another writer got there first.
    """
    values = dict(extra, status=target, updated_at=now)
    if target == PAYMENT_STATUS_COMPLETED:
        values["paid_at"] = now

    rows = conditional_update(
        Payment,
        [Payment.id == payment.id, Payment.status.in_(sorted(PAYMENT_TRANSITIONS[target]))],
        values,
    )
    if not rows:
        return False

    if target == PAYMENT_STATUS_COMPLETED:
        _cascade_completion(payment.table_id, payment.id, now)
    return True


def _cascade_completion(table_id: int, payment_id: int, now: datetime) -> None:
    released = table_service.release_table(table_id, now)
    delivered = order_service.deliver_open_orders(table_id, now)
    logger.info(
        "Payment %s completed: table %s %s, %s orders delivered",
        payment_id, table_id, "released" if released else "already available", delivered,
    )


def _expire_if_due(payment_id: int, now: datetime) -> bool:
    rows = conditional_update(
        Payment,
        [
            Payment.id == payment_id,
            Payment.status == PAYMENT_STATUS_PROCESSING,
            Payment.expires_at < now,
        ],
        {"status": PAYMENT_STATUS_CANCELLED, "updated_at": now},
    )
    if rows:
        logger.info("Payment %s expired", payment_id)
    return bool(rows)


def _expire_due_payments(now: datetime, table_id: int | None = None) -> int:
    criteria = [
        Payment.status == PAYMENT_STATUS_PROCESSING,
        Payment.expires_at < now,
    ]
    if table_id is not None:
        criteria.append(Payment.table_id == table_id)
    return conditional_update(Payment, criteria, {"status": PAYMENT_STATUS_CANCELLED, "updated_at": now})
