# Overview: Service-layer operations for table status; encapsulates business logic and database work.

"""
Table Lifecycle Service (state machine)

================================================================================
PURPOSE: Own the table status enum and every legal transition
================================================================================

STATES:
    available        initial; nobody seated
    occupied         guests ordering
    reserved         held for a booking
    needs_attention  bill closed, awaiting payment (ordering frozen)

There is no terminal state; tables cycle back to available on settlement.

EVENTS (staff actions unless noted):
    order_submitted  any but needs_attention -> occupied   (order placement)
    close_bill       occupied                -> needs_attention
    confirm_payment  any                     -> available  (release)
    free             any                     -> available  (release)
    occupy           any                     -> occupied
    need_attention   any                     -> needs_attention
    reserve          available               -> reserved

RELEASE side effects: revoke the access token, clear last_access_at,
bulk-deliver the table's open orders, settle open payments (completed on
confirm_payment, cancelled on free).

RULES:
1. Every transition is ONE conditional UPDATE whose WHERE clause carries the
   guard, so a stale read can never authorize a write.
2. Re-applying a transition whose target is the current status is a no-op
   (no side effects run twice).
3. A guard failure re-reads the row and reports the authoritative state.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ..extensions import db
from ..models import Table
from ..errors import AccessDeniedError, ConflictError, InvalidActionError, NotFoundError, ValidationError
from tableside.time_utils import utcnow
from .concurrency import conditional_update, reload, run_with_retry
from .token_service import revoked_token_values


logger = logging.getLogger(__name__)


# =============================================================================
# TABLE STATUS (CONSTANTS)
# =============================================================================

TABLE_STATUS_AVAILABLE = "available"
TABLE_STATUS_OCCUPIED = "occupied"
TABLE_STATUS_RESERVED = "reserved"
TABLE_STATUS_NEEDS_ATTENTION = "needs_attention"

VALID_TABLE_STATUSES = frozenset({
    TABLE_STATUS_AVAILABLE,
    TABLE_STATUS_OCCUPIED,
    TABLE_STATUS_RESERVED,
    TABLE_STATUS_NEEDS_ATTENTION,
})

# Older clients still send these spellings
TABLE_STATUS_ALIASES = {
    "awaiting_payment": TABLE_STATUS_NEEDS_ATTENTION,
}

REASON_AWAITING_PAYMENT = "awaiting_payment"


# =============================================================================
# ACTIONS
# =============================================================================

ACTION_CLOSE_BILL = "close_bill"
ACTION_CONFIRM_PAYMENT = "confirm_payment"
ACTION_OCCUPY = "occupy"
ACTION_FREE = "free"
ACTION_NEED_ATTENTION = "need_attention"
ACTION_RESERVE = "reserve"


@dataclass(frozen=True)
class Transition:
    target: str
    sources: frozenset | None = None  # None: any state
    releases: bool = False
    settle_payments_as: str | None = None


TRANSITIONS = {
    ACTION_CLOSE_BILL: Transition(
        target=TABLE_STATUS_NEEDS_ATTENTION,
        sources=frozenset({TABLE_STATUS_OCCUPIED}),
    ),
    ACTION_CONFIRM_PAYMENT: Transition(
        target=TABLE_STATUS_AVAILABLE,
        releases=True,
        settle_payments_as="completed",
    ),
    ACTION_FREE: Transition(
        target=TABLE_STATUS_AVAILABLE,
        releases=True,
        settle_payments_as="cancelled",
    ),
    ACTION_OCCUPY: Transition(target=TABLE_STATUS_OCCUPIED),
    ACTION_NEED_ATTENTION: Transition(target=TABLE_STATUS_NEEDS_ATTENTION),
    ACTION_RESERVE: Transition(
        target=TABLE_STATUS_RESERVED,
        sources=frozenset({TABLE_STATUS_AVAILABLE}),
    ),
}

VALID_ACTIONS = frozenset(TRANSITIONS)


@dataclass
class TransitionResult:
    table: Table
    action: str
    changed: bool
    previous_status: str

    @property
    def message(self) -> str:
        return action_message(self.action, self.table)


def normalize_table_status(status: str | None) -> str:
    """Map deprecated spellings onto the canonical enum; reject anything else."""
    if status is None:
        raise ValidationError("status is required")
    value = TABLE_STATUS_ALIASES.get(status.strip().lower(), status.strip().lower())
    if value not in VALID_TABLE_STATUSES:
        raise ValidationError(
            f"Invalid table status '{status}'. Must be one of: {', '.join(sorted(VALID_TABLE_STATUSES))}"
        )
    return value


def action_message(action: str, table: Table) -> str:
    number = table.number
    messages = {
        ACTION_CLOSE_BILL: f"Table {number} bill closed. Awaiting payment.",
        ACTION_CONFIRM_PAYMENT: f"Table {number} payment confirmed. Table released.",
        ACTION_OCCUPY: f"Table {number} marked as occupied.",
        ACTION_FREE: f"Table {number} released.",
        ACTION_NEED_ATTENTION: f"Table {number} needs attention.",
        ACTION_RESERVE: f"Table {number} reserved.",
    }
    return messages.get(action, f"Table {number} status updated.")


# =============================================================================
# QUERIES
# =============================================================================

def get_table(table_id: int) -> Table:
    table = reload(Table, table_id)
    if table is None:
        raise NotFoundError(f"Table {table_id} not found")
    return table


def list_tables(status: str | None = None) -> list[Table]:
    query = db.session.query(Table)
    if status:
        query = query.filter(Table.status == normalize_table_status(status))
    return query.order_by(Table.number).all()


# =============================================================================
# TRANSITIONS
# =============================================================================

def apply_action(table_id: int, action: str) -> TransitionResult:
    """
    Apply a staff action to a table.

    Raises:
        InvalidActionError: unknown action name
        NotFoundError: unknown table
        ConflictError: guard failed against the current status
    """
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise InvalidActionError(action, VALID_ACTIONS)

    def _op():
        now = utcnow()
        before = reload(Table, table_id)
        if before is None:
            raise NotFoundError(f"Table {table_id} not found")
        previous_status = before.status

        sources = transition.sources if transition.sources is not None else VALID_TABLE_STATUSES
        guard = sources - {transition.target}

        values = {"status": transition.target, "updated_at": now}
        if transition.releases:
            values.update(_release_values())

        rows = conditional_update(
            Table,
            [Table.id == table_id, Table.status.in_(sorted(guard))],
            values,
        )

        if rows == 0:
            table = reload(Table, table_id)
            if table is None:
                raise NotFoundError(f"Table {table_id} not found")
            if table.status == transition.target:
                return TransitionResult(table, action, False, table.status)
            raise ConflictError(
                f"Cannot {action} table {table.number}: status is '{table.status}'",
                current=table.to_dict(),
            )

        if transition.releases:
            _settle_released_table(table_id, now, transition.settle_payments_as)

        db.session.commit()
        table = reload(Table, table_id)
        logger.info(
            "Table %s: %s -> %s (%s)", table.number, previous_status, table.status, action
        )
        return TransitionResult(table, action, True, previous_status)

    return run_with_retry(_op)


def mark_order_submitted(table_id: int, now: datetime | None = None) -> None:
    """
    order_submitted event: move the table to occupied inside the caller's
    transaction. Does not commit.

    The UPDATE also runs when the table is already occupied so that the row
    write serializes this order against a concurrent close_bill.

    Raises:
        NotFoundError: unknown table
        AccessDeniedError: table is awaiting payment
    """
    now = now or utcnow()
    allowed_from = VALID_TABLE_STATUSES - {TABLE_STATUS_NEEDS_ATTENTION}
    rows = conditional_update(
        Table,
        [Table.id == table_id, Table.status.in_(sorted(allowed_from))],
        {"status": TABLE_STATUS_OCCUPIED, "updated_at": now},
    )
    if rows:
        return

    table = reload(Table, table_id)
    if table is None:
        raise NotFoundError(f"Table {table_id} not found")
    raise AccessDeniedError(
        REASON_AWAITING_PAYMENT,
        f"Table {table.number} is awaiting payment; new orders are not accepted",
    )


def close_bill_for_payment(table_id: int, now: datetime | None = None) -> Table:
    """
    Freeze ordering while a payment is created. Occupied tables move to
    needs_attention; tables already there stay. Does not commit.

    Raises:
        NotFoundError: unknown table
        ConflictError: table has nothing to settle (available/reserved)
    """
    now = now or utcnow()
    rows = conditional_update(
        Table,
        [
            Table.id == table_id,
            Table.status.in_([TABLE_STATUS_OCCUPIED, TABLE_STATUS_NEEDS_ATTENTION]),
        ],
        {"status": TABLE_STATUS_NEEDS_ATTENTION, "updated_at": now},
    )
    table = reload(Table, table_id)
    if table is None:
        raise NotFoundError(f"Table {table_id} not found")
    if not rows:
        raise ConflictError(
            f"Table {table.number} has no open bill (status '{table.status}')",
            current=table.to_dict(),
        )
    return table


def release_table(table_id: int, now: datetime | None = None) -> bool:
    """
    Payment-completion cascade target: table back to available with the token
    revoked. Does not commit. Returns False when the table was already
    available.
    """
    now = now or utcnow()
    values = {"status": TABLE_STATUS_AVAILABLE, "updated_at": now}
    values.update(_release_values())
    rows = conditional_update(
        Table,
        [Table.id == table_id, Table.status != TABLE_STATUS_AVAILABLE],
        values,
    )
    return bool(rows)


def force_close_session(table_id: int) -> Table:
    """
    Staff-initiated session close: table available, token revoked. Orders and
    payments are left untouched. Always succeeds for an existing table.
    """
    def _op():
        now = utcnow()
        values = {"status": TABLE_STATUS_AVAILABLE, "updated_at": now}
        values.update(_release_values())
        rows = conditional_update(Table, [Table.id == table_id], values)
        if not rows:
            raise NotFoundError(f"Table {table_id} not found")
        db.session.commit()
        table = reload(Table, table_id)
        logger.info("Table %s session force-closed", table.number)
        return table

    return run_with_retry(_op)


def touch_last_access(table_id: int, now: datetime | None = None) -> None:
    """Record session activity. Not a status change, so no version bump."""
    conditional_update(
        Table,
        [Table.id == table_id],
        {"last_access_at": now or utcnow()},
        bump_version=False,
    )
    db.session.commit()


def _release_values() -> dict:
    values = revoked_token_values()
    values["last_access_at"] = None
    return values


def _settle_released_table(table_id: int, now: datetime, payment_status: str | None) -> None:
    from .order_service import deliver_open_orders
    from .payment_service import settle_open_payments

    delivered = deliver_open_orders(table_id, now)
    settled = 0
    if payment_status:
        settled = settle_open_payments(table_id, payment_status, now)
    logger.info(
        "Table %s released: %s orders delivered, %s open payments %s",
        table_id, delivered, settled, payment_status,
    )
