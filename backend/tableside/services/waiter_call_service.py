# Overview: Service-layer operations for waiter calls; encapsulates business logic and database work.

"""
Waiter calls are a side channel: a guest rings, staff acknowledge. Table
status is never touched here.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Table, WaiterCall
from ..errors import NotFoundError, ValidationError
from tableside.time_utils import utcnow
from .concurrency import conditional_update, reload, run_with_retry


logger = logging.getLogger(__name__)

CALL_STATUS_PENDING = "pending"
CALL_STATUS_ACKNOWLEDGED = "acknowledged"

DEFAULT_REASON = "General request"
MAX_REASON_LENGTH = 255


def call_waiter(table_id: int, reason: str | None = None) -> WaiterCall:
    reason = (reason or "").strip() or DEFAULT_REASON
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")

    def _op():
        if db.session.get(Table, table_id) is None:
            raise NotFoundError(f"Table {table_id} not found")
        call = WaiterCall(
            table_id=table_id,
            reason=reason,
            status=CALL_STATUS_PENDING,
            created_at=utcnow(),
        )
        db.session.add(call)
        db.session.commit()
        logger.info("Waiter called to table %s: %s", table_id, reason)
        return call

    return run_with_retry(_op)


def list_pending_calls() -> list[WaiterCall]:
    return (
        db.session.query(WaiterCall)
        .filter(WaiterCall.status == CALL_STATUS_PENDING)
        .order_by(WaiterCall.created_at.asc(), WaiterCall.id.asc())
        .all()
    )


def acknowledge_call(call_id: int) -> WaiterCall:
    """Mark a call handled. Acknowledging twice is a no-op."""
    def _op():
        conditional_update(
            WaiterCall,
            [WaiterCall.id == call_id, WaiterCall.status == CALL_STATUS_PENDING],
            {"status": CALL_STATUS_ACKNOWLEDGED, "acknowledged_at": utcnow()},
        )
        db.session.commit()
        call = reload(WaiterCall, call_id)
        if call is None:
            raise NotFoundError(f"Waiter call {call_id} not found")
        return call

    return run_with_retry(_op)
