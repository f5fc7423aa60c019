# Overview: Service-layer operations for table sessions; encapsulates business logic and database work.

"""
Table Session Validation

WHY: Every guest request (and the client's periodic refresh) needs one cheap
answer: may this bearer act on this table right now, and if not, should it
ask for a new token or wait?

A session is never stored. It is derived from the table row, the token check
and the table's recent order activity.

POLICY:
- Viewing a session never changes table status. Only an order submission
  moves an available table to occupied.
- needs_attention blocks the session even with a valid token (awaiting
  payment); the client should wait rather than re-scan.
- The only write is last_access_at on an allowed check.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..models import Table
from ..errors import AccessDeniedError
from tableside.time_utils import to_utc_z, utcnow
from . import order_service, table_service, token_service
from .table_service import (
    REASON_AWAITING_PAYMENT,
    TABLE_STATUS_AVAILABLE,
    TABLE_STATUS_NEEDS_ATTENTION,
    TABLE_STATUS_OCCUPIED,
)


REASON_INACTIVE_SESSION = "inactive_session"

SESSION_MESSAGES = {
    REASON_AWAITING_PAYMENT: "Table is awaiting payment; new orders are not accepted.",
    REASON_INACTIVE_SESSION: "Session expired or table is no longer active.",
}


@dataclass
class SessionVerdict:
    table: Table
    allowed: bool
    reason: str | None = None
    requires_new_token: bool = False
    has_active_orders: bool = False
    has_recent_orders: bool = False
    last_order_time: datetime | None = None
    token_checked: bool = False
    token_valid: bool | None = None
    token_expires_at: datetime | None = None
    message: str | None = field(default=None)

    @property
    def token_failed(self) -> bool:
        return self.token_checked and not self.token_valid

    def to_dict(self) -> dict:
        session = {
            "isValid": self.allowed,
            "hasActiveOrders": self.has_active_orders,
            "hasRecentOrders": self.has_recent_orders,
            "lastOrderTime": to_utc_z(self.last_order_time),
        }
        if self.reason:
            session["reason"] = self.reason
            session["message"] = self.message
        if self.token_checked:
            session["tokenValid"] = self.token_valid
            session["tokenExpires"] = to_utc_z(self.token_expires_at)
        return {
            "table": {
                "id": self.table.id,
                "table_number": self.table.number,
                "status": self.table.status,
                "seats": self.table.seats,
            },
            "session": session,
        }

    def to_error(self) -> AccessDeniedError:
        return AccessDeniedError(
            self.reason or REASON_INACTIVE_SESSION,
            self.message or SESSION_MESSAGES[REASON_INACTIVE_SESSION],
            requires_new_token=self.requires_new_token,
        )


def check(table_id: int, presented_token: str | None, *, require_token: bool = True) -> SessionVerdict:
    """
    Decide whether the caller may act on the table.

    Steps: load table (NotFoundError), token check when required or
    presented, order activity, status policy, last_access_at on success.
    """
    now = utcnow()
    table = table_service.get_table(table_id)

    verdict = SessionVerdict(table=table, allowed=False)

    if require_token or presented_token:
        token_check = token_service.validate(table, presented_token)
        verdict.token_checked = True
        verdict.token_valid = token_check.ok
        verdict.token_expires_at = table.token_expires_at if token_check.ok else token_check.expires_at
        if not token_check.ok:
            verdict.reason = token_check.reason
            verdict.message = token_check.message
            verdict.requires_new_token = True
            return verdict

    activity = order_service.order_activity(table_id, now)
    verdict.has_active_orders = activity.has_active_orders
    verdict.has_recent_orders = activity.has_recent_orders
    verdict.last_order_time = activity.last_order_time

    if table.status == TABLE_STATUS_NEEDS_ATTENTION:
        verdict.reason = REASON_AWAITING_PAYMENT
        verdict.message = SESSION_MESSAGES[REASON_AWAITING_PAYMENT]
        return verdict

    verdict.allowed = (
        table.status in (TABLE_STATUS_OCCUPIED, TABLE_STATUS_AVAILABLE)
        or activity.has_active_orders
        or activity.has_recent_orders
    )
    if not verdict.allowed:
        verdict.reason = REASON_INACTIVE_SESSION
        verdict.message = SESSION_MESSAGES[REASON_INACTIVE_SESSION]
        return verdict

    table_service.touch_last_access(table_id, now)
    return verdict


def require_table_access(table_id: int, presented_token: str | None, *, require_token: bool = True) -> SessionVerdict:
    """check() that raises AccessDeniedError instead of returning a negative verdict."""
    verdict = check(table_id, presented_token, require_token=require_token)
    if not verdict.allowed:
        raise verdict.to_error()
    return verdict


def require_valid_token(table_id: int, presented_token: str | None) -> Table:
    """
    Token-only gate for actions that stay open while awaiting payment
    (calling the waiter, viewing the bill).
    """
    table = table_service.get_table(table_id)
    token_check = token_service.validate(table, presented_token)
    if not token_check.ok:
        raise AccessDeniedError(token_check.reason, token_check.message, requires_new_token=True)
    return table
