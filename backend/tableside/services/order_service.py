# Overview: Service-layer operations for orders; encapsulates business logic and database work.

"""
Order Lifecycle Service

WHY: Orders are what the kitchen works from and what the bill settles.
Placement snapshots menu prices; staff progress status; settlement
bulk-finalizes whatever is still open on the table.

STATE MACHINE:
    pending -> preparing -> ready -> delivered
    pending | preparing -> cancelled

DESIGN PRINCIPLES:
- Price snapshot: unit_price_cents is copied from the catalog at placement and
  total_amount_cents never recomputes afterwards
- Placement and the table's order_submitted transition share one transaction
- Status writes are conditional updates guarded by the legal source states
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import MenuItem, Order, OrderItem, Table
from ..errors import ConflictError, NotFoundError, ValidationError
from tableside.time_utils import utcnow
from .concurrency import conditional_update, reload, run_with_retry
from . import table_service


logger = logging.getLogger(__name__)


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PREPARING = "preparing"
ORDER_STATUS_READY = "ready"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"

VALID_ORDER_STATUSES = frozenset({
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PREPARING,
    ORDER_STATUS_READY,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
})

OPEN_ORDER_STATUSES = (ORDER_STATUS_PENDING, ORDER_STATUS_PREPARING, ORDER_STATUS_READY)

# Settlement used to be spelled "paid" by some clients
ORDER_STATUS_ALIASES = {
    "paid": ORDER_STATUS_DELIVERED,
}

# target -> statuses it may be reached from
ORDER_TRANSITIONS = {
    ORDER_STATUS_PREPARING: {ORDER_STATUS_PENDING},
    ORDER_STATUS_READY: {ORDER_STATUS_PREPARING},
    ORDER_STATUS_DELIVERED: {ORDER_STATUS_READY},
    ORDER_STATUS_CANCELLED: {ORDER_STATUS_PENDING, ORDER_STATUS_PREPARING},
}


@dataclass(frozen=True)
class OrderActivity:
    has_active_orders: bool
    has_recent_orders: bool
    last_order_time: datetime | None


def normalize_order_status(status: str | None) -> str:
    if not isinstance(status, str) or not status.strip():
        raise ValidationError("status is required")
    value = status.strip().lower()
    value = ORDER_STATUS_ALIASES.get(value, value)
    if value not in VALID_ORDER_STATUSES:
        raise ValidationError(
            f"Invalid order status '{status}'. Must be one of: {', '.join(sorted(VALID_ORDER_STATUSES))}"
        )
    return value


# =============================================================================
# ORDER PLACEMENT
# =============================================================================

def _parse_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        menu_item_id = item.get("menu_item_id")
        quantity = item.get("quantity", 1)
        if not isinstance(menu_item_id, int) or isinstance(menu_item_id, bool):
            raise ValidationError(f"items[{index}].menu_item_id must be an integer")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"items[{index}].quantity must be an integer >= 1")
        notes = item.get("notes")
        parsed.append({
            "menu_item_id": menu_item_id,
            "quantity": quantity,
            "notes": str(notes).strip() if notes else None,
        })
    return parsed


def place_order(table_id: int, items, notes: str | None = None) -> Order:
    """
    Create an order from a cart and mark the table occupied.

    Args:
        table_id: Table placing the order
        items: [{"menu_item_id": int, "quantity": int >= 1, "notes": str?}]
        notes: Order-level notes

    Raises:
        ValidationError: malformed items, unknown or unavailable menu item
        NotFoundError: unknown table
        AccessDeniedError: table is awaiting payment
    """
    parsed = _parse_items(items)

    def _op():
        now = utcnow()

        # Guard + write on the table row first; this is the serialization point
        table_service.mark_order_submitted(table_id, now)

        menu_ids = {p["menu_item_id"] for p in parsed}
        menu = {
            m.id: m
            for m in db.session.query(MenuItem).filter(MenuItem.id.in_(menu_ids)).all()
        }

        order = Order(
            table_id=table_id,
            status=ORDER_STATUS_PENDING,
            notes=notes.strip() if notes else None,
            total_amount_cents=0,
            created_at=now,
            updated_at=now,
        )

        total = 0
        for p in parsed:
            menu_item = menu.get(p["menu_item_id"])
            if menu_item is None:
                raise ValidationError(f"Menu item {p['menu_item_id']} not found")
            if not menu_item.available:
                raise ValidationError(f"Menu item '{menu_item.name}' is not available")

            line = OrderItem(
                menu_item_id=menu_item.id,
                quantity=p["quantity"],
                unit_price_cents=menu_item.price_cents,
                notes=p["notes"],
                created_at=now,
            )
            order.items.append(line)
            total += line.line_total_cents

        order.total_amount_cents = total
        db.session.add(order)
        db.session.commit()

        logger.info("Order %s placed for table %s (%s cents)", order.id, table_id, total)
        return order

    return run_with_retry(_op)


# =============================================================================
# STATUS UPDATES
# =============================================================================

def update_order_status(order_id: int, status: str) -> Order:
    """
    Staff-driven status change (kitchen/waiter).

    Same-status updates are no-ops. Illegal transitions raise ConflictError
    carrying the current order.
    """
    target = normalize_order_status(status)

    def _op():
        order = reload(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status == target:
            return order
        if target not in ORDER_TRANSITIONS:
            raise ConflictError(
                f"Orders cannot be moved back to '{target}'",
                current=order.to_dict(),
            )

        rows = conditional_update(
            Order,
            [Order.id == order_id, Order.status.in_(sorted(ORDER_TRANSITIONS[target]))],
            {"status": target, "updated_at": utcnow()},
        )
        if not rows:
            current = reload(Order, order_id)
            if current.status == target:
                return current
            raise ConflictError(
                f"Cannot move order {order_id} from '{current.status}' to '{target}'",
                current=current.to_dict(),
            )

        db.session.commit()
        order = reload(Order, order_id)
        logger.info("Order %s -> %s", order_id, target)
        return order

    return run_with_retry(_op)


def deliver_open_orders(table_id: int, now: datetime | None = None) -> int:
    """
    Settlement finalizer: every open order of the table becomes delivered.
    Runs inside the caller's transaction. Returns rows changed.
    """
    return conditional_update(
        Order,
        [Order.table_id == table_id, Order.status.in_(OPEN_ORDER_STATUSES)],
        {"status": ORDER_STATUS_DELIVERED, "updated_at": now or utcnow()},
    )


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def list_orders(statuses: list[str] | None = None) -> list[Order]:
    """
    Kitchen/waiter board query.

    Filtered lists come oldest first (work queue order); the unfiltered list
    comes newest first.
    """
    query = db.session.query(Order)
    if statuses:
        normalized = [normalize_order_status(s) for s in statuses]
        return query.filter(Order.status.in_(normalized)).order_by(Order.created_at.asc(), Order.id.asc()).all()
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_table_orders(table_id: int) -> list[Order]:
    if db.session.get(Table, table_id) is None:
        raise NotFoundError(f"Table {table_id} not found")
    return (
        db.session.query(Order)
        .filter(Order.table_id == table_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def order_activity(table_id: int, now: datetime | None = None) -> OrderActivity:
    """
    Activity windows used by session checks.

    active: open status (pending/preparing/ready) within ACTIVE_ORDER_WINDOW_HOURS
    recent: any status within RECENT_ORDER_WINDOW_HOURS
    """
    now = now or utcnow()
    active_since = now - timedelta(hours=current_app.config["ACTIVE_ORDER_WINDOW_HOURS"])
    recent_since = now - timedelta(hours=current_app.config["RECENT_ORDER_WINDOW_HOURS"])

    active_count, active_last = (
        db.session.query(func.count(Order.id), func.max(Order.created_at))
        .filter(
            Order.table_id == table_id,
            Order.status.in_(OPEN_ORDER_STATUSES),
            Order.created_at > active_since,
        )
        .one()
    )
    recent_count, recent_last = (
        db.session.query(func.count(Order.id), func.max(Order.created_at))
        .filter(Order.table_id == table_id, Order.created_at > recent_since)
        .one()
    )

    return OrderActivity(
        has_active_orders=active_count > 0,
        has_recent_orders=recent_count > 0,
        last_order_time=active_last or recent_last,
    )
