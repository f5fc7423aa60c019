from __future__ import annotations

from ..extensions import db
from tableside.time_utils import to_utc_z, utcnow


class Table(db.Model):
    """
    Physical seating unit and the unit of access-control scoping.

    STATUS: available, occupied, reserved, needs_attention (bill closed,
    awaiting payment). Transitions live in services/table_service.py and are
    applied as conditional updates that bump version_id.

    TOKEN: only the SHA-256 hash of the bearer token is stored. The hash and
    token_expires_at are either both set or both null.
    """
    __tablename__ = "tables"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.Integer, nullable=False, unique=True)
    seats = db.Column(db.Integer, nullable=False, default=4)
    status = db.Column(db.String(32), nullable=False, default="available", index=True)

    access_token_hash = db.Column(db.String(64), nullable=True)
    token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    token_class = db.Column(db.String(16), nullable=True)  # guest, operator
    last_access_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Table id={self.id} number={self.number} status={self.status!r}>"

    @property
    def has_token(self) -> bool:
        return self.access_token_hash is not None

    def to_dict(self) -> dict:
        pending_calls = [c for c in self.waiter_calls if c.status == "pending"]
        return {
            "id": self.id,
            "table_number": self.number,
            "seats": self.seats,
            "status": self.status,
            "has_token": self.has_token,
            "token_class": self.token_class,
            "token_expires_at": to_utc_z(self.token_expires_at),
            "last_access_at": to_utc_z(self.last_access_at),
            "waiter_requested": bool(pending_calls),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WaiterCall(db.Model):
    """
    Service-bell request from a table.

    Kept apart from Table.status so a guest calling the waiter never collides
    with the payment-driven needs_attention state.
    """
    __tablename__ = "waiter_calls"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    table_id = db.Column(db.Integer, db.ForeignKey("tables.id"), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, acknowledged
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    table = db.relationship("Table", backref=db.backref("waiter_calls", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "table_id": self.table_id,
            "table_number": self.table.number if self.table else None,
            "reason": self.reason,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "acknowledged_at": to_utc_z(self.acknowledged_at),
        }
