from __future__ import annotations

from ..extensions import db
from tableside.time_utils import to_utc_z, utcnow


OPEN_PAYMENT_CONDITION = "status IN ('pending', 'processing')"


class Payment(db.Model):
    """
    Settlement of one or more orders of a table.

    LIFECYCLE: pending -> processing -> completed | failed | cancelled.
    Only processing -> cancelled happens on timeout (expires_at). Once
    completed the record is immutable.

    At most one pending/processing payment per table (partial unique index).
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index(
            "uq_payments_table_open",
            "table_id",
            unique=True,
            sqlite_where=db.text(OPEN_PAYMENT_CONDITION),
            postgresql_where=db.text(OPEN_PAYMENT_CONDITION),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    table_id = db.Column(db.Integer, db.ForeignKey("tables.id"), nullable=False, index=True)
    order_ids = db.Column(db.JSON, nullable=False, default=list)
    method = db.Column(db.String(16), nullable=False)  # cash, pix, card
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    total_amount_cents = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Provider fields (pix)
    pix_key = db.Column(db.String(128), nullable=True)
    qr_code = db.Column(db.Text, nullable=True)
    copy_paste_code = db.Column(db.Text, nullable=True)
    external_payment_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    provider_transaction_id = db.Column(db.String(128), nullable=True)
    provider_end_to_end_id = db.Column(db.String(128), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    webhook_payload = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    table = db.relationship("Table", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "table_id": self.table_id,
            "table_number": self.table.number if self.table else None,
            "order_ids": list(self.order_ids or []),
            "method": self.method,
            "status": self.status,
            "total_amount_cents": self.total_amount_cents,
            "expires_at": to_utc_z(self.expires_at),
            "pix_key": self.pix_key,
            "qr_code": self.qr_code,
            "copy_paste_code": self.copy_paste_code,
            "external_payment_id": self.external_payment_id,
            "provider_transaction_id": self.provider_transaction_id,
            "provider_end_to_end_id": self.provider_end_to_end_id,
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
