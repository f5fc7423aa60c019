"""
Payment lifecycle tests.

Verifies:
- Creation guards (open bill, one open payment per table, order ownership)
- PIX charges carry provider fields and start processing
- Expiry on read, on webhook and by the sweep
- Terminal payments never move again
- Completion cascades exactly once
"""

import logging
from datetime import timedelta

import pytest

from tableside.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from tableside.extensions import db
from tableside.models import Order, Payment, Table
from tableside.services import order_service, payment_service, token_service
from tableside.services.concurrency import reload
from tableside.services.pix_provider import PixProvider
from conftest import START_TIME


@pytest.fixture
def tab(table, menu):
    """Occupied table 1 with one 5000-cent order."""
    order = order_service.place_order(table.id, [{"menu_item_id": menu["burger"].id, "quantity": 2}])
    return table, order


def _webhook(payment, status, **extra):
    payload = {"payment_id": payment.external_payment_id, "status": status}
    payload.update(extra)
    return payment_service.handle_webhook(payload)


# =============================================================================
# CREATION
# =============================================================================


class TestCreatePayment:

    def test_cash_payment_is_pending_and_freezes_table(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])

        assert payment.status == "pending"
        assert payment.order_ids == [order.id]
        assert payment.external_payment_id is None
        assert payment.expires_at == START_TIME + timedelta(minutes=30)
        assert reload(Table, table.id).status == "needs_attention"

    def test_pix_payment_has_provider_fields(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        assert payment.status == "processing"
        assert payment.external_payment_id.startswith(f"pix_{payment.id}_")
        assert payment.pix_key == "pix@tableside.test"
        assert payment.qr_code == payment.copy_paste_code
        assert "br.gov.bcb.pix" in payment.copy_paste_code
        assert "540550.00" in payment.copy_paste_code

    def test_allowed_after_close_bill(self, tab):
        from tableside.services import table_service

        table, order = tab
        table_service.apply_action(table.id, "close_bill")
        payment = payment_service.create_payment(table.id, "card", 5000, [order.id])
        assert payment.status == "pending"

    def test_available_table_has_no_bill(self, tables):
        with pytest.raises(ConflictError):
            payment_service.create_payment(tables[0].id, "cash", 1000, [1])

    def test_one_open_payment_per_table(self, tab):
        table, order = tab
        payment_service.create_payment(table.id, "cash", 5000, [order.id])

        with pytest.raises(ConflictError) as exc:
            payment_service.create_payment(table.id, "pix", 5000, [order.id])

        assert exc.value.current["method"] == "cash"
        assert db.session.query(Payment).count() == 1

    def test_new_payment_after_cancellation(self, tab):
        table, order = tab
        first = payment_service.create_payment(table.id, "cash", 5000, [order.id])
        payment_service.update_payment(first.id, "cancelled")

        second = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        assert second.status == "processing"

    def test_expired_pix_does_not_block_new_payment(self, tab, clock):
        table, order = tab
        first = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        clock.advance(minutes=31)

        second = payment_service.create_payment(table.id, "cash", 5000, [order.id])

        assert reload(Payment, first.id).status == "cancelled"
        assert second.status == "pending"

    def test_orders_from_other_table_rejected(self, tables, menu):
        other = order_service.place_order(tables[1].id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])
        order_service.place_order(tables[0].id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])

        with pytest.raises(ValidationError):
            payment_service.create_payment(tables[0].id, "cash", 850, [other.id])
        assert reload(Table, tables[0].id).status == "occupied"

    def test_unknown_orders_rejected(self, tab):
        table, _ = tab
        with pytest.raises(ValidationError):
            payment_service.create_payment(table.id, "cash", 5000, [9999])

    @pytest.mark.parametrize("method,amount,order_ids", [
        ("bitcoin", 5000, [1]),
        ("cash", 0, [1]),
        ("cash", -5, [1]),
        ("cash", 50.0, [1]),
        ("cash", 5000, []),
        ("cash", 5000, ["1"]),
        ("cash", 5000, None),
    ])
    def test_input_validation(self, tab, method, amount, order_ids):
        table, _ = tab
        with pytest.raises(ValidationError):
            payment_service.create_payment(table.id, method, amount, order_ids)

    def test_unknown_table(self, tables):
        with pytest.raises(NotFoundError):
            payment_service.create_payment(9999, "cash", 1000, [1])

    def test_provider_failure_saves_nothing(self, app, tab, monkeypatch):
        class BrokenProvider(PixProvider):
            def create_charge(self, payment_id, amount_cents):
                raise ProviderError("PSP unavailable")

        monkeypatch.setitem(app.extensions, "pix_provider", BrokenProvider())
        table, order = tab

        with pytest.raises(ProviderError):
            payment_service.create_payment(table.id, "pix", 5000, [order.id])

        assert db.session.query(Payment).count() == 0
        assert reload(Table, table.id).status == "occupied"


# =============================================================================
# EXPIRY
# =============================================================================


class TestExpiry:

    def test_read_after_window_cancels(self, tab, clock):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        clock.advance(minutes=29)
        assert payment_service.get_payment(payment.id).status == "processing"

        clock.advance(minutes=2)
        assert payment_service.get_payment(payment.id).status == "cancelled"

    def test_cash_payments_do_not_expire(self, tab, clock):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])
        clock.advance(hours=2)
        assert payment_service.get_payment(payment.id).status == "pending"

    def test_late_webhook_cannot_revive(self, tab, clock):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        clock.advance(minutes=31)

        result = _webhook(payment, "approved")

        assert not result.applied
        assert result.status == "cancelled"
        assert reload(Payment, payment.id).status == "cancelled"
        assert reload(Table, table.id).status == "needs_attention"
        assert reload(Order, order.id).status == "pending"

    def test_sweep(self, tables, menu, clock):
        payments = []
        for t in tables[:2]:
            order = order_service.place_order(t.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])
            payments.append(payment_service.create_payment(t.id, "pix", 850, [order.id]))

        assert payment_service.expire_stale_payments() == 0
        clock.advance(minutes=45)
        assert payment_service.expire_stale_payments() == 2
        assert {reload(Payment, p.id).status for p in payments} == {"cancelled"}


# =============================================================================
# WEBHOOK
# =============================================================================


class TestWebhook:

    def test_approved_completes_and_cascades(self, tab):
        table, order = tab
        token_service.issue(table.id)
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        result = _webhook(payment, "approved", transaction_id="tx-1", end_to_end_id="E2E-1")

        assert result.applied
        stored = reload(Payment, payment.id)
        assert stored.status == "completed"
        assert stored.paid_at == START_TIME
        assert stored.provider_transaction_id == "tx-1"
        assert stored.provider_end_to_end_id == "E2E-1"
        assert stored.webhook_payload["status"] == "approved"

        released = reload(Table, table.id)
        assert released.status == "available"
        assert released.access_token_hash is None
        assert reload(Order, order.id).status == "delivered"

    def test_replayed_webhook_is_noop(self, tab, menu):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        _webhook(payment, "paid")

        # New guests sit down before the provider retries
        order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])

        result = _webhook(payment, "paid")

        assert not result.applied
        assert reload(Table, table.id).status == "occupied"
        assert db.session.query(Order).filter_by(status="pending").count() == 1

    def test_failure_keeps_table_waiting(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        _webhook(payment, "failed")

        assert reload(Payment, payment.id).status == "failed"
        assert reload(Table, table.id).status == "needs_attention"
        assert reload(Order, order.id).status == "pending"

    def test_failed_payment_cannot_complete(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        _webhook(payment, "expired")

        result = _webhook(payment, "approved")

        assert not result.applied
        assert reload(Payment, payment.id).status == "cancelled"

    def test_pending_status_records_payload_only(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        result = _webhook(payment, "pending", transaction_id="tx-9")

        assert not result.applied
        stored = reload(Payment, payment.id)
        assert stored.status == "processing"
        assert stored.provider_transaction_id == "tx-9"

    def test_unknown_provider_status_treated_as_processing(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        result = _webhook(payment, "under_review")
        assert result.status == "processing"

    def test_amount_mismatch_is_logged_not_blocking(self, tab, caplog):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])

        with caplog.at_level(logging.WARNING, logger="tableside.services.payment_service"):
            result = _webhook(payment, "approved", amount_cents=4999)

        assert result.applied
        assert reload(Payment, payment.id).status == "completed"
        assert "differs from payment" in caplog.text

    def test_unknown_payment(self, tables):
        with pytest.raises(NotFoundError):
            payment_service.handle_webhook({"payment_id": "pix_0_nope", "status": "paid"})

    @pytest.mark.parametrize("payload", [None, [], "paid", {"status": "paid"}, {"payment_id": "x"}])
    def test_malformed_payload_ignored(self, payload):
        result = payment_service.handle_webhook(payload)
        assert not result.applied
        assert result.to_dict()["success"] is True

    def test_status_mapping(self):
        assert payment_service.map_external_status("APPROVED") == "completed"
        assert payment_service.map_external_status("confirmed") == "completed"
        assert payment_service.map_external_status("expired") == "cancelled"
        assert payment_service.map_external_status("failed") == "failed"
        assert payment_service.map_external_status("mystery") == "processing"


# =============================================================================
# MANUAL UPDATES
# =============================================================================


class TestUpdatePayment:

    def test_staff_confirms_cash(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])

        updated = payment_service.update_payment(payment.id, "completed", provider_transaction_id="till-3")

        assert updated.status == "completed"
        assert updated.provider_transaction_id == "till-3"
        assert reload(Table, table.id).status == "available"
        assert reload(Order, order.id).status == "delivered"

    def test_completed_is_immutable(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])
        payment_service.update_payment(payment.id, "completed")

        for status in ("pending", "processing", "failed", "cancelled"):
            with pytest.raises(ConflictError) as exc:
                payment_service.update_payment(payment.id, status)
            assert exc.value.current["status"] == "completed"

    def test_same_status_is_noop(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])
        assert payment_service.update_payment(payment.id, "pending").status == "pending"

    def test_processing_cannot_go_back_to_pending(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "pix", 5000, [order.id])
        with pytest.raises(ConflictError):
            payment_service.update_payment(payment.id, "pending")

    def test_record_external_id_then_webhook(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "card", 5000, [order.id])
        payment_service.update_payment(payment.id, "processing", external_payment_id="acq-77")

        payment_service.handle_webhook({"payment_id": "acq-77", "status": "approved"})

        assert reload(Payment, payment.id).status == "completed"

    def test_unknown_status(self, tab):
        table, order = tab
        payment = payment_service.create_payment(table.id, "cash", 5000, [order.id])
        with pytest.raises(ValidationError):
            payment_service.update_payment(payment.id, "refunded")

    def test_unknown_payment(self, tables):
        with pytest.raises(NotFoundError):
            payment_service.update_payment(9999, "completed")


# =============================================================================
# SIGNATURES
# =============================================================================


class TestWebhookSignature:

    def test_no_secret_accepts_anything(self, app):
        assert payment_service.verify_webhook_signature(b"{}", None)

    def test_secret_enforced(self, app, monkeypatch):
        import hashlib
        import hmac

        monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", "whsec")
        body = b'{"payment_id": "x", "status": "paid"}'
        digest = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert payment_service.verify_webhook_signature(body, digest)
        assert payment_service.verify_webhook_signature(body, f"sha256={digest}")
        assert not payment_service.verify_webhook_signature(body, None)
        assert not payment_service.verify_webhook_signature(body, "0" * 64)
        assert not payment_service.verify_webhook_signature(body + b" ", digest)
