"""
Session validator tests.

Verifies:
- Token failures deny with requires_new_token
- needs_attention denies with awaiting_payment even for a valid token
- Checking a session never changes table status
- last_access_at is recorded on allowed checks only
"""

import pytest

from tableside.errors import AccessDeniedError, NotFoundError
from tableside.models import Table
from tableside.services import order_service, table_service, table_session_service, token_service
from tableside.services.concurrency import reload
from conftest import START_TIME


class TestCheck:

    def test_fresh_token_on_available_table(self, table):
        token, expires_at = token_service.issue(table.id)

        verdict = table_session_service.check(table.id, token)

        assert verdict.allowed
        assert verdict.reason is None
        assert verdict.token_valid is True
        assert verdict.token_expires_at == expires_at
        assert not verdict.has_active_orders

    def test_view_does_not_occupy(self, table):
        token, _ = token_service.issue(table.id)
        table_session_service.check(table.id, token)
        table_session_service.check(table.id, token)
        assert reload(Table, table.id).status == "available"

    def test_records_last_access_without_version_bump(self, table, clock):
        token, _ = token_service.issue(table.id)
        version = reload(Table, table.id).version_id
        clock.advance(minutes=3)

        table_session_service.check(table.id, token)

        stored = reload(Table, table.id)
        assert stored.last_access_at == clock.now()
        assert stored.version_id == version

    @pytest.mark.parametrize("presented,reason", [
        (None, "missing_token"),
        ("", "missing_token"),
        ("bogus", "token_mismatch"),
    ])
    def test_bad_token(self, table, presented, reason):
        token_service.issue(table.id)
        verdict = table_session_service.check(table.id, presented)

        assert not verdict.allowed
        assert verdict.reason == reason
        assert verdict.requires_new_token
        assert verdict.token_failed
        assert reload(Table, table.id).last_access_at is None

    def test_expired_token(self, table, clock):
        token, _ = token_service.issue(table.id)
        clock.advance(hours=5)

        verdict = table_session_service.check(table.id, token)

        assert verdict.reason == "token_expired"
        assert verdict.requires_new_token

    def test_awaiting_payment(self, table, menu):
        token, _ = token_service.issue(table.id)
        order_service.place_order(table.id, [{"menu_item_id": menu["burger"].id, "quantity": 1}])
        table_service.apply_action(table.id, "close_bill")

        verdict = table_session_service.check(table.id, token)

        assert not verdict.allowed
        assert verdict.reason == "awaiting_payment"
        assert not verdict.requires_new_token
        assert verdict.token_valid is True
        assert verdict.has_active_orders

    def test_reserved_table_without_orders_is_inactive(self, table):
        token, _ = token_service.issue(table.id)
        table_service.apply_action(table.id, "reserve")

        verdict = table_session_service.check(table.id, token)

        assert not verdict.allowed
        assert verdict.reason == "inactive_session"

    def test_token_not_required_for_staff_path(self, table):
        verdict = table_session_service.check(table.id, None, require_token=False)
        assert verdict.allowed
        assert not verdict.token_checked

    def test_presented_token_checked_even_when_optional(self, table):
        token_service.issue(table.id)
        verdict = table_session_service.check(table.id, "bogus", require_token=False)
        assert verdict.reason == "token_mismatch"

    def test_unknown_table(self, tables):
        with pytest.raises(NotFoundError):
            table_session_service.check(9999, "x")

    def test_to_dict_shape(self, table, menu):
        token, _ = token_service.issue(table.id)
        order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])

        body = table_session_service.check(table.id, token).to_dict()

        assert body["table"]["table_number"] == 1
        assert body["table"]["status"] == "occupied"
        session = body["session"]
        assert session["isValid"] is True
        assert session["hasActiveOrders"] is True
        assert session["hasRecentOrders"] is True
        assert session["lastOrderTime"] == START_TIME.isoformat() + "Z"
        assert session["tokenValid"] is True
        assert session["tokenExpires"].endswith("Z")


class TestRequireAccess:

    def test_raises_denial(self, table):
        token_service.issue(table.id)
        with pytest.raises(AccessDeniedError) as exc:
            table_session_service.require_table_access(table.id, None)

        assert exc.value.reason == "missing_token"
        assert exc.value.requires_new_token
        assert exc.value.to_dict()["requiresNewToken"] is True

    def test_returns_verdict_when_allowed(self, table):
        token, _ = token_service.issue(table.id)
        verdict = table_session_service.require_table_access(table.id, token)
        assert verdict.allowed

    def test_valid_token_gate_ignores_status(self, table, menu):
        token, _ = token_service.issue(table.id)
        order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])
        table_service.apply_action(table.id, "close_bill")

        assert table_session_service.require_valid_token(table.id, token).id == table.id
        with pytest.raises(AccessDeniedError):
            table_session_service.require_valid_token(table.id, "bogus")
