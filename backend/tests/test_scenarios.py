"""
End-to-end floor scenarios through the HTTP API.

A: first order occupies an available table
B: closing the bill freezes ordering
C: PIX payment approved by webhook releases the table
D: unpaid PIX expires and a late webhook cannot revive it
E: close_bill and order submission on the same table serialize
"""

import pytest

from tableside.extensions import db
from tableside.models import Order, Payment, Table
from tableside.services import order_service, table_service
from tableside.services.concurrency import reload
from tableside.errors import AccessDeniedError
from conftest import issue_token, token_headers


def _order(client, table_id, menu_item_id, token, quantity=1):
    return client.post("/api/orders", json={
        "table_id": table_id,
        "items": [{"menu_item_id": menu_item_id, "quantity": quantity}],
    }, headers=token_headers(token))


class TestScenarioA:

    def test_first_order_occupies(self, client, table, menu):
        token = issue_token(client, table.id)
        assert client.get(f"/api/tables/{table.id}/session", headers=token_headers(token)).json["table"]["status"] == "available"

        resp = _order(client, table.id, menu["burger"].id, token)

        assert resp.status_code == 201
        assert reload(Table, table.id).status == "occupied"

    def test_rescan_replaces_token(self, client, table, menu):
        first = issue_token(client, table.id)
        second = issue_token(client, table.id)

        assert _order(client, table.id, menu["juice"].id, first).status_code == 403
        assert _order(client, table.id, menu["juice"].id, second).status_code == 201


class TestScenarioB:

    def test_close_bill_rejects_new_orders(self, client, table, menu, staff_headers):
        token = issue_token(client, table.id)
        _order(client, table.id, menu["burger"].id, token)

        resp = client.patch(f"/api/tables/{table.id}/status", json={"action": "close_bill"}, headers=staff_headers)
        assert resp.json["table"]["status"] == "needs_attention"

        resp = _order(client, table.id, menu["juice"].id, token)

        assert resp.status_code == 403
        assert resp.json["reason"] == "awaiting_payment"
        assert resp.json["requiresNewToken"] is False
        assert db.session.query(Order).filter_by(table_id=table.id).count() == 1


class TestScenarioC:

    def test_pix_paid_by_webhook(self, client, table, menu):
        token = issue_token(client, table.id)
        first = _order(client, table.id, menu["burger"].id, token).json["order"]
        second = _order(client, table.id, menu["juice"].id, token, quantity=2).json["order"]
        total = first["total_amount_cents"] + second["total_amount_cents"]

        resp = client.post("/api/payments", json={
            "table_id": table.id,
            "method": "pix",
            "total_amount_cents": total,
            "order_ids": [first["id"], second["id"]],
        }, headers=token_headers(token))
        payment = resp.json["payment"]

        assert resp.status_code == 201
        assert payment["status"] == "processing"
        assert payment["expires_at"] == "2026-03-14T19:30:00Z"
        assert reload(Table, table.id).status == "needs_attention"

        resp = client.post("/api/payments/webhook", json={
            "payment_id": payment["external_payment_id"],
            "status": "approved",
        })

        assert resp.status_code == 200
        assert reload(Payment, payment["id"]).status == "completed"
        released = reload(Table, table.id)
        assert released.status == "available"
        assert released.access_token_hash is None
        statuses = {o.status for o in db.session.query(Order).filter_by(table_id=table.id)}
        assert statuses == {"delivered"}

        # The old token died with the session
        resp = client.get(f"/api/tables/{table.id}/session", headers=token_headers(token))
        assert resp.status_code == 403


class TestScenarioD:

    def test_expired_payment_stays_cancelled(self, client, table, menu, clock):
        token = issue_token(client, table.id)
        order = _order(client, table.id, menu["burger"].id, token).json["order"]
        payment = client.post("/api/payments", json={
            "table_id": table.id,
            "method": "pix",
            "total_amount_cents": order["total_amount_cents"],
            "order_ids": [order["id"]],
        }, headers=token_headers(token)).json["payment"]

        clock.advance(minutes=31)
        resp = client.get(f"/api/payments/{payment['id']}", headers=token_headers(token))
        assert resp.json["payment"]["status"] == "cancelled"

        resp = client.post("/api/payments/webhook", json={
            "payment_id": payment["external_payment_id"],
            "status": "approved",
        })

        assert resp.status_code == 200
        assert resp.json["applied"] is False
        assert reload(Payment, payment["id"]).status == "cancelled"
        assert reload(Table, table.id).status == "needs_attention"


class TestScenarioE:
    """
    The table row is the serialization point: whichever write lands first
    decides, and the loser sees the winner's state.
    The same races under real threads live in test_concurrency.py.
    """

    def test_close_bill_first_rejects_order(self, table, menu):
        order_service.place_order(table.id, [{"menu_item_id": menu["burger"].id, "quantity": 1}])
        table_service.apply_action(table.id, "close_bill")

        with pytest.raises(AccessDeniedError):
            order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])

        assert reload(Table, table.id).status == "needs_attention"
        assert db.session.query(Order).count() == 1

    def test_order_first_then_close_bill(self, table, menu):
        order_service.place_order(table.id, [{"menu_item_id": menu["burger"].id, "quantity": 1}])
        order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])
        table_service.apply_action(table.id, "close_bill")

        assert reload(Table, table.id).status == "needs_attention"
        assert db.session.query(Order).count() == 2

    def test_order_write_bumps_table_version(self, table, menu):
        order_service.place_order(table.id, [{"menu_item_id": menu["burger"].id, "quantity": 1}])
        version = reload(Table, table.id).version_id

        order_service.place_order(table.id, [{"menu_item_id": menu["juice"].id, "quantity": 1}])

        current = reload(Table, table.id)
        assert current.status == "occupied"
        assert current.version_id == version + 1
