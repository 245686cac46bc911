# Overview: Pytest coverage for the append-only audit log and movement tables.

from decimal import Decimal

import pytest

from posledger.extensions import db
from posledger.models import AuditLogEntry, StockMovement, UnitMovement
from posledger.models.audit import ImmutableRecordError
from posledger.services import audit_service, sales_service
from posledger.services.errors import InsufficientStock

from conftest import unit_id


def _sell_cable(cashier_user, branch, cable_variation, quantity="1"):
    sale, _ = sales_service.create_sale(
        location_id=branch.id,
        user_id=cashier_user.id,
        items=[{"variation_id": cable_variation.id, "quantity": Decimal(quantity), "unit_price_cents": 1000}],
        payments=[{"method": "cash", "amount_cents": int(Decimal(quantity) * 1000)}],
    )
    return sale


class TestAuditEntries:

    def test_one_entry_per_sale(self, stock, cashier_user, branch, cable_variation):
        sale = _sell_cable(cashier_user, branch, cable_variation)

        entries = audit_service.list_entries(action=audit_service.SALE_CREATE)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.entity_type == "sale"
        assert entry.entity_id == sale.id
        assert entry.username == cashier_user.username
        assert entry.org_id == cashier_user.org_id
        assert entry.details["invoice_number"] == sale.invoice_number

    def test_serialized_sale_lists_every_unit(self, stock, cashier_user, branch, phone_variation):
        ids = [unit_id("BR-0001"), unit_id("BR-0002")]
        sale, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[{
                "variation_id": phone_variation.id,
                "quantity": Decimal("2"),
                "unit_price_cents": 49900,
                "serial_number_ids": ids,
            }],
            payments=[{"method": "card", "amount_cents": 99800}],
        )

        entry = audit_service.list_entries(action=audit_service.SALE_CREATE)[0]
        assert entry.entity_ids[0] == sale.id
        assert set(ids) <= set(entry.entity_ids)

    def test_failed_operation_leaves_no_entry(self, stock, cashier_user, branch, cable_variation):
        with pytest.raises(InsufficientStock):
            _sell_cable(cashier_user, branch, cable_variation, quantity="500")

        assert audit_service.list_entries(action=audit_service.SALE_CREATE) == []

    def test_receipts_are_logged(self, stock, org):
        receipts = audit_service.list_entries(org_id=org.id, action=audit_service.STOCK_RECEIVE)
        assert len(receipts) == 4
        assert {entry.entity_type for entry in receipts} == {"stock_receipt"}

    def test_filters(self, stock, other_org, cashier_user, branch, cable_variation):
        sale = _sell_cable(cashier_user, branch, cable_variation)

        by_entity = audit_service.list_entries(entity_type="sale", entity_id=sale.id)
        assert [entry.action for entry in by_entity] == [audit_service.SALE_CREATE]
        assert audit_service.list_entries(org_id=other_org.id) == []
        assert len(audit_service.list_entries(limit=2)) == 2

    def test_newest_first(self, stock, cashier_user, branch, cable_variation):
        _sell_cable(cashier_user, branch, cable_variation)
        entries = audit_service.list_entries()
        assert entries[0].action == audit_service.SALE_CREATE
        assert [e.id for e in entries] == sorted((e.id for e in entries), reverse=True)


class TestAppendOnly:

    def test_audit_entry_cannot_be_modified(self, stock):
        entry = db.session.query(AuditLogEntry).first()
        entry.description = "rewritten"
        with pytest.raises(ImmutableRecordError, match="cannot be modified"):
            db.session.flush()
        db.session.rollback()

    def test_audit_entry_cannot_be_deleted(self, stock):
        entry = db.session.query(AuditLogEntry).first()
        db.session.delete(entry)
        with pytest.raises(ImmutableRecordError, match="cannot be deleted"):
            db.session.flush()
        db.session.rollback()

    def test_stock_movement_cannot_be_deleted(self, stock):
        movement = db.session.query(StockMovement).first()
        db.session.delete(movement)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

        assert db.session.query(StockMovement).count() == 4

    def test_unit_movement_cannot_be_modified(self, stock):
        movement = db.session.query(UnitMovement).first()
        movement.movement_type = "sale"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()
