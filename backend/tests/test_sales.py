# Overview: Pytest coverage for the sale processor; validation order, atomicity, idempotency and voids.

"""
Sale transaction tests

Verifies:
- 100 -> sell 5 -> 95 -> void -> 100
- serial count and availability errors name the item and counts
- payments must match the total within one cent
- nothing is written when any check fails
- void happens once; a second void credits nothing
- client_reference replays and the duplicate-submission window
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from posledger.extensions import db
from posledger.models import (
    AuditLogEntry,
    Customer,
    DocumentSequence,
    Sale,
    SerializedUnit,
    StockMovement,
    UnitMovement,
)
from posledger.models.sales import SALE_STATUS_VOIDED
from posledger.models.serials import UNIT_STATUS_IN_STOCK
from posledger.services import audit_service, sales_service, serial_service
from posledger.services.document_service import DocumentSequenceError
from posledger.services.errors import (
    AlreadyVoided,
    CommitOutcomeUnknown,
    DuplicateSale,
    InsufficientStock,
    LocationAccessDenied,
    PaymentMismatch,
    SerialCountMismatch,
    UnitNotAvailable,
)
from posledger.time_utils import period_code
from posledger.validation import ValidationError

from conftest import level, unit_id


def cable_line(variation, quantity="5", price=7000):
    return {"variation_id": variation.id, "quantity": Decimal(quantity), "unit_price_cents": price}


def cash(amount_cents):
    return [{"method": "cash", "amount_cents": amount_cents}]


# =============================================================================
# ROUND TRIP
# =============================================================================


class TestSaleRoundTrip:

    def test_sell_and_void_restores_stock(self, stock, cashier_user, manager_user, branch, cable_variation):
        assert level(cable_variation, branch) == Decimal("100")

        sale, created = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
        )
        assert created is True
        assert level(cable_variation, branch) == Decimal("95")
        assert sale.to_dict()["total"] == "350.00"
        assert sale.invoice_number.startswith("INV-")

        voided = sales_service.void_sale(sale.id, user_id=manager_user.id, reason="Customer changed mind")
        assert voided.status == SALE_STATUS_VOIDED
        assert voided.voided_by_user_id == manager_user.id
        assert level(cable_variation, branch) == Decimal("100")

    def test_totals_include_tax_shipping_and_discount(self, stock, cashier_user, branch, cable_variation):
        sale, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation, "2", 1000)],
            payments=cash(2150),
            tax_cents=300,
            shipping_cents=50,
            discount_cents=200,
        )
        data = sale.to_dict()
        assert data["subtotal"] == "20.00"
        assert data["total"] == "21.50"

    def test_fractional_quantity(self, stock, cashier_user, branch, cable_variation):
        sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation, "2.5", 1000)],
            payments=cash(2500),
        )
        assert level(cable_variation, branch) == Decimal("97.5")

    def test_invoice_numbers_increase(self, stock, cashier_user, branch, cable_variation):
        first, _ = sales_service.create_sale(
            location_id=branch.id, user_id=cashier_user.id,
            items=[cable_line(cable_variation, "1", 100)], payments=cash(100),
        )
        second, _ = sales_service.create_sale(
            location_id=branch.id, user_id=cashier_user.id,
            items=[cable_line(cable_variation, "1", 100)], payments=cash(100),
        )
        assert first.invoice_number.endswith("-0001")
        assert second.invoice_number.endswith("-0002")

    def test_invoice_sequence_stops_at_four_digits(self, stock, cashier_user, branch, cable_variation):
        sequence = DocumentSequence(
            location_id=branch.id,
            document_type=f"INVOICE-{period_code()}",
            next_number=9999,
        )
        db.session.add(sequence)
        db.session.commit()

        last, _ = sales_service.create_sale(
            location_id=branch.id, user_id=cashier_user.id,
            items=[cable_line(cable_variation, "1", 100)], payments=cash(100),
        )
        assert last.invoice_number.endswith("-9999")

        with pytest.raises(DocumentSequenceError) as exc:
            sales_service.create_sale(
                location_id=branch.id, user_id=cashier_user.id,
                items=[cable_line(cable_variation, "2", 100)], payments=cash(200),
            )
        assert exc.value.details["limit"] == 9999
        assert db.session.query(Sale).count() == 1
        assert level(cable_variation, branch) == Decimal("99")

    def test_customer_name_recorded_on_sold_units(self, stock, org, cashier_user, branch, phone_variation):
        customer = Customer(org_id=org.id, name="Dana Reyes")
        db.session.add(customer)
        db.session.commit()

        sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            customer_id=customer.id,
            items=[{
                "variation_id": phone_variation.id,
                "quantity": Decimal("1"),
                "unit_price_cents": 49900,
                "serial_number_ids": [unit_id("BR-0003")],
            }],
            payments=cash(49900),
        )
        assert db.session.get(SerializedUnit, unit_id("BR-0003")).sold_to == "Dana Reyes"


# =============================================================================
# VALIDATION
# =============================================================================


class TestSaleValidation:

    def test_insufficient_stock(self, stock, cashier_user, branch, cable_variation, cable):
        with pytest.raises(InsufficientStock) as exc:
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation, "101")],
                payments=cash(707000),
            )
        assert str(exc.value) == f"Insufficient stock for item {cable.id}. Available: 100, Required: 101"
        assert level(cable_variation, branch) == Decimal("100")

    def test_stock_is_checked_across_lines(self, stock, cashier_user, branch, cable_variation):
        with pytest.raises(InsufficientStock):
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation, "60", 100), cable_line(cable_variation, "41", 100)],
                payments=cash(10100),
            )

    def test_serial_count_mismatch(self, stock, cashier_user, branch, phone_variation, phone):
        with pytest.raises(SerialCountMismatch) as exc:
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[{
                    "variation_id": phone_variation.id,
                    "quantity": Decimal("2"),
                    "unit_price_cents": 49900,
                    "serial_number_ids": [unit_id("BR-0001")],
                }],
                payments=cash(99800),
            )
        message = str(exc.value)
        assert message.startswith(f"Serial number count mismatch for item {phone.id}")
        assert "Expected: 2" in message
        assert "Provided: 1" in message

    def test_requires_serial_flag_on_plain_product(self, stock, cashier_user, branch, cable_variation):
        line = cable_line(cable_variation, "1", 100)
        line["requires_serial"] = True
        with pytest.raises(SerialCountMismatch):
            sales_service.create_sale(
                location_id=branch.id, user_id=cashier_user.id, items=[line], payments=cash(100),
            )

    def test_sold_unit_not_available_again(self, stock, cashier_user, branch, phone_variation):
        line = {
            "variation_id": phone_variation.id,
            "quantity": Decimal("1"),
            "unit_price_cents": 49900,
            "serial_number_ids": [unit_id("BR-0001")],
        }
        sales_service.create_sale(location_id=branch.id, user_id=cashier_user.id, items=[line], payments=cash(49900))

        with pytest.raises(UnitNotAvailable, match="not available for sale"):
            sales_service.create_sale(
                location_id=branch.id, user_id=cashier_user.id, items=[line], payments=cash(49900),
            )
        assert level(phone_variation, branch) == Decimal("2")

    def test_unit_from_other_location_not_available(self, stock, cashier_user, branch, phone_variation):
        with pytest.raises(UnitNotAvailable):
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[{
                    "variation_id": phone_variation.id,
                    "quantity": Decimal("1"),
                    "unit_price_cents": 49900,
                    "serial_number_ids": [unit_id("WH-0001")],
                }],
                payments=cash(49900),
            )

    def test_same_unit_on_two_lines_rejected(self, stock, cashier_user, branch, phone_variation):
        line = {
            "variation_id": phone_variation.id,
            "quantity": Decimal("1"),
            "unit_price_cents": 100,
            "serial_number_ids": [unit_id("BR-0001")],
        }
        with pytest.raises(ValidationError, match="more than one line"):
            sales_service.create_sale(
                location_id=branch.id, user_id=cashier_user.id, items=[line, dict(line)], payments=cash(200),
            )

    def test_payment_mismatch(self, stock, cashier_user, branch, cable_variation):
        with pytest.raises(PaymentMismatch) as exc:
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation)],
                payments=cash(30000),
            )
        assert str(exc.value) == "Payment total 300.00 does not match sale total 350.00"
        assert level(cable_variation, branch) == Decimal("100")

    def test_payment_within_one_cent_accepted(self, stock, cashier_user, branch, cable_variation):
        _, created = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=[{"method": "cash", "amount_cents": 20000}, {"method": "card", "amount_cents": 14999}],
        )
        assert created is True

    def test_stock_error_wins_over_payment_error(self, stock, cashier_user, branch, cable_variation):
        with pytest.raises(InsufficientStock):
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation, "500")],
                payments=cash(1),
            )

    def test_failed_sale_writes_nothing(self, stock, cashier_user, branch, cable_variation, phone_variation):
        movements_before = db.session.query(StockMovement).count()
        audit_before = db.session.query(AuditLogEntry).count()

        with pytest.raises(PaymentMismatch):
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[
                    cable_line(cable_variation),
                    {
                        "variation_id": phone_variation.id,
                        "quantity": Decimal("1"),
                        "unit_price_cents": 49900,
                        "serial_number_ids": [unit_id("BR-0001")],
                    },
                ],
                payments=cash(1),
            )

        assert db.session.query(Sale).count() == 0
        assert db.session.query(StockMovement).count() == movements_before
        assert db.session.query(AuditLogEntry).count() == audit_before
        assert level(cable_variation, branch) == Decimal("100")

    def test_sale_outside_user_locations_denied(self, stock, cashier_user, warehouse, cable_variation):
        with pytest.raises(LocationAccessDenied):
            sales_service.create_sale(
                location_id=warehouse.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation)],
                payments=cash(35000),
            )
        assert level(cable_variation, warehouse) == Decimal("50")

    def test_failure_after_first_debit_rolls_back_everything(
        self, monkeypatch, stock, cashier_user, branch, cable_variation, phone_variation
    ):
        """A later line failing inside the write leaves no debit, movement or unit change."""
        phone_unit = unit_id("BR-0001")
        unit_movements_before = db.session.query(UnitMovement).count()

        def refuse(*args, **kwargs):
            raise UnitNotAvailable("Serial number BR-0001 is no longer available")

        monkeypatch.setattr(serial_service, "allocate", refuse)

        with pytest.raises(UnitNotAvailable):
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[
                    cable_line(cable_variation),
                    {
                        "variation_id": phone_variation.id,
                        "quantity": Decimal("1"),
                        "unit_price_cents": 49900,
                        "serial_number_ids": [phone_unit],
                    },
                ],
                payments=cash(84900),
            )

        assert level(cable_variation, branch) == Decimal("100")
        assert level(phone_variation, branch) == Decimal("3")
        assert db.session.query(StockMovement).filter_by(reference_type="sale").count() == 0
        assert db.session.query(UnitMovement).count() == unit_movements_before
        assert db.session.get(SerializedUnit, phone_unit).status == UNIT_STATUS_IN_STOCK
        assert db.session.query(Sale).count() == 0
        assert audit_service.list_entries(action=audit_service.SALE_CREATE) == []


# =============================================================================
# VOID
# =============================================================================


class TestVoid:

    def test_second_void_is_rejected(self, stock, cashier_user, manager_user, branch, cable_variation):
        sale, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
        )
        sales_service.void_sale(sale.id, user_id=manager_user.id)

        with pytest.raises(AlreadyVoided, match="already voided"):
            sales_service.void_sale(sale.id, user_id=manager_user.id)

        assert level(cable_variation, branch) == Decimal("100")
        credits = db.session.query(StockMovement).filter_by(
            reference_type="sale", reference_id=sale.id, movement_type="sale_void",
        ).count()
        assert credits == 1

    def test_void_writes_one_audit_entry(self, stock, cashier_user, manager_user, branch, cable_variation):
        sale, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
        )
        sales_service.void_sale(sale.id, user_id=manager_user.id)

        entries = audit_service.list_entries(action=audit_service.SALE_DELETE, entity_id=sale.id)
        assert len(entries) == 1
        assert entries[0].description == f"Sale {sale.invoice_number} voided and stock restored"
        assert entries[0].username == manager_user.username


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotency:

    def test_client_reference_replay_returns_same_sale(self, stock, cashier_user, branch, cable_variation):
        kwargs = dict(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
            client_reference="till-1-000042",
        )
        first, created = sales_service.create_sale(**kwargs)
        second, created_again = sales_service.create_sale(**kwargs)

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert level(cable_variation, branch) == Decimal("95")

    def test_identical_sale_inside_window_is_refused(self, app, monkeypatch, stock, cashier_user, branch, cable_variation):
        monkeypatch.setitem(app.config, "DUPLICATE_SALE_WINDOW_SECONDS", 60)
        first, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
        )

        with pytest.raises(DuplicateSale) as exc:
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation)],
                payments=cash(35000),
            )
        assert exc.value.http_status == 409
        assert exc.value.details["invoice_number"] == first.invoice_number
        assert level(cable_variation, branch) == Decimal("95")

    def test_different_items_inside_window_allowed(self, app, monkeypatch, stock, cashier_user, branch, cable_variation):
        monkeypatch.setitem(app.config, "DUPLICATE_SALE_WINDOW_SECONDS", 60)
        sales_service.create_sale(
            location_id=branch.id, user_id=cashier_user.id,
            items=[cable_line(cable_variation, "1", 7000)], payments=cash(7000),
        )
        sales_service.create_sale(
            location_id=branch.id, user_id=cashier_user.id,
            items=[cable_line(cable_variation, "2", 7000)], payments=cash(14000),
        )
        assert level(cable_variation, branch) == Decimal("97")


# =============================================================================
# COMMIT FAILURES
# =============================================================================


class TestCommitFailure:

    def test_failed_commit_is_not_retried(self, monkeypatch, stock, cashier_user, branch, cable_variation):
        """The COMMIT lands but reports an error; the sale must not be written a second time."""
        real_commit = Session.commit
        calls = {"failed": False}

        def commit_then_fail(session):
            real_commit(session)
            if not calls["failed"]:
                calls["failed"] = True
                raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(Session, "commit", commit_then_fail)

        with pytest.raises(CommitOutcomeUnknown) as exc:
            sales_service.create_sale(
                location_id=branch.id,
                user_id=cashier_user.id,
                items=[cable_line(cable_variation)],
                payments=cash(35000),
            )

        assert exc.value.http_status == 503
        assert calls["failed"] is True
        assert db.session.query(Sale).count() == 1
        assert level(cable_variation, branch) == Decimal("95")
        assert db.session.query(StockMovement).filter_by(reference_type="sale").count() == 1

    def test_lock_error_before_commit_is_retried(self, monkeypatch, stock, cashier_user, branch, cable_variation):
        real_flush = Session.flush
        calls = {"failed": False}

        def flush_once_locked(session, *args, **kwargs):
            if not calls["failed"] and session.new:
                calls["failed"] = True
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_flush(session, *args, **kwargs)

        monkeypatch.setattr(Session, "flush", flush_once_locked)

        sale, created = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[cable_line(cable_variation)],
            payments=cash(35000),
        )

        assert created is True
        assert calls["failed"] is True
        assert db.session.query(Sale).count() == 1
        assert level(cable_variation, branch) == Decimal("95")
