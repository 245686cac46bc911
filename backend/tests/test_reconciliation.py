# Overview: Pytest coverage for stock reconciliation; conservation after sales, transfers and tampering.

from decimal import Decimal

from sqlalchemy import update

from posledger.extensions import db
from posledger.models import StockLevel
from posledger.services import reconciliation_service, sales_service, transfer_service

from conftest import unit_id


def _variation_row(report, variation):
    return next(row for row in report["variations"] if row["variation_id"] == variation.id)


def _tamper(variation, location, quantity):
    """Move a level without a matching movement."""
    db.session.execute(
        update(StockLevel)
        .where(StockLevel.variation_id == variation.id, StockLevel.location_id == location.id)
        .values(quantity_available=Decimal(quantity))
    )
    db.session.commit()


class TestReconcile:

    def test_opening_stock_is_balanced(self, stock, org, cable_variation, phone_variation):
        report = reconciliation_service.reconcile(org_id=org.id)

        assert report["balanced"] is True
        assert report["invalid_unit_movements"] == 0
        assert report["units_not_received"] == []

        cables = _variation_row(report, cable_variation)
        assert cables["levels_total"] == "150"
        assert cables["external_inbound"] == "150"
        assert cables["expected_total"] == "150"

        phones = _variation_row(report, phone_variation)
        assert {loc["serial_units_in_stock"] for loc in phones["locations"]} == {2, 3}

    def test_sales_and_voids_stay_balanced(self, stock, org, cashier_user, manager_user, branch,
                                           cable_variation, phone_variation):
        sale, _ = sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[
                {"variation_id": cable_variation.id, "quantity": Decimal("4"), "unit_price_cents": 500},
                {
                    "variation_id": phone_variation.id,
                    "quantity": Decimal("1"),
                    "unit_price_cents": 49900,
                    "serial_number_ids": [unit_id("BR-0001")],
                },
            ],
            payments=[{"method": "cash", "amount_cents": 51900}],
        )
        sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[{"variation_id": cable_variation.id, "quantity": Decimal("1"), "unit_price_cents": 500}],
            payments=[{"method": "cash", "amount_cents": 500}],
        )
        sales_service.void_sale(sale.id, user_id=manager_user.id)

        report = reconciliation_service.reconcile(org_id=org.id)
        assert report["balanced"] is True

        cables = _variation_row(report, cable_variation)
        assert cables["levels_total"] == "149"
        assert cables["external_outbound"] == "5"

    def test_sent_transfer_is_counted_in_transit(self, stock, org, admin_user, manager_user,
                                                 warehouse, branch, cable_variation):
        transfer = _approved(admin_user, manager_user, warehouse, branch, cable_variation)
        transfer_service.send(transfer.id, user_id=admin_user.id)

        report = reconciliation_service.reconcile(org_id=org.id, variation_id=cable_variation.id)
        assert report["balanced"] is True
        assert len(report["variations"]) == 1

        cables = report["variations"][0]
        assert cables["levels_total"] == "140"
        assert cables["in_transit"] == "10"
        assert cables["expected_total"] == "150"

    def test_level_changed_outside_the_ledger_is_reported(self, stock, org, branch, cable_variation):
        _tamper(cable_variation, branch, "93")

        report = reconciliation_service.reconcile(org_id=org.id)
        assert report["balanced"] is False

        cables = _variation_row(report, cable_variation)
        assert cables["balanced"] is False
        at_branch = next(loc for loc in cables["locations"] if loc["location_id"] == branch.id)
        assert at_branch["balanced"] is False
        assert at_branch["quantity_available"] == "93"
        assert at_branch["movement_sum"] == "100"

    def test_serial_count_mismatch_is_reported(self, stock, org, branch, phone_variation):
        _tamper(phone_variation, branch, "4")

        report = reconciliation_service.reconcile(org_id=org.id, variation_id=phone_variation.id)
        assert report["balanced"] is False

    def test_other_organization_sees_nothing(self, stock, other_org):
        report = reconciliation_service.reconcile(org_id=other_org.id)
        assert report["balanced"] is True
        assert report["variations"] == []


def _approved(admin_user, manager_user, warehouse, branch, variation):
    transfer = transfer_service.create_transfer(
        warehouse.id,
        branch.id,
        [{"variation_id": variation.id, "quantity": Decimal("10"), "serial_number_ids": []}],
        user_id=admin_user.id,
    )
    transfer_service.submit_for_check(transfer.id, user_id=admin_user.id)
    return transfer_service.approve(transfer.id, user_id=manager_user.id)


class TestReconcileCommand:

    def test_balanced_exits_zero(self, app, stock):
        db.session.commit()
        result = app.test_cli_runner().invoke(args=["inventory", "reconcile"])

        assert result.exit_code == 0
        assert "PASS Stock is balanced" in result.output

    def test_unbalanced_exits_one(self, app, stock, branch, cable_variation):
        _tamper(cable_variation, branch, "1")
        result = app.test_cli_runner().invoke(args=["inventory", "reconcile"])

        assert result.exit_code == 1
        assert "MISMATCH" in result.output
        assert "FAIL Stock is out of balance" in result.output

    def test_json_report(self, app, stock, cable_variation):
        result = app.test_cli_runner().invoke(
            args=["inventory", "reconcile", "--variation-id", str(cable_variation.id), "--json"]
        )

        assert result.exit_code == 0
        assert '"balanced": true' in result.output
