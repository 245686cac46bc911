# Overview: Pytest coverage for inventory corrections; approval duties, adjustment movements and write-offs.

"""
Inventory correction tests

Verifies:
- nothing moves until a different user approves
- approval writes one adjustment movement and one audit entry
- sales between count and approval are not undone
- serialized shortages write off exactly the named units
- reconciliation stays balanced after corrections
- bulk approval isolates failures
"""

from decimal import Decimal

import pytest

from posledger.extensions import db
from posledger.models import InventoryCorrection, SerializedUnit, StockMovement, UnitMovement
from posledger.models.serials import UNIT_STATUS_DAMAGED, UNIT_STATUS_IN_STOCK
from posledger.services import audit_service, correction_service, reconciliation_service, sales_service
from posledger.services.errors import (
    InvalidTransition,
    LocationAccessDenied,
    SeparationOfDutiesError,
    SerialCountMismatch,
    UnitNotAvailable,
)
from posledger.services.permission_service import PermissionDeniedError
from posledger.validation import ValidationError

from conftest import auth_headers, get_auth_token, level, unit_id


def _count(user, location, variation, physical, **kwargs):
    kwargs.setdefault("reason", "Cycle count")
    return correction_service.create_correction(
        location.id,
        user_id=user.id,
        variation_id=variation.id,
        physical_count=Decimal(physical),
        **kwargs,
    )


def _adjustments(correction):
    return (
        db.session.query(StockMovement)
        .filter_by(reference_type="inventory_correction", reference_id=correction.id)
        .all()
    )


# =============================================================================
# APPROVAL
# =============================================================================


class TestApproval:

    def test_shortage_is_debited_only_on_approval(self, stock, manager_user, admin_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "97")

        assert correction.status == correction_service.STATUS_PENDING
        assert correction.to_dict()["difference"] == "-3"
        assert level(cable_variation, branch) == Decimal("100")
        assert _adjustments(correction) == []

        correction = correction_service.approve_correction(correction.id, user_id=admin_user.id)

        assert correction.status == correction_service.STATUS_APPROVED
        assert correction.approved_by_user_id == admin_user.id
        assert level(cable_variation, branch) == Decimal("97")

        [movement] = _adjustments(correction)
        assert movement.movement_type == "adjustment"
        assert movement.quantity_delta == Decimal("-3")
        assert correction.stock_movement_id == movement.id

        entries = audit_service.list_entries(action=audit_service.CORRECTION_APPROVE, entity_id=correction.id)
        assert len(entries) == 1
        assert entries[0].details["before"] == "100"
        assert entries[0].details["after"] == "97"
        assert reconciliation_service.reconcile()["balanced"] is True

    def test_surplus_is_credited(self, stock, manager_user, admin_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "104.5")
        correction_service.approve_correction(correction.id, user_id=admin_user.id)

        assert level(cable_variation, branch) == Decimal("104.5")
        assert _adjustments(correction)[0].quantity_delta == Decimal("4.5")
        assert reconciliation_service.reconcile()["balanced"] is True

    def test_sale_between_count_and_approval_is_kept(
        self, stock, manager_user, admin_user, cashier_user, branch, cable_variation
    ):
        correction = _count(manager_user, branch, cable_variation, "97")
        sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[{"variation_id": cable_variation.id, "quantity": Decimal("5"), "unit_price_cents": 100}],
            payments=[{"method": "cash", "amount_cents": 500}],
        )
        assert level(cable_variation, branch) == Decimal("95")

        correction_service.approve_correction(correction.id, user_id=admin_user.id)
        assert level(cable_variation, branch) == Decimal("92")

    def test_matching_count_is_refused(self, stock, manager_user, branch, cable_variation):
        with pytest.raises(ValidationError, match="nothing to correct"):
            _count(manager_user, branch, cable_variation, "100")

    def test_reason_is_required(self, stock, manager_user, branch, cable_variation):
        with pytest.raises(ValidationError, match="reason"):
            _count(manager_user, branch, cable_variation, "90", reason="  ")


# =============================================================================
# SEPARATION OF DUTIES AND ACCESS
# =============================================================================


class TestDuties:

    def test_requester_cannot_approve(self, stock, manager_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "90")

        with pytest.raises(SeparationOfDutiesError) as exc:
            correction_service.approve_correction(correction.id, user_id=manager_user.id)

        assert exc.value.details["code"] == "SAME_USER_VIOLATION"
        assert level(cable_variation, branch) == Decimal("100")
        assert db.session.get(InventoryCorrection, correction.id).status == correction_service.STATUS_PENDING

    def test_warehouse_role_cannot_approve(self, stock, manager_user, warehouse_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "90")

        with pytest.raises(PermissionDeniedError, match="APPROVE_INVENTORY_CORRECTION"):
            correction_service.approve_correction(correction.id, user_id=warehouse_user.id)
        assert level(cable_variation, branch) == Decimal("100")

    def test_cashier_cannot_request(self, stock, cashier_user, branch, cable_variation):
        with pytest.raises(PermissionDeniedError):
            _count(cashier_user, branch, cable_variation, "90")

    def test_request_needs_location_access(self, stock, warehouse_user, branch, cable_variation):
        with pytest.raises(LocationAccessDenied):
            _count(warehouse_user, branch, cable_variation, "90")

    def test_approval_needs_location_access(
        self, stock, warehouse_user, manager_user, warehouse, cable_variation
    ):
        correction = _count(warehouse_user, warehouse, cable_variation, "48")

        with pytest.raises(LocationAccessDenied):
            correction_service.approve_correction(correction.id, user_id=manager_user.id)
        assert level(cable_variation, warehouse) == Decimal("50")


# =============================================================================
# REJECTION
# =============================================================================


class TestRejection:

    def test_rejected_correction_moves_nothing(self, stock, manager_user, admin_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "90")
        correction = correction_service.reject_correction(
            correction.id, user_id=admin_user.id, reason="Recount the back room",
        )

        assert correction.status == correction_service.STATUS_REJECTED
        assert correction.rejection_reason == "Recount the back room"
        assert level(cable_variation, branch) == Decimal("100")
        assert _adjustments(correction) == []

        with pytest.raises(InvalidTransition, match="in status rejected"):
            correction_service.approve_correction(correction.id, user_id=admin_user.id)

    def test_rejection_requires_reason(self, stock, manager_user, admin_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "90")
        with pytest.raises(ValidationError, match="reason"):
            correction_service.reject_correction(correction.id, user_id=admin_user.id, reason="")

    def test_second_approval_is_refused(self, stock, manager_user, admin_user, branch, cable_variation):
        correction = _count(manager_user, branch, cable_variation, "90")
        correction_service.approve_correction(correction.id, user_id=admin_user.id)

        with pytest.raises(InvalidTransition):
            correction_service.approve_correction(correction.id, user_id=admin_user.id)
        assert level(cable_variation, branch) == Decimal("90")


# =============================================================================
# SERIALIZED WRITE-OFFS
# =============================================================================


class TestSerializedWriteOff:

    def test_shortage_writes_off_named_units(self, stock, manager_user, admin_user, branch, phone_variation):
        lost = unit_id("BR-0002")
        correction = _count(manager_user, branch, phone_variation, "2", serial_number_ids=[lost])

        correction_service.approve_correction(correction.id, user_id=admin_user.id)

        unit = db.session.get(SerializedUnit, lost)
        assert unit.status == UNIT_STATUS_DAMAGED
        assert level(phone_variation, branch) == Decimal("2")

        movement = (
            db.session.query(UnitMovement)
            .filter_by(serial_number_id=lost, reference_type="inventory_correction")
            .one()
        )
        assert movement.movement_type == "adjustment"
        assert movement.reference_id == correction.id
        assert reconciliation_service.reconcile()["balanced"] is True

    def test_unit_count_must_match_shortage(self, stock, manager_user, branch, phone_variation):
        with pytest.raises(SerialCountMismatch):
            _count(manager_user, branch, phone_variation, "1", serial_number_ids=[unit_id("BR-0001")])

    def test_serialized_surplus_is_refused(self, stock, manager_user, branch, phone_variation):
        with pytest.raises(ValidationError, match="receive the units"):
            _count(manager_user, branch, phone_variation, "4")

    def test_unit_sold_before_approval_blocks_it(
        self, stock, manager_user, admin_user, cashier_user, branch, phone_variation
    ):
        gone = unit_id("BR-0001")
        correction = _count(manager_user, branch, phone_variation, "2", serial_number_ids=[gone])
        sales_service.create_sale(
            location_id=branch.id,
            user_id=cashier_user.id,
            items=[{
                "variation_id": phone_variation.id,
                "quantity": Decimal("1"),
                "unit_price_cents": 49900,
                "serial_number_ids": [gone],
            }],
            payments=[{"method": "cash", "amount_cents": 49900}],
        )

        with pytest.raises(UnitNotAvailable):
            correction_service.approve_correction(correction.id, user_id=admin_user.id)
        assert level(phone_variation, branch) == Decimal("2")
        assert db.session.get(InventoryCorrection, correction.id).status == correction_service.STATUS_PENDING


# =============================================================================
# BULK APPROVAL
# =============================================================================


class TestBulkApprove:

    def test_failures_do_not_stop_the_rest(
        self, stock, manager_user, admin_user, branch, cable_variation, phone_variation
    ):
        good = _count(manager_user, branch, cable_variation, "98")
        own = _count(admin_user, branch, phone_variation, "2", serial_number_ids=[unit_id("BR-0003")])

        result = correction_service.bulk_approve([good.id, own.id, 9999], user_id=admin_user.id)

        assert result["approved"] == [good.id]
        assert [entry["id"] for entry in result["failed"]] == [own.id, 9999]
        assert level(cable_variation, branch) == Decimal("98")
        assert level(phone_variation, branch) == Decimal("3")
        assert db.session.get(SerializedUnit, unit_id("BR-0003")).status == UNIT_STATUS_IN_STOCK

    def test_empty_list_is_refused(self, admin_user):
        with pytest.raises(ValidationError):
            correction_service.bulk_approve([], user_id=admin_user.id)


# =============================================================================
# API
# =============================================================================


class TestCorrectionsApi:

    def test_request_and_approve(
        self, client, stock, manager_headers, admin_headers, branch, cable_variation
    ):
        created = client.post("/api/inventory/corrections", json={
            "locationId": branch.id,
            "variationId": cable_variation.id,
            "physicalCount": "95",
            "reason": "Damaged in storage",
        }, headers=manager_headers)
        assert created.status_code == 201
        correction = created.json["correction"]
        assert correction["status"] == "pending"
        assert correction["system_count"] == "100"

        same_user = client.post(
            f"/api/inventory/corrections/{correction['id']}/approve", headers=manager_headers,
        )
        assert same_user.status_code == 403

        approved = client.post(
            f"/api/inventory/corrections/{correction['id']}/approve", headers=admin_headers,
        )
        assert approved.status_code == 200
        assert approved.json["correction"]["applied_quantity"] == "-5"
        assert level(cable_variation, branch) == Decimal("95")

        listed = client.get("/api/inventory/corrections?status=approved", headers=admin_headers)
        assert [c["id"] for c in listed.json["corrections"]] == [correction["id"]]

    def test_cashier_cannot_request(self, client, stock, cashier_headers, branch, cable_variation):
        response = client.post("/api/inventory/corrections", json={
            "location_id": branch.id,
            "variation_id": cable_variation.id,
            "physical_count": 1,
            "reason": "Count",
        }, headers=cashier_headers)

        assert response.status_code == 403
        assert response.json["required_permission"] == "CREATE_INVENTORY_CORRECTION"

    def test_bulk_approve(self, client, stock, warehouse_user, admin_headers, warehouse, cable_variation):
        correction = _count(warehouse_user, warehouse, cable_variation, "45")
        headers = auth_headers(get_auth_token(client, warehouse_user.username))

        refused = client.post(
            "/api/inventory/corrections/bulk-approve",
            json={"correction_ids": [correction.id]},
            headers=headers,
        )
        assert refused.status_code == 403

        response = client.post(
            "/api/inventory/corrections/bulk-approve",
            json={"correctionIds": [correction.id]},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json == {"approved": [correction.id], "failed": []}
        assert level(cable_variation, warehouse) == Decimal("45")
