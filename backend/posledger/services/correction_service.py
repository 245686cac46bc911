# Overview: Service-layer operations for inventory corrections; counted stock, approval and write-offs.

"""
Inventory corrections

A correction records a physical count for one variation at one location.
Nothing moves until it is approved:

1. pending: requested with the counted quantity (system count snapshotted)
2. approved: by someone other than the requester; the counted difference
   reaches the ledger as one `adjustment` movement
3. rejected: closed with a reason, no ledger effect

The difference is fixed when the count is recorded, so sales made between
the count and the approval are not undone. Serialized stock is corrected
downward only, and exactly the units named on the correction are written
off.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import InventoryCorrection, Location, User
from posledger.quantities import format_quantity, quantize_quantity
from posledger.time_utils import utcnow
from posledger.validation import ValidationError
from . import audit_service, serial_service, stock_ledger_service
from .concurrency import begin_write, commit_write, lock_for_update, run_with_retry
from .errors import InvalidTransition, InventoryError, RecordNotFound, SerialCountMismatch, SeparationOfDutiesError
from .inventory_service import get_location, resolve_variation
from .permission_service import PermissionDeniedError, ensure_location_access, require_permission


STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"


def _load_for_update(correction_id: int, user_id: int) -> InventoryCorrection:
    correction = lock_for_update(
        db.session.query(InventoryCorrection).filter_by(id=correction_id)
    ).first()
    user = db.session.get(User, user_id)
    if correction is None or user is None or correction.location.org_id != user.org_id:
        raise RecordNotFound(f"Inventory correction {correction_id} not found")
    return correction


def _begin_review(correction_id: int, user_id: int, action: str) -> InventoryCorrection:
    """Lock a pending correction and check the reviewer may act on it."""
    begin_write()
    correction = _load_for_update(correction_id, user_id)
    require_permission(user_id, "APPROVE_INVENTORY_CORRECTION", resource=f"correction {correction.id}")
    ensure_location_access(user_id, correction.location_id, f"{action} inventory corrections")

    if correction.status != STATUS_PENDING:
        raise InvalidTransition(
            f"Cannot {action} inventory correction {correction.id} in status {correction.status}",
            details={"status": correction.status, "action": action},
        )
    if correction.created_by_user_id == user_id:
        current_app.logger.warning(
            "Separation of duties blocked %s on correction %s by user=%s",
            action,
            correction.id,
            user_id,
        )
        raise SeparationOfDutiesError(
            f"You cannot {action} an inventory correction you requested",
            details={"code": "SAME_USER_VIOLATION", "action": action},
        )
    return correction


def create_correction(
    location_id: int,
    *,
    user_id: int,
    physical_count,
    reason: str,
    variation_id: int | None = None,
    product_id: int | None = None,
    serial_number_ids: list[int] | None = None,
    remarks: str | None = None,
) -> InventoryCorrection:
    """
    Request a correction to the counted quantity.

    Serialized products must name exactly (system - physical) in-stock units
    to write off; counting more serialized stock than the system holds is
    refused, since new units only enter through receipts.

    Raises:
        ValidationError: negative count, no difference, missing reason
        SerialCountMismatch: wrong number of units for a serialized product
        UnitNotAvailable: a named unit is not in stock at the location
    """
    physical = quantize_quantity(physical_count)
    if physical < 0:
        raise ValidationError("physical_count cannot be negative")
    if not reason or not reason.strip():
        raise ValidationError("Correction reason is required")

    def _op():
        begin_write()

        user = db.session.get(User, user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found")
        require_permission(user_id, "CREATE_INVENTORY_CORRECTION")
        location = get_location(location_id, org_id=user.org_id)
        ensure_location_access(user_id, location.id, "correct inventory")

        variation = resolve_variation(org_id=user.org_id, variation_id=variation_id, product_id=product_id)
        product = variation.product

        system = stock_ledger_service.get_available(variation.id, location.id)
        difference = physical - system
        if difference == 0:
            raise ValidationError(
                f"Physical count matches system stock ({format_quantity(system)}); nothing to correct"
            )

        unit_ids = list(serial_number_ids or [])
        if product.enable_serial:
            if difference > 0:
                raise ValidationError(
                    f"Serialized product {product.sku} cannot be corrected upward; receive the units instead"
                )
            if Decimal(len(unit_ids)) != -difference:
                raise SerialCountMismatch(
                    f"Serial number count mismatch for item {product.id}. "
                    f"Expected: {format_quantity(-difference)}, Provided: {len(unit_ids)}",
                    details={"product_id": product.id, "expected": format_quantity(-difference), "provided": len(unit_ids)},
                )
            serial_service.check_available(
                unit_ids,
                location_id=location.id,
                variation_id=variation.id,
                purpose="write-off",
            )
        elif unit_ids:
            raise ValidationError(f"Product {product.sku} does not track serial numbers")

        correction = InventoryCorrection(
            location_id=location.id,
            product_id=product.id,
            variation_id=variation.id,
            system_count=system,
            physical_count=physical,
            difference=difference,
            serial_number_ids=unit_ids,
            reason=reason.strip(),
            remarks=remarks,
            status=STATUS_PENDING,
            created_by_user_id=user_id,
            created_at=utcnow(),
        )
        db.session.add(correction)
        db.session.flush()

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.CORRECTION_CREATE,
            entity_type="inventory_correction",
            entity_id=correction.id,
            description=(
                f"Inventory correction requested for {product.sku} at {location.name}: "
                f"system {format_quantity(system)}, counted {format_quantity(physical)}"
            ),
            details={
                "variation_id": variation.id,
                "location_id": location.id,
                "system_count": format_quantity(system),
                "physical_count": format_quantity(physical),
                "difference": format_quantity(difference),
                "reason": correction.reason,
            },
        )

        commit_write()
        current_app.logger.info(
            "Inventory correction %s requested: variation=%s location=%s difference=%s",
            correction.id,
            variation.id,
            location.id,
            difference,
        )
        return correction

    return run_with_retry(_op)


def approve_correction(correction_id: int, *, user_id: int) -> InventoryCorrection:
    """
    pending -> approved. Applies the counted difference to the ledger.

    Raises InsufficientStock when the location no longer holds the shortage,
    or UnitNotAvailable when a unit to write off was sold or moved.
    """
    def _op():
        correction = _begin_review(correction_id, user_id, "approve")
        delta = quantize_quantity(correction.difference)
        before = stock_ledger_service.get_available(correction.variation_id, correction.location_id)
        after = before + delta
        unit_ids = list(correction.serial_number_ids or [])

        if unit_ids:
            serial_service.write_off(unit_ids, correction, user_id=user_id)

        if delta < 0:
            movement = stock_ledger_service.reserve_and_debit(
                correction.variation_id,
                correction.location_id,
                -delta,
                reference_type="inventory_correction",
                reference_id=correction.id,
                movement_type=stock_ledger_service.MOVEMENT_ADJUSTMENT,
                user_id=user_id,
                product_id=correction.product_id,
                note=correction.reason,
            )
        else:
            movement = stock_ledger_service.credit(
                correction.variation_id,
                correction.location_id,
                delta,
                reference_type="inventory_correction",
                reference_id=correction.id,
                movement_type=stock_ledger_service.MOVEMENT_ADJUSTMENT,
                user_id=user_id,
                note=correction.reason,
            )

        correction.status = STATUS_APPROVED
        correction.applied_quantity = delta
        correction.stock_movement_id = movement.id
        correction.approved_by_user_id = user_id
        correction.approved_at = utcnow()

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.CORRECTION_APPROVE,
            entity_type="inventory_correction",
            entity_id=correction.id,
            entity_ids=unit_ids,
            description=(
                f"Inventory correction {correction.id} approved at {correction.location.name}. "
                f"Stock adjusted from {format_quantity(before)} to {format_quantity(after)}"
            ),
            details={
                "variation_id": correction.variation_id,
                "location_id": correction.location_id,
                "before": format_quantity(before),
                "after": format_quantity(after),
                "applied_quantity": format_quantity(delta),
                "stock_movement_id": correction.stock_movement_id,
            },
        )

        commit_write()
        current_app.logger.info(
            "Inventory correction %s approved by user=%s (applied %s)",
            correction.id,
            user_id,
            delta,
        )
        return correction

    return run_with_retry(_op)


def reject_correction(correction_id: int, *, user_id: int, reason: str) -> InventoryCorrection:
    """pending -> rejected with the reason stored; stock is untouched."""
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")

    def _op():
        correction = _begin_review(correction_id, user_id, "reject")
        correction.status = STATUS_REJECTED
        correction.rejected_by_user_id = user_id
        correction.rejected_at = utcnow()
        correction.rejection_reason = reason.strip()

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.CORRECTION_REJECT,
            entity_type="inventory_correction",
            entity_id=correction.id,
            description=f"Inventory correction {correction.id} rejected: {correction.rejection_reason}",
            details={"reason": correction.rejection_reason},
        )

        commit_write()
        current_app.logger.info("Inventory correction %s rejected by user=%s", correction.id, user_id)
        return correction

    return run_with_retry(_op)


def bulk_approve(correction_ids: list[int], *, user_id: int) -> dict:
    """
    Approve several corrections, each in its own transaction.

    One failing correction does not stop the others. Returns
    {"approved": [ids], "failed": [{"id", "error"}]}.
    """
    if not correction_ids:
        raise ValidationError("No correction IDs provided")

    approved: list[int] = []
    failed: list[dict] = []
    for correction_id in correction_ids:
        try:
            approve_correction(int(correction_id), user_id=user_id)
        except (InventoryError, ValidationError, PermissionDeniedError) as exc:
            current_app.logger.warning(
                "Bulk approval skipped correction %s: %s",
                correction_id,
                exc,
            )
            failed.append({"id": correction_id, "error": str(exc)})
        else:
            approved.append(int(correction_id))
    return {"approved": approved, "failed": failed}


def get_correction(correction_id: int, *, org_id: int | None = None) -> InventoryCorrection:
    correction = db.session.get(InventoryCorrection, correction_id)
    if correction is None or (org_id is not None and correction.location.org_id != org_id):
        raise RecordNotFound(f"Inventory correction {correction_id} not found")
    return correction


def list_corrections(
    *,
    org_id: int,
    status: str | None = None,
    location_id: int | None = None,
    limit: int = 100,
) -> list[InventoryCorrection]:
    query = (
        db.session.query(InventoryCorrection)
        .join(Location, Location.id == InventoryCorrection.location_id)
        .filter(Location.org_id == org_id)
    )
    if status:
        query = query.filter(InventoryCorrection.status == status)
    if location_id is not None:
        query = query.filter(InventoryCorrection.location_id == location_id)
    return query.order_by(InventoryCorrection.id.desc()).limit(min(limit, 500)).all()
