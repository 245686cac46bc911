# Overview: Service-layer operations for serialized units; lifecycle transitions and movement history.

"""
Serialized-unit registry.

Sales move units in_stock -> sold and voids move them back. Transfers pass
them through in_transit; an approved inventory correction writes them off
as damaged. Every transition here appends exactly one UnitMovement per
unit, carrying the unit's real id. Functions flush but never commit; the
calling service owns the transaction.
"""

from __future__ import annotations

from typing import Iterable

from ..extensions import db
from ..models import SerializedUnit, UnitMovement, Sale, Transfer, InventoryCorrection
from ..models.serials import (
    UNIT_STATUS_IN_STOCK,
    UNIT_STATUS_SOLD,
    UNIT_STATUS_IN_TRANSIT,
    UNIT_STATUS_DAMAGED,
    UNIT_CONDITIONS,
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_SALE_VOID,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_TYPES,
)
from posledger.time_utils import utcnow
from posledger.validation import ValidationError, validate_serial_number
from .concurrency import lock_for_update
from .errors import UnitNotAvailable, UnitMovementIntegrityError, RecordNotFound


def _append_movement(
    unit: SerializedUnit,
    movement_type: str,
    *,
    from_location_id: int | None,
    to_location_id: int | None,
    reference_type: str,
    reference_id: int | None,
    user_id: int | None,
    notes: str | None = None,
) -> UnitMovement:
    if unit is None or not unit.id or unit.id <= 0:
        raise UnitMovementIntegrityError(
            f"Refusing to record {movement_type} movement without a unit id"
        )
    if movement_type not in MOVEMENT_TYPES:
        raise UnitMovementIntegrityError(
            f"Unknown unit movement type: {movement_type}",
            details={"movement_type": movement_type},
        )
    movement = UnitMovement(
        serial_number_id=unit.id,
        movement_type=movement_type,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        reference_type=reference_type,
        reference_id=reference_id,
        moved_by=user_id,
        notes=notes,
        moved_at=utcnow(),
    )
    db.session.add(movement)
    return movement


def _load_units(unit_ids: Iterable[int]) -> list[SerializedUnit]:
    """Lock and return units in the order requested; missing ids are omitted."""
    ids = list(unit_ids)
    if not ids:
        return []
    rows = lock_for_update(
        db.session.query(SerializedUnit).filter(SerializedUnit.id.in_(ids))
    ).all()
    by_id = {unit.id: unit for unit in rows}
    return [by_id[i] for i in ids if i in by_id]


def check_available(
    unit_ids: Iterable[int],
    *,
    location_id: int,
    variation_id: int | None = None,
    purpose: str = "sale",
) -> list[SerializedUnit]:
    """
    Return the units if every one is in_stock at location_id.

    Raises UnitNotAvailable naming the first id that is missing, sold,
    in transit, held elsewhere or of another variation.
    """
    ids = list(unit_ids)
    units = {unit.id: unit for unit in _load_units(ids)}
    for unit_id in ids:
        unit = units.get(unit_id)
        if (
            unit is None
            or unit.status != UNIT_STATUS_IN_STOCK
            or unit.current_location_id != location_id
            or (variation_id is not None and unit.variation_id != variation_id)
        ):
            raise UnitNotAvailable(
                f"Serial number {unit_id} not available for {purpose}",
                details={"serial_number_id": unit_id, "location_id": location_id},
            )
    return [units[i] for i in ids]


def register_units(
    *,
    org_id: int,
    product_id: int,
    variation_id: int,
    location_id: int,
    serials: list[dict],
    user_id: int | None,
    reference_type: str,
    reference_id: int | None,
    unit_cost_cents: int | None = None,
) -> list[SerializedUnit]:
    """
    Create in_stock units at goods receipt, one purchase movement each.

    serials: [{"serial_number": "...", "imei": "...", "condition": "new"}]
    """
    seen: set[str] = set()
    prepared = []
    for entry in serials:
        serial = validate_serial_number(entry.get("serial_number"))
        if serial in seen:
            raise ValidationError(f"Duplicate serial number in request: {serial}")
        seen.add(serial)
        condition = entry.get("condition") or "new"
        if condition not in UNIT_CONDITIONS:
            raise ValidationError(f"Invalid condition: {condition}")
        imei = (entry.get("imei") or "").strip() or None
        prepared.append((serial, imei, condition))

    if seen:
        existing = (
            db.session.query(SerializedUnit.serial_number)
            .filter(SerializedUnit.org_id == org_id, SerializedUnit.serial_number.in_(seen))
            .first()
        )
        if existing:
            raise ValidationError(f"Serial number {existing[0]} already exists")

    units = []
    for serial, imei, condition in prepared:
        unit = SerializedUnit(
            org_id=org_id,
            product_id=product_id,
            variation_id=variation_id,
            serial_number=serial,
            imei=imei,
            status=UNIT_STATUS_IN_STOCK,
            condition=condition,
            current_location_id=location_id,
            purchase_cost_cents=unit_cost_cents,
        )
        db.session.add(unit)
        units.append(unit)
    db.session.flush()

    for unit in units:
        _append_movement(
            unit,
            MOVEMENT_PURCHASE,
            from_location_id=None,
            to_location_id=location_id,
            reference_type=reference_type,
            reference_id=reference_id,
            user_id=user_id,
        )
    db.session.flush()
    return units


def allocate(
    unit_ids: list[int],
    sale: Sale,
    sold_to: str,
    *,
    variation_id: int | None = None,
    user_id: int | None = None,
) -> list[SerializedUnit]:
    """Mark units sold under sale; each must be in_stock at the sale's location."""
    units = check_available(unit_ids, location_id=sale.location_id, variation_id=variation_id)
    now = utcnow()
    for unit in units:
        unit.status = UNIT_STATUS_SOLD
        unit.sale_id = sale.id
        unit.sold_at = now
        unit.sold_to = sold_to
        _append_movement(
            unit,
            MOVEMENT_SALE,
            from_location_id=sale.location_id,
            to_location_id=None,
            reference_type="sale",
            reference_id=sale.id,
            user_id=user_id,
            notes=f"Sold on {sale.invoice_number}",
        )
    db.session.flush()
    return units


def release(unit_ids: list[int], sale: Sale, *, user_id: int | None = None) -> list[SerializedUnit]:
    """
    Return units sold under sale to stock at the sale's location.

    A unit that is no longer sold under this sale (for example after some
    later return) cannot be released by a void.
    """
    ids = list(unit_ids)
    units = {unit.id: unit for unit in _load_units(ids)}
    for unit_id in ids:
        unit = units.get(unit_id)
        if unit is None or unit.status != UNIT_STATUS_SOLD or unit.sale_id != sale.id:
            raise UnitNotAvailable(
                f"Serial number {unit_id} is no longer sold under {sale.invoice_number} and cannot be restored",
                details={"serial_number_id": unit_id, "sale_id": sale.id},
            )

    for unit_id in ids:
        unit = units[unit_id]
        unit.status = UNIT_STATUS_IN_STOCK
        unit.sale_id = None
        unit.sold_at = None
        unit.sold_to = None
        unit.current_location_id = sale.location_id
        _append_movement(
            unit,
            MOVEMENT_SALE_VOID,
            from_location_id=None,
            to_location_id=sale.location_id,
            reference_type="sale",
            reference_id=sale.id,
            user_id=user_id,
            notes=f"Restored by void of {sale.invoice_number}",
        )
    db.session.flush()
    return [units[i] for i in ids]


def dispatch(
    unit_ids: list[int],
    transfer: Transfer,
    *,
    variation_id: int | None = None,
    user_id: int | None = None,
) -> list[SerializedUnit]:
    """in_stock at the origin -> in_transit."""
    units = check_available(
        unit_ids,
        location_id=transfer.from_location_id,
        variation_id=variation_id,
        purpose="transfer",
    )
    for unit in units:
        unit.status = UNIT_STATUS_IN_TRANSIT
        unit.current_location_id = None
        _append_movement(
            unit,
            MOVEMENT_TRANSFER_OUT,
            from_location_id=transfer.from_location_id,
            to_location_id=transfer.to_location_id,
            reference_type="transfer",
            reference_id=transfer.id,
            user_id=user_id,
        )
    db.session.flush()
    return units


def write_off(
    unit_ids: list[int],
    correction: InventoryCorrection,
    *,
    user_id: int | None = None,
) -> list[SerializedUnit]:
    """in_stock at the correction's location -> damaged, one adjustment movement each."""
    units = check_available(
        unit_ids,
        location_id=correction.location_id,
        variation_id=correction.variation_id,
        purpose="write-off",
    )
    for unit in units:
        unit.status = UNIT_STATUS_DAMAGED
        _append_movement(
            unit,
            MOVEMENT_ADJUSTMENT,
            from_location_id=correction.location_id,
            to_location_id=None,
            reference_type="inventory_correction",
            reference_id=correction.id,
            user_id=user_id,
            notes=correction.reason,
        )
    db.session.flush()
    return units


def _settle_in_transit(
    unit_ids: list[int],
    transfer: Transfer,
    *,
    location_id: int,
    movement_type: str,
    user_id: int | None,
    notes: str | None = None,
) -> list[SerializedUnit]:
    ids = list(unit_ids)
    units = {unit.id: unit for unit in _load_units(ids)}
    for unit_id in ids:
        unit = units.get(unit_id)
        if unit is None or unit.status != UNIT_STATUS_IN_TRANSIT:
            raise UnitNotAvailable(
                f"Serial number {unit_id} is not in transit",
                details={"serial_number_id": unit_id, "transfer_id": transfer.id},
            )

    for unit_id in ids:
        unit = units[unit_id]
        unit.status = UNIT_STATUS_IN_STOCK
        unit.current_location_id = location_id
        _append_movement(
            unit,
            movement_type,
            from_location_id=transfer.from_location_id,
            to_location_id=location_id,
            reference_type="transfer",
            reference_id=transfer.id,
            user_id=user_id,
            notes=notes,
        )
    db.session.flush()
    return [units[i] for i in ids]


def receive(unit_ids: list[int], transfer: Transfer, *, user_id: int | None = None) -> list[SerializedUnit]:
    """in_transit -> in_stock at the destination."""
    return _settle_in_transit(
        unit_ids,
        transfer,
        location_id=transfer.to_location_id,
        movement_type=MOVEMENT_TRANSFER_IN,
        user_id=user_id,
    )


def get_unit(unit_id: int, *, org_id: int | None = None) -> SerializedUnit:
    unit = db.session.get(SerializedUnit, unit_id)
    if unit is None or (org_id is not None and unit.org_id != org_id):
        raise RecordNotFound(f"Serial number {unit_id} not found")
    return unit


def get_unit_history(unit_id: int, *, org_id: int | None = None) -> dict:
    unit = get_unit(unit_id, org_id=org_id)
    movements = (
        db.session.query(UnitMovement)
        .filter_by(serial_number_id=unit.id)
        .order_by(UnitMovement.id)
        .all()
    )
    data = unit.to_dict()
    data["movements"] = [m.to_dict() for m in movements]
    return data


def list_units(
    *,
    org_id: int,
    variation_id: int | None = None,
    location_id: int | None = None,
    status: str | None = None,
    search: str | None = None,
    limit: int = 200,
) -> list[SerializedUnit]:
    query = db.session.query(SerializedUnit).filter(SerializedUnit.org_id == org_id)
    if variation_id is not None:
        query = query.filter(SerializedUnit.variation_id == variation_id)
    if location_id is not None:
        query = query.filter(SerializedUnit.current_location_id == location_id)
    if status:
        query = query.filter(SerializedUnit.status == status)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            db.or_(SerializedUnit.serial_number.ilike(pattern), SerializedUnit.imei.ilike(pattern))
        )
    return query.order_by(SerializedUnit.id).limit(min(limit, 1000)).all()


def count_invalid_movements() -> int:
    """Movements whose unit reference is null, zero or dangling."""
    return (
        db.session.query(UnitMovement)
        .outerjoin(SerializedUnit, SerializedUnit.id == UnitMovement.serial_number_id)
        .filter(
            db.or_(
                UnitMovement.serial_number_id.is_(None),
                UnitMovement.serial_number_id <= 0,
                SerializedUnit.id.is_(None),
            )
        )
        .count()
    )
