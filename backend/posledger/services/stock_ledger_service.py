# Overview: Service-layer operations for the stock ledger; atomic per-location quantity changes.

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import StockLevel, StockMovement, ProductVariation, Location
from posledger.quantities import format_quantity, quantize_quantity
from posledger.validation import ValidationError
from .errors import InsufficientStock

"""
Stock ledger invariants

- StockLevel.quantity_available is only changed here, never by callers.
- A debit is a single guarded UPDATE (... WHERE quantity_available >= :qty),
  so check-and-debit cannot be split by a concurrent writer.
- Every change writes exactly one StockMovement whose quantity_delta matches
  the change; the sum of movements for a (variation, location) equals its
  quantity_available.
- Replaying a (reference_type, reference_id, reference_line_id, type) key
  returns the original movement and changes nothing.
- Nothing here commits; callers own the transaction.
"""

MOVEMENT_OPENING = "opening"
MOVEMENT_PURCHASE = "purchase"
MOVEMENT_SALE = "sale"
MOVEMENT_SALE_VOID = "sale_void"
MOVEMENT_TRANSFER_OUT = "transfer_out"
MOVEMENT_TRANSFER_IN = "transfer_in"
MOVEMENT_ADJUSTMENT = "adjustment"

TRANSFER_TYPES = {MOVEMENT_TRANSFER_OUT, MOVEMENT_TRANSFER_IN}


def get_available(variation_id: int, location_id: int) -> Decimal:
    value = (
        db.session.query(StockLevel.quantity_available)
        .filter_by(variation_id=variation_id, location_id=location_id)
        .scalar()
    )
    return quantize_quantity(value or 0)


def _find_movement(
    *,
    variation_id: int,
    location_id: int,
    movement_type: str,
    reference_type: str,
    reference_id: int,
    reference_line_id: int,
) -> StockMovement | None:
    return (
        db.session.query(StockMovement)
        .filter_by(
            variation_id=variation_id,
            location_id=location_id,
            movement_type=movement_type,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_line_id=reference_line_id,
        )
        .first()
    )


def _record_movement(
    *,
    variation_id: int,
    location_id: int,
    movement_type: str,
    delta: Decimal,
    reference_type: str,
    reference_id: int,
    reference_line_id: int,
    user_id: int | None,
    note: str | None,
) -> StockMovement:
    movement = StockMovement(
        variation_id=variation_id,
        location_id=location_id,
        movement_type=movement_type,
        quantity_delta=delta,
        balance_after=get_available(variation_id, location_id),
        reference_type=reference_type,
        reference_id=reference_id,
        reference_line_id=reference_line_id,
        user_id=user_id,
        note=note,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _check_quantity(qty) -> Decimal:
    qty = quantize_quantity(qty)
    if qty <= 0:
        raise ValidationError("Ledger quantity must be positive")
    return qty


def reserve_and_debit(
    variation_id: int,
    location_id: int,
    qty,
    *,
    reference_type: str,
    reference_id: int,
    reference_line_id: int | None = None,
    movement_type: str = MOVEMENT_SALE,
    user_id: int | None = None,
    product_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Remove qty from a location's available stock.

    Raises InsufficientStock (with "Available: N") when the location holds
    less than qty. The balance is never read and written in separate steps.
    """
    qty = _check_quantity(qty)
    line_id = reference_line_id or 0

    existing = _find_movement(
        variation_id=variation_id,
        location_id=location_id,
        movement_type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_line_id=line_id,
    )
    if existing is not None:
        return existing

    stmt = (
        update(StockLevel)
        .where(
            StockLevel.variation_id == variation_id,
            StockLevel.location_id == location_id,
            StockLevel.quantity_available >= qty,
        )
        .values(quantity_available=StockLevel.quantity_available - qty)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        available = get_available(variation_id, location_id)
        item = product_id if product_id is not None else _product_id_for(variation_id)
        raise InsufficientStock(
            f"Insufficient stock for item {item}. "
            f"Available: {format_quantity(available)}, Required: {format_quantity(qty)}",
            details={
                "product_id": item,
                "variation_id": variation_id,
                "location_id": location_id,
                "available": format_quantity(available),
                "required": format_quantity(qty),
            },
        )

    return _record_movement(
        variation_id=variation_id,
        location_id=location_id,
        movement_type=movement_type,
        delta=-qty,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_line_id=line_id,
        user_id=user_id,
        note=note,
    )


def credit(
    variation_id: int,
    location_id: int,
    qty,
    *,
    reference_type: str,
    reference_id: int,
    movement_type: str,
    reference_line_id: int | None = None,
    user_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """Add qty to a location's available stock, creating the level row if needed."""
    qty = _check_quantity(qty)
    line_id = reference_line_id or 0

    existing = _find_movement(
        variation_id=variation_id,
        location_id=location_id,
        movement_type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_line_id=line_id,
    )
    if existing is not None:
        return existing

    stmt = (
        update(StockLevel)
        .where(
            StockLevel.variation_id == variation_id,
            StockLevel.location_id == location_id,
        )
        .values(quantity_available=StockLevel.quantity_available + qty)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(
                    StockLevel(variation_id=variation_id, location_id=location_id, quantity_available=qty)
                )
        except IntegrityError:
            # Another transaction created the row first
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    return _record_movement(
        variation_id=variation_id,
        location_id=location_id,
        movement_type=movement_type,
        delta=qty,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_line_id=line_id,
        user_id=user_id,
        note=note,
    )


def _product_id_for(variation_id: int) -> int | None:
    return (
        db.session.query(ProductVariation.product_id)
        .filter_by(id=variation_id)
        .scalar()
    )


def list_levels(
    *,
    org_id: int | None = None,
    variation_id: int | None = None,
    location_id: int | None = None,
) -> list[StockLevel]:
    query = db.session.query(StockLevel)
    if org_id is not None:
        query = query.join(Location, Location.id == StockLevel.location_id).filter(Location.org_id == org_id)
    if variation_id is not None:
        query = query.filter(StockLevel.variation_id == variation_id)
    if location_id is not None:
        query = query.filter(StockLevel.location_id == location_id)
    return query.order_by(StockLevel.variation_id, StockLevel.location_id).all()


def list_movements(
    *,
    org_id: int | None = None,
    variation_id: int | None = None,
    location_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    limit: int = 200,
) -> list[StockMovement]:
    query = db.session.query(StockMovement)
    if org_id is not None:
        query = query.join(Location, Location.id == StockMovement.location_id).filter(Location.org_id == org_id)
    if variation_id is not None:
        query = query.filter(StockMovement.variation_id == variation_id)
    if location_id is not None:
        query = query.filter(StockMovement.location_id == location_id)
    if reference_type:
        query = query.filter(StockMovement.reference_type == reference_type)
    if reference_id is not None:
        query = query.filter(StockMovement.reference_id == reference_id)
    return query.order_by(StockMovement.id.desc()).limit(min(limit, 1000)).all()
