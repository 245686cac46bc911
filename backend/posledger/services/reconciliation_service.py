# Overview: Service-layer operations for stock reconciliation; read-only consistency checks.

"""
Reconciliation

Stock is conserved per variation:

    sum(levels) + in_transit == external_inbound - external_outbound + transfer_variance

- external movements are every movement that is not transfer_out/transfer_in
- in_transit is the sent quantity of transfers that deducted stock and have
  not completed
- transfer_variance is received - sent over completed transfers

Per (variation, location) the level must also equal the sum of its movement
deltas, and for serialized products the number of in_stock units there.
Nothing here writes.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from sqlalchemy import case, func

from ..extensions import db
from ..models import (
    Product,
    ProductVariation,
    SerializedUnit,
    StockLevel,
    StockMovement,
    Transfer,
    TransferItem,
)
from ..models.serials import UNIT_STATUS_IN_STOCK, UNIT_STATUS_IN_TRANSIT
from posledger.quantities import format_quantity, quantize_quantity
from . import serial_service
from .stock_ledger_service import TRANSFER_TYPES
from .transfer_states import TransferStatus

ZERO = Decimal("0")


def _variation_ids(org_id: int | None, variation_id: int | None) -> list[int]:
    query = db.session.query(ProductVariation.id).join(Product, Product.id == ProductVariation.product_id)
    if org_id is not None:
        query = query.filter(Product.org_id == org_id)
    if variation_id is not None:
        query = query.filter(ProductVariation.id == variation_id)
    return [vid for (vid,) in query.order_by(ProductVariation.id).all()]


def _location_checks(variation_ids: list[int]) -> dict[int, list[dict]]:
    levels = (
        db.session.query(StockLevel.variation_id, StockLevel.location_id, StockLevel.quantity_available)
        .filter(StockLevel.variation_id.in_(variation_ids))
        .all()
    )
    movement_sums = {
        (vid, lid): quantize_quantity(total or 0)
        for vid, lid, total in (
            db.session.query(
                StockMovement.variation_id,
                StockMovement.location_id,
                func.sum(StockMovement.quantity_delta),
            )
            .filter(StockMovement.variation_id.in_(variation_ids))
            .group_by(StockMovement.variation_id, StockMovement.location_id)
            .all()
        )
    }
    serial_counts = {
        (vid, lid): count
        for vid, lid, count in (
            db.session.query(
                SerializedUnit.variation_id,
                SerializedUnit.current_location_id,
                func.count(SerializedUnit.id),
            )
            .join(Product, Product.id == SerializedUnit.product_id)
            .filter(
                SerializedUnit.variation_id.in_(variation_ids),
                SerializedUnit.status == UNIT_STATUS_IN_STOCK,
                Product.enable_serial.is_(True),
            )
            .group_by(SerializedUnit.variation_id, SerializedUnit.current_location_id)
            .all()
        )
    }
    serial_variations = {
        vid
        for (vid,) in db.session.query(ProductVariation.id)
        .join(Product, Product.id == ProductVariation.product_id)
        .filter(ProductVariation.id.in_(variation_ids), Product.enable_serial.is_(True))
        .all()
    }

    checks: dict[int, list[dict]] = defaultdict(list)
    pairs = {(vid, lid) for vid, lid, _ in levels} | set(movement_sums)
    level_by_pair = {(vid, lid): quantize_quantity(qty or 0) for vid, lid, qty in levels}
    for vid, lid in sorted(pairs):
        available = level_by_pair.get((vid, lid), ZERO)
        movement_sum = movement_sums.get((vid, lid), ZERO)
        entry = {
            "location_id": lid,
            "quantity_available": format_quantity(available),
            "movement_sum": format_quantity(movement_sum),
            "balanced": available == movement_sum,
        }
        if vid in serial_variations:
            units = serial_counts.get((vid, lid), 0)
            entry["serial_units_in_stock"] = units
            entry["balanced"] = entry["balanced"] and Decimal(units) == available
        checks[vid].append(entry)
    return checks


def _external_totals(variation_ids: list[int]) -> dict[int, tuple[Decimal, Decimal]]:
    rows = (
        db.session.query(
            StockMovement.variation_id,
            func.sum(case((StockMovement.quantity_delta > 0, StockMovement.quantity_delta), else_=0)),
            func.sum(case((StockMovement.quantity_delta < 0, -StockMovement.quantity_delta), else_=0)),
        )
        .filter(
            StockMovement.variation_id.in_(variation_ids),
            StockMovement.movement_type.notin_(TRANSFER_TYPES),
        )
        .group_by(StockMovement.variation_id)
        .all()
    )
    return {vid: (quantize_quantity(inbound or 0), quantize_quantity(outbound or 0)) for vid, inbound, outbound in rows}


def _transfer_totals(variation_ids: list[int]) -> tuple[dict[int, Decimal], dict[int, Decimal], list[dict]]:
    rows = (
        db.session.query(TransferItem, Transfer.status, Transfer.transfer_number)
        .join(Transfer, Transfer.id == TransferItem.transfer_id)
        .filter(
            TransferItem.variation_id.in_(variation_ids),
            Transfer.stock_deducted.is_(True),
        )
        .all()
    )
    in_transit: dict[int, Decimal] = defaultdict(lambda: ZERO)
    variance: dict[int, Decimal] = defaultdict(lambda: ZERO)
    not_received: list[dict] = []
    for item, status, number in rows:
        if status == TransferStatus.COMPLETED.value:
            received = quantize_quantity(item.received_quantity or 0)
            variance[item.variation_id] += received - quantize_quantity(item.quantity)
            missing = set(item.serial_number_ids or []) - set(item.received_serial_number_ids or [])
            if missing:
                still_moving = (
                    db.session.query(SerializedUnit.id)
                    .filter(SerializedUnit.id.in_(missing), SerializedUnit.status == UNIT_STATUS_IN_TRANSIT)
                    .all()
                )
                for (unit_id,) in still_moving:
                    not_received.append({"serial_number_id": unit_id, "transfer_number": number})
        else:
            in_transit[item.variation_id] += quantize_quantity(item.quantity)
    return in_transit, variance, not_received


def reconcile(*, org_id: int | None = None, variation_id: int | None = None) -> dict:
    """
    Build the reconciliation report.

    Returns {"balanced", "variations": [...], "units_not_received": [...],
    "invalid_unit_movements"}; balanced is True only when every variation
    and location balances and no unit movement lacks a real unit.
    """
    variation_ids = _variation_ids(org_id, variation_id)
    location_checks = _location_checks(variation_ids) if variation_ids else {}
    external = _external_totals(variation_ids) if variation_ids else {}
    in_transit, variance, not_received = _transfer_totals(variation_ids) if variation_ids else ({}, {}, [])

    variations = []
    for vid in variation_ids:
        locations = location_checks.get(vid, [])
        levels_total = sum((quantize_quantity(entry["quantity_available"]) for entry in locations), ZERO)
        inbound, outbound = external.get(vid, (ZERO, ZERO))
        transit = in_transit.get(vid, ZERO)
        var = variance.get(vid, ZERO)
        expected = inbound - outbound + var
        if not locations and not inbound and not outbound and not transit:
            continue
        balanced = (levels_total + transit == expected) and all(entry["balanced"] for entry in locations)
        variations.append({
            "variation_id": vid,
            "levels_total": format_quantity(levels_total),
            "in_transit": format_quantity(transit),
            "external_inbound": format_quantity(inbound),
            "external_outbound": format_quantity(outbound),
            "transfer_variance": format_quantity(var),
            "expected_total": format_quantity(expected),
            "balanced": balanced,
            "locations": locations,
        })

    invalid_movements = serial_service.count_invalid_movements()
    return {
        "balanced": all(v["balanced"] for v in variations) and invalid_movements == 0,
        "variations": variations,
        "units_not_received": not_received,
        "invalid_unit_movements": invalid_movements,
    }
