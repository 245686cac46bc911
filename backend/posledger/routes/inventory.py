# Overview: Flask API routes for inventory operations; stock levels, receipts, movements, reconciliation and corrections.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_permission
from ..services import correction_service, inventory_service, reconciliation_service, stock_ledger_service
from ..validation import (
    ValidationError,
    optional_text,
    parse_amount_cents,
    parse_id,
    parse_id_list,
    parse_optional_id,
    parse_quantity,
    pick,
    require_text,
)
from .errors import error_response


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _parse_serials(values) -> list[dict]:
    """Accept ["SN1", ...] or [{"serial_number": "SN1", "imei": ..., "condition": ...}, ...]."""
    if values is None:
        return []
    if not isinstance(values, list):
        raise ValidationError("serials must be a list")
    parsed = []
    for value in values:
        if isinstance(value, str):
            parsed.append({"serial_number": value})
        elif isinstance(value, dict):
            parsed.append({
                "serial_number": pick(value, "serial_number", "serialNumber"),
                "imei": pick(value, "imei"),
                "condition": pick(value, "condition"),
            })
        else:
            raise ValidationError("serials entries must be strings or objects")
    return parsed


@inventory_bp.get("/stock")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_stock_route():
    """
    Stock levels, optionally filtered.

    Query params: variation_id, location_id
    """
    try:
        variation_id = parse_optional_id(request.args.get("variation_id"), "variation_id")
        location_id = parse_optional_id(request.args.get("location_id"), "location_id")
        if location_id is not None:
            inventory_service.get_location(location_id, org_id=g.org_id)

        levels = stock_ledger_service.list_levels(
            org_id=g.org_id,
            variation_id=variation_id,
            location_id=location_id,
        )
        return jsonify({"stock": [level.to_dict() for level in levels]}), 200
    except Exception as e:
        return error_response(e, "list stock levels")


@inventory_bp.post("/receive")
@require_auth
@require_permission("RECEIVE_INVENTORY")
def receive_stock_route():
    """
    Receive stock from outside the organization.

    Request body:
    {
        "location_id": int,
        "variation_id": int | "product_id": int,
        "quantity": number,
        "receipt_type": "purchase" | "opening",
        "unit_cost": number (optional),
        "serials": ["SN1", ...] (required for serialized products),
        "supplier_reference": str (optional),
        "client_reference": str (optional, makes the request idempotent)
    }

    Returns:
        201: Receipt recorded
        200: Replay of an earlier client_reference
        400: Invalid request
    """
    data = request.get_json(silent=True) or {}

    try:
        unit_cost = pick(data, "unit_cost", "unitCost")
        receipt, created = inventory_service.receive_stock(
            location_id=parse_id(pick(data, "location_id", "locationId"), "location_id"),
            variation_id=parse_optional_id(pick(data, "variation_id", "variationId"), "variation_id"),
            product_id=parse_optional_id(pick(data, "product_id", "productId"), "product_id"),
            quantity=parse_quantity(pick(data, "quantity")),
            receipt_type=pick(data, "receipt_type", "receiptType", default="purchase"),
            unit_cost_cents=parse_amount_cents(unit_cost, "unit_cost") if unit_cost is not None else None,
            serials=_parse_serials(pick(data, "serials", "serialNumbers")),
            supplier_reference=optional_text(pick(data, "supplier_reference", "supplierReference"), max_length=128),
            client_reference=optional_text(pick(data, "client_reference", "clientReference"), max_length=64),
            notes=optional_text(data.get("notes")),
            user_id=g.current_user.id,
        )
        return jsonify({"receipt": receipt.to_dict()}), 201 if created else 200
    except Exception as e:
        return error_response(e, "receive stock")


@inventory_bp.get("/movements")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_movements_route():
    """
    Stock movement history, newest first.

    Query params: variation_id, location_id, reference_type, reference_id, limit
    """
    try:
        location_id = parse_optional_id(request.args.get("location_id"), "location_id")
        if location_id is not None:
            inventory_service.get_location(location_id, org_id=g.org_id)
        movements = stock_ledger_service.list_movements(
            org_id=g.org_id,
            variation_id=parse_optional_id(request.args.get("variation_id"), "variation_id"),
            location_id=location_id,
            reference_type=request.args.get("reference_type"),
            reference_id=parse_optional_id(request.args.get("reference_id"), "reference_id"),
            limit=request.args.get("limit", 200, type=int),
        )
        return jsonify({"movements": [m.to_dict() for m in movements]}), 200
    except Exception as e:
        return error_response(e, "list stock movements")


@inventory_bp.get("/reconciliation")
@require_auth
@require_permission("VIEW_INVENTORY")
def reconciliation_route():
    try:
        report = reconciliation_service.reconcile(
            org_id=g.org_id,
            variation_id=parse_optional_id(request.args.get("variation_id"), "variation_id"),
        )
        return jsonify(report), 200
    except Exception as e:
        return error_response(e, "reconcile stock")


# ============================================================================
# Inventory corrections
# ============================================================================


@inventory_bp.get("/corrections")
@require_auth
@require_permission("VIEW_INVENTORY")
def list_corrections_route():
    """Query params: status (pending | approved | rejected), location_id, limit"""
    try:
        corrections = correction_service.list_corrections(
            org_id=g.org_id,
            status=request.args.get("status"),
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"corrections": [c.to_dict() for c in corrections]}), 200
    except Exception as e:
        return error_response(e, "list inventory corrections")


@inventory_bp.post("/corrections")
@require_auth
@require_permission("CREATE_INVENTORY_CORRECTION")
def create_correction_route():
    """
    Record a physical count that differs from system stock.

    Request body:
    {
        "location_id": int,
        "variation_id": int | "product_id": int,
        "physical_count": number (>= 0),
        "reason": str,
        "serial_number_ids": [int] (serialized products: the units to write off),
        "remarks": str (optional)
    }

    Returns:
        201: Correction pending approval
        400: Invalid request, no difference, wrong unit count
    """
    data = request.get_json(silent=True) or {}

    try:
        correction = correction_service.create_correction(
            parse_id(pick(data, "location_id", "locationId"), "location_id"),
            user_id=g.current_user.id,
            variation_id=parse_optional_id(pick(data, "variation_id", "variationId"), "variation_id"),
            product_id=parse_optional_id(pick(data, "product_id", "productId"), "product_id"),
            physical_count=parse_quantity(pick(data, "physical_count", "physicalCount"), "physical_count", allow_zero=True),
            reason=require_text(pick(data, "reason"), "reason", max_length=255),
            serial_number_ids=parse_id_list(pick(data, "serial_number_ids", "serialNumberIds"), "serial_number_ids"),
            remarks=optional_text(data.get("remarks")),
        )
        return jsonify({"correction": correction.to_dict()}), 201
    except Exception as e:
        return error_response(e, "create inventory correction")


@inventory_bp.post("/corrections/<int:correction_id>/approve")
@require_auth
@require_permission("APPROVE_INVENTORY_CORRECTION")
def approve_correction_route(correction_id: int):
    """Applies the counted difference to stock. The requester can never approve."""
    try:
        correction = correction_service.approve_correction(correction_id, user_id=g.current_user.id)
        return jsonify({"correction": correction.to_dict()}), 200
    except Exception as e:
        return error_response(e, "approve inventory correction")


@inventory_bp.post("/corrections/<int:correction_id>/reject")
@require_auth
@require_permission("APPROVE_INVENTORY_CORRECTION")
def reject_correction_route(correction_id: int):
    """Body: {"reason": str} (required)."""
    data = request.get_json(silent=True) or {}
    try:
        correction = correction_service.reject_correction(
            correction_id,
            user_id=g.current_user.id,
            reason=optional_text(pick(data, "reason", "rejectionReason")) or "",
        )
        return jsonify({"correction": correction.to_dict()}), 200
    except Exception as e:
        return error_response(e, "reject inventory correction")


@inventory_bp.post("/corrections/bulk-approve")
@require_auth
@require_permission("APPROVE_INVENTORY_CORRECTION")
def bulk_approve_corrections_route():
    """
    Body: {"correction_ids": [int]}

    Each correction is approved in its own transaction; failures are
    listed with their error and do not stop the rest.
    """
    data = request.get_json(silent=True) or {}
    try:
        result = correction_service.bulk_approve(
            parse_id_list(pick(data, "correction_ids", "correctionIds"), "correction_ids"),
            user_id=g.current_user.id,
        )
        return jsonify(result), 200
    except Exception as e:
        return error_response(e, "bulk approve inventory corrections")
