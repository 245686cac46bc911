# backend/posledger/routes/transfers.py
"""
Inter-location transfer API routes.

Each workflow step is its own POST endpoint; the service enforces the
transition table, location access and separation of duties.
"""
from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_permission
from ..services import transfer_service
from ..services.transfer_states import TransferStatus
from ..validation import (
    ValidationError,
    optional_text,
    parse_id,
    parse_id_list,
    parse_optional_id,
    parse_quantity,
    pick,
)
from .errors import error_response


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


def _transfer_json(transfer) -> dict:
    data = transfer.to_dict()
    data["available_actions"] = transfer_service.available_actions(transfer, g.current_user.id)
    return data


def _parse_items(values) -> list[dict]:
    if not isinstance(values, list) or not values:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, raw in enumerate(values):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        items.append({
            "product_id": parse_optional_id(pick(raw, "product_id", "productId"), "product_id"),
            "variation_id": parse_optional_id(
                pick(raw, "variation_id", "variationId", "productVariationId"),
                "variation_id",
            ),
            "quantity": parse_quantity(pick(raw, "quantity")),
            "serial_number_ids": parse_id_list(
                pick(raw, "serial_number_ids", "serialNumberIds"),
                "serial_number_ids",
            ),
        })
    return items


@transfers_bp.route("", methods=["POST"])
@require_auth
@require_permission("CREATE_TRANSFERS")
def create_transfer():
    """
    Create a draft transfer.

    Request body:
    {
        "from_location_id": int,
        "to_location_id": int,
        "items": [{"variation_id": int, "quantity": number, "serial_number_ids": [int]}],
        "notes": str (optional)
    }

    Returns:
        201: Transfer created
        400: Invalid request
        403: Forbidden
    """
    data = request.get_json(silent=True) or {}

    try:
        transfer = transfer_service.create_transfer(
            parse_id(pick(data, "from_location_id", "fromLocationId"), "from_location_id"),
            parse_id(pick(data, "to_location_id", "toLocationId"), "to_location_id"),
            _parse_items(pick(data, "items")),
            user_id=g.current_user.id,
            notes=optional_text(data.get("notes")),
        )
        return jsonify(_transfer_json(transfer)), 201
    except Exception as e:
        return error_response(e, "create transfer")


@transfers_bp.route("", methods=["GET"])
@require_auth
@require_permission("VIEW_TRANSFERS")
def list_transfers():
    """Query params: status, location_id, limit"""
    try:
        status = request.args.get("status")
        if status and status not in {s.value for s in TransferStatus}:
            raise ValidationError(f"Invalid status: {status}")
        transfers = transfer_service.list_transfers(
            org_id=g.org_id,
            status=status,
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"transfers": [t.to_dict(include_items=False) for t in transfers]}), 200
    except Exception as e:
        return error_response(e, "list transfers")


@transfers_bp.route("/<int:transfer_id>", methods=["GET"])
@require_auth
@require_permission("VIEW_TRANSFERS")
def get_transfer(transfer_id: int):
    try:
        transfer = transfer_service.get_transfer(transfer_id, org_id=g.org_id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "get transfer")


@transfers_bp.route("/<int:transfer_id>/submit-for-check", methods=["POST"])
@require_auth
@require_permission("CREATE_TRANSFERS")
def submit_for_check(transfer_id: int):
    try:
        transfer = transfer_service.submit_for_check(transfer_id, user_id=g.current_user.id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "submit transfer")


@transfers_bp.route("/<int:transfer_id>/check-approve", methods=["POST"])
@require_auth
@require_permission("CHECK_TRANSFERS")
def check_approve(transfer_id: int):
    """Body: {"notes": str} (optional). The creator cannot approve."""
    data = request.get_json(silent=True) or {}
    try:
        transfer = transfer_service.approve(
            transfer_id,
            user_id=g.current_user.id,
            check_notes=optional_text(pick(data, "notes", "checkNotes")),
        )
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "approve transfer")


@transfers_bp.route("/<int:transfer_id>/check-reject", methods=["POST"])
@require_auth
@require_permission("CHECK_TRANSFERS")
def check_reject(transfer_id: int):
    """Body: {"reason": str} (required). Returns the transfer to draft."""
    data = request.get_json(silent=True) or {}
    try:
        transfer = transfer_service.reject(
            transfer_id,
            user_id=g.current_user.id,
            reason=optional_text(pick(data, "reason", "rejectionReason")) or "",
        )
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "reject transfer")


@transfers_bp.route("/<int:transfer_id>/send", methods=["POST"])
@require_auth
@require_permission("SEND_TRANSFERS")
def send(transfer_id: int):
    """Deducts stock at the origin."""
    try:
        transfer = transfer_service.send(transfer_id, user_id=g.current_user.id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "send transfer")


@transfers_bp.route("/<int:transfer_id>/mark-arrived", methods=["POST"])
@require_auth
@require_permission("RECEIVE_TRANSFERS")
def mark_arrived(transfer_id: int):
    try:
        transfer = transfer_service.mark_arrived(transfer_id, user_id=g.current_user.id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "mark transfer arrived")


@transfers_bp.route("/<int:transfer_id>/start-verification", methods=["POST"])
@require_auth
@require_permission("VERIFY_TRANSFERS")
def start_verification(transfer_id: int):
    try:
        transfer = transfer_service.start_verification(transfer_id, user_id=g.current_user.id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "start transfer verification")


@transfers_bp.route("/<int:transfer_id>/verify-item", methods=["POST"])
@require_auth
@require_permission("VERIFY_TRANSFERS")
def verify_item(transfer_id: int):
    """
    Request body:
    {
        "item_id": int,
        "received_quantity": number,
        "notes": str (optional),
        "received_serial_number_ids": [int] (optional, defaults to all sent)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        received_serials = pick(data, "received_serial_number_ids", "receivedSerialNumberIds")
        transfer = transfer_service.verify_item(
            transfer_id,
            parse_id(pick(data, "item_id", "itemId"), "item_id"),
            user_id=g.current_user.id,
            received_quantity=parse_quantity(
                pick(data, "received_quantity", "receivedQuantity"),
                "received_quantity",
                allow_zero=True,
            ),
            notes=optional_text(pick(data, "notes", "discrepancyNotes")),
            received_serial_number_ids=(
                parse_id_list(received_serials, "received_serial_number_ids")
                if received_serials is not None else None
            ),
        )
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "verify transfer item")


@transfers_bp.route("/<int:transfer_id>/complete", methods=["POST"])
@require_auth
@require_permission("COMPLETE_TRANSFERS")
def complete(transfer_id: int):
    """Adds received quantities to the destination."""
    try:
        transfer = transfer_service.complete(transfer_id, user_id=g.current_user.id)
        return jsonify(_transfer_json(transfer)), 200
    except Exception as e:
        return error_response(e, "complete transfer")


@transfers_bp.route("/<int:transfer_id>", methods=["DELETE"])
@require_auth
@require_permission("CANCEL_TRANSFERS")
def cancel(transfer_id: int):
    """Cancel before any stock has been sent. Body: {"reason": str} (optional)."""
    data = request.get_json(silent=True) or {}
    try:
        transfer = transfer_service.cancel(
            transfer_id,
            user_id=g.current_user.id,
            reason=optional_text(pick(data, "reason", "cancellationReason")),
        )
        return jsonify({
            "message": f"Transfer {transfer.transfer_number} cancelled",
            "transfer": _transfer_json(transfer),
        }), 200
    except Exception as e:
        return error_response(e, "cancel transfer")
