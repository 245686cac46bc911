# Overview: Flask API routes for serialized units; lookup and movement history.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_permission
from ..models.serials import UNIT_STATUSES
from ..services import serial_service
from ..validation import ValidationError, parse_optional_id
from .errors import error_response


serials_bp = Blueprint("serials", __name__, url_prefix="/api/serials")


@serials_bp.get("")
@require_auth
@require_permission("VIEW_SERIALS")
def list_serials_route():
    """
    Query params: variation_id, location_id, status, search, limit
    """
    try:
        status = request.args.get("status")
        if status and status not in UNIT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        units = serial_service.list_units(
            org_id=g.org_id,
            variation_id=parse_optional_id(request.args.get("variation_id"), "variation_id"),
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            status=status,
            search=request.args.get("search"),
            limit=request.args.get("limit", 200, type=int),
        )
        return jsonify({"serial_numbers": [unit.to_dict() for unit in units]}), 200
    except Exception as e:
        return error_response(e, "list serial numbers")


@serials_bp.get("/<int:unit_id>")
@require_auth
@require_permission("VIEW_SERIALS")
def get_serial_route(unit_id: int):
    """Unit with its full movement history, oldest first."""
    try:
        return jsonify(serial_service.get_unit_history(unit_id, org_id=g.org_id)), 200
    except Exception as e:
        return error_response(e, "get serial number")
