# Overview: Flask API routes for the audit log (read-only).

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_permission
from ..services import audit_service
from ..time_utils import parse_iso_datetime
from ..validation import ValidationError, parse_optional_id
from .errors import error_response


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit-logs")


@audit_bp.get("")
@require_auth
@require_permission("VIEW_AUDIT_LOG")
def list_audit_logs_route():
    """Query params: action, entity_type, entity_id, since (ISO 8601), limit"""
    try:
        since_raw = request.args.get("since")
        try:
            since = parse_iso_datetime(since_raw)
        except ValueError:
            raise ValidationError(f"Invalid since timestamp: {since_raw}")
        entries = audit_service.list_entries(
            org_id=g.org_id,
            action=request.args.get("action"),
            entity_type=request.args.get("entity_type"),
            entity_id=parse_optional_id(request.args.get("entity_id"), "entity_id"),
            since=since,
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"entries": [entry.to_dict() for entry in entries]}), 200
    except Exception as e:
        return error_response(e, "list audit log")
