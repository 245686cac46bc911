# Overview: Shared JSON error responses for API routes.

from flask import jsonify, current_app

from ..extensions import db
from ..services.errors import InventoryError
from ..services.permission_service import PermissionDeniedError
from ..validation import ValidationError


def error_response(exc: Exception, action: str):
    """
    Roll back and map an exception to (json, status).

    Domain errors answer with their own status and merge their details into
    the body; anything unexpected is logged and answers 500.
    """
    db.session.rollback()

    if isinstance(exc, InventoryError):
        return jsonify({"error": str(exc), **exc.details}), exc.http_status
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, PermissionDeniedError):
        return jsonify({"error": "Permission denied", "message": str(exc)}), 403

    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500
