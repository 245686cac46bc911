# Overview: Flask API routes for sales; checkout, lookup and void.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_permission
from ..models.sales import SALE_STATUS_COMPLETED, SALE_STATUS_VOIDED
from ..services import sales_service
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


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


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
            "unit_price_cents": parse_amount_cents(pick(raw, "unit_price", "unitPrice"), "unit_price"),
            "serial_number_ids": parse_id_list(
                pick(raw, "serial_number_ids", "serialNumberIds"),
                "serial_number_ids",
            ),
            "requires_serial": bool(pick(raw, "requires_serial", "requiresSerial", default=False)),
        })
    return items


def _parse_payments(values) -> list[dict]:
    if not isinstance(values, list) or not values:
        raise ValidationError("At least one payment is required")
    payments = []
    for index, raw in enumerate(values):
        if not isinstance(raw, dict):
            raise ValidationError(f"payments[{index}] must be an object")
        payments.append({
            "method": require_text(pick(raw, "method", "paymentMethod"), "payment method", max_length=32),
            "amount_cents": parse_amount_cents(pick(raw, "amount"), "payment amount"),
            "reference_number": optional_text(pick(raw, "reference_number", "referenceNumber"), max_length=128),
        })
    return payments


@sales_bp.post("")
@require_auth
@require_permission("CREATE_SALE")
def create_sale_route():
    """
    Record a completed sale.

    Request body:
    {
        "location_id": int,
        "customer_id": int (optional; walk-in otherwise),
        "items": [{"product_id": int, "variation_id": int, "quantity": number,
                   "unit_price": number, "serial_number_ids": [int]}],
        "payments": [{"method": str, "amount": number, "reference_number": str}],
        "tax": number, "discount": number, "shipping": number,
        "notes": str,
        "client_reference": str (optional idempotency key)
    }

    Returns:
        201: Sale created
        200: Replay of an earlier client_reference
        400: Insufficient stock, serial or payment problems
        409: Duplicate submission
    """
    data = request.get_json(silent=True) or {}

    try:
        sale, created = sales_service.create_sale(
            location_id=parse_id(pick(data, "location_id", "locationId"), "location_id"),
            user_id=g.current_user.id,
            items=_parse_items(pick(data, "items")),
            payments=_parse_payments(pick(data, "payments")),
            customer_id=parse_optional_id(pick(data, "customer_id", "customerId"), "customer_id"),
            tax_cents=parse_amount_cents(pick(data, "tax", "taxAmount"), "tax", default=0),
            discount_cents=parse_amount_cents(pick(data, "discount", "discountAmount"), "discount", default=0),
            shipping_cents=parse_amount_cents(pick(data, "shipping", "shippingCost"), "shipping", default=0),
            notes=optional_text(data.get("notes")),
            client_reference=optional_text(pick(data, "client_reference", "clientReference"), max_length=64),
        )
        return jsonify(sale.to_dict()), 201 if created else 200
    except Exception as e:
        return error_response(e, "create sale")


@sales_bp.get("")
@require_auth
@require_permission("VIEW_SALES")
def list_sales_route():
    """Query params: location_id, status, limit"""
    try:
        status = request.args.get("status")
        if status and status not in (SALE_STATUS_COMPLETED, SALE_STATUS_VOIDED):
            raise ValidationError(f"Invalid status: {status}")
        sales = sales_service.list_sales(
            org_id=g.org_id,
            location_id=parse_optional_id(request.args.get("location_id"), "location_id"),
            status=status,
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"sales": [sale.to_dict(include_lines=False) for sale in sales]}), 200
    except Exception as e:
        return error_response(e, "list sales")


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_permission("VIEW_SALES")
def get_sale_route(sale_id: int):
    try:
        return jsonify(sales_service.get_sale(sale_id, org_id=g.org_id).to_dict()), 200
    except Exception as e:
        return error_response(e, "get sale")


@sales_bp.delete("/<int:sale_id>")
@require_auth
@require_permission("VOID_SALE")
def void_sale_route(sale_id: int):
    """
    Void a sale and restore its stock.

    Optional body: {"reason": str}

    Returns:
        200: {"message", "invoiceNumber", "sale"}
        400: Already voided
        404: Unknown sale
    """
    data = request.get_json(silent=True) or {}

    try:
        sale = sales_service.void_sale(
            sale_id,
            user_id=g.current_user.id,
            reason=optional_text(data.get("reason")),
        )
        return jsonify({
            "message": f"Sale {sale.invoice_number} voided and stock restored",
            "invoiceNumber": sale.invoice_number,
            "sale": sale.to_dict(),
        }), 200
    except Exception as e:
        return error_response(e, "void sale")
