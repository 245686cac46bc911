# Overview: Service-layer operations for catalog setup and goods receipt.

"""
Inventory service

Receipts are the only external inbound path: each one writes a StockReceipt,
credits the ledger once (purchase or opening movement) and, for serialized
products, registers exactly one unit per received piece. A client_reference
makes the receipt safe to resubmit.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Product, ProductVariation, Location, StockReceipt, User
from posledger.quantities import format_quantity, quantize_quantity
from posledger.validation import ValidationError
from . import audit_service, serial_service, stock_ledger_service
from .concurrency import begin_write, commit_write, run_with_retry
from .errors import RecordNotFound, SerialCountMismatch
from .permission_service import ensure_location_access


RECEIPT_TYPE_PURCHASE = "purchase"
RECEIPT_TYPE_OPENING = "opening"

RECEIPT_MOVEMENT_TYPES = {
    RECEIPT_TYPE_PURCHASE: stock_ledger_service.MOVEMENT_PURCHASE,
    RECEIPT_TYPE_OPENING: stock_ledger_service.MOVEMENT_OPENING,
}


def create_product(
    *,
    org_id: int,
    sku: str,
    name: str,
    enable_serial: bool = False,
    variation_names: list[str] | None = None,
) -> Product:
    """Create a product with its variations ("Default" when none are named)."""
    existing = db.session.query(Product).filter_by(org_id=org_id, sku=sku).first()
    if existing:
        raise ValidationError(f"SKU {sku} already exists")

    product = Product(org_id=org_id, sku=sku, name=name, enable_serial=enable_serial)
    db.session.add(product)
    db.session.flush()

    for variation_name in variation_names or ["Default"]:
        db.session.add(ProductVariation(product_id=product.id, name=variation_name))

    db.session.commit()
    return product


def resolve_variation(
    *,
    org_id: int,
    variation_id: int | None = None,
    product_id: int | None = None,
) -> ProductVariation:
    """
    Find the variation a request line refers to.

    A line may name the variation, the product (its first variation is
    used) or both, in which case they must agree.
    """
    if variation_id is not None:
        variation = db.session.get(ProductVariation, variation_id)
        if variation is None or variation.product.org_id != org_id:
            raise RecordNotFound(f"Product variation {variation_id} not found")
        if product_id is not None and variation.product_id != product_id:
            raise ValidationError(
                f"Variation {variation_id} does not belong to product {product_id}"
            )
        return variation

    if product_id is None:
        raise ValidationError("product_id or variation_id is required")

    product = db.session.get(Product, product_id)
    if product is None or product.org_id != org_id:
        raise RecordNotFound(f"Product {product_id} not found")
    variation = (
        db.session.query(ProductVariation)
        .filter_by(product_id=product.id)
        .order_by(ProductVariation.id)
        .first()
    )
    if variation is None:
        raise ValidationError(f"Product {product_id} has no variations")
    return variation


def get_location(location_id: int, *, org_id: int | None = None) -> Location:
    location = db.session.get(Location, location_id)
    if location is None or (org_id is not None and location.org_id != org_id):
        raise RecordNotFound(f"Location {location_id} not found")
    if not location.is_active:
        raise ValidationError(f"Location {location.name} is not active")
    return location


def receive_stock(
    *,
    location_id: int,
    user_id: int,
    quantity: Decimal,
    variation_id: int | None = None,
    product_id: int | None = None,
    receipt_type: str = RECEIPT_TYPE_PURCHASE,
    unit_cost_cents: int | None = None,
    serials: list[dict] | None = None,
    supplier_reference: str | None = None,
    client_reference: str | None = None,
    notes: str | None = None,
) -> tuple[StockReceipt, bool]:
    """
    Receive goods at a location.

    Returns (receipt, created). created is False when client_reference
    matches an earlier receipt at this location, which is returned as-is.

    Raises:
        ValidationError: bad input, duplicate serials
        SerialCountMismatch: serialized product with len(serials) != quantity
        LocationAccessDenied: user may not act at the location
    """
    if receipt_type not in RECEIPT_MOVEMENT_TYPES:
        raise ValidationError(f"Invalid receipt_type: {receipt_type}")
    quantity = quantize_quantity(quantity)
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    def _op():
        begin_write()

        if client_reference:
            existing = (
                db.session.query(StockReceipt)
                .filter_by(location_id=location_id, client_reference=client_reference)
                .first()
            )
            if existing is not None:
                return existing, False

        user = db.session.get(User, user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found")
        location = get_location(location_id, org_id=user.org_id)
        ensure_location_access(user_id, location.id, "receive stock")

        variation = resolve_variation(
            org_id=user.org_id,
            variation_id=variation_id,
            product_id=product_id,
        )
        product = variation.product

        serial_entries = serials or []
        if product.enable_serial:
            if Decimal(len(serial_entries)) != quantity:
                raise SerialCountMismatch(
                    f"Serial number count mismatch for item {product.id}. "
                    f"Expected: {format_quantity(quantity)}, Provided: {len(serial_entries)}",
                    details={"product_id": product.id, "expected": str(quantity), "provided": len(serial_entries)},
                )
        elif serial_entries:
            raise ValidationError(f"Product {product.sku} does not track serial numbers")

        receipt = StockReceipt(
            location_id=location.id,
            product_id=product.id,
            variation_id=variation.id,
            receipt_type=receipt_type,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            supplier_reference=supplier_reference,
            client_reference=client_reference,
            notes=notes,
            created_by_user_id=user_id,
        )
        db.session.add(receipt)
        db.session.flush()

        stock_ledger_service.credit(
            variation.id,
            location.id,
            quantity,
            reference_type="stock_receipt",
            reference_id=receipt.id,
            movement_type=RECEIPT_MOVEMENT_TYPES[receipt_type],
            user_id=user_id,
            note=supplier_reference,
        )

        units = []
        if serial_entries:
            units = serial_service.register_units(
                org_id=user.org_id,
                product_id=product.id,
                variation_id=variation.id,
                location_id=location.id,
                serials=serial_entries,
                user_id=user_id,
                reference_type="stock_receipt",
                reference_id=receipt.id,
                unit_cost_cents=unit_cost_cents,
            )

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.STOCK_RECEIVE,
            entity_type="stock_receipt",
            entity_id=receipt.id,
            entity_ids=[unit.id for unit in units],
            description=f"Received {format_quantity(quantity)} x {product.sku} at {location.name}",
            details={
                "receipt_type": receipt_type,
                "variation_id": variation.id,
                "location_id": location.id,
                "quantity": str(quantity),
            },
        )

        commit_write()
        current_app.logger.info(
            "Stock received: receipt=%s variation=%s location=%s qty=%s",
            receipt.id,
            variation.id,
            location.id,
            quantity,
        )
        return receipt, True

    return run_with_retry(_op)
