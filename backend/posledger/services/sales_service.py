# Overview: Service-layer operations for sales; all-or-nothing checkout and void.

"""
Sale transaction processor

A sale either commits completely (header, items, payments, ledger debits,
serial allocations and one audit entry) or not at all. Validation runs in a
fixed order and the first failure wins:

1. stock for non-serial items
2. serial count, then serial availability, for serial items
3. payments against the sale total

Voiding restores exactly what the sale removed and can happen once.
"""

from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Sale, SaleItem, Payment, Customer, Location, User
from ..models.sales import SALE_STATUS_COMPLETED, SALE_STATUS_VOIDED
from ..models.serials import WALK_IN_CUSTOMER
from posledger.quantities import format_cents, format_quantity, quantize_quantity
from posledger.time_utils import utcnow
from posledger.validation import ValidationError
from . import audit_service, serial_service, stock_ledger_service
from .concurrency import begin_write, commit_write, lock_for_update, run_with_retry
from .document_service import next_document_number
from .errors import (
    AlreadyVoided,
    DuplicateSale,
    InsufficientStock,
    PaymentMismatch,
    RecordNotFound,
    SerialCountMismatch,
)
from .inventory_service import get_location, resolve_variation
from .permission_service import ensure_location_access


def _line_total_cents(quantity: Decimal, unit_price_cents: int) -> int:
    return int((quantity * unit_price_cents).to_integral_value(rounding=ROUND_HALF_UP))


def _fingerprint(location_id: int, user_id: int, items: list[dict]) -> str:
    lines = sorted(
        (
            item["variation"].id,
            format_quantity(item["quantity"]),
            item["unit_price_cents"],
            sorted(item["serial_number_ids"]),
        )
        for item in items
    )
    payload = json.dumps([location_id, user_id, lines], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _find_by_client_reference(location_id: int, client_reference: str) -> Sale | None:
    return (
        db.session.query(Sale)
        .filter_by(location_id=location_id, client_reference=client_reference)
        .first()
    )


def _prepare_items(org_id: int, items: list[dict]) -> list[dict]:
    """Resolve variations and normalize quantities; no stock is read here."""
    if not items:
        raise ValidationError("At least one item is required")

    prepared = []
    seen_units: set[int] = set()
    for raw in items:
        variation = resolve_variation(
            org_id=org_id,
            variation_id=raw.get("variation_id"),
            product_id=raw.get("product_id"),
        )
        quantity = quantize_quantity(raw["quantity"])
        if quantity <= 0:
            raise ValidationError("quantity must be > 0")
        unit_price_cents = int(raw.get("unit_price_cents") or 0)
        if unit_price_cents < 0:
            raise ValidationError("unit_price must be >= 0")

        serial_ids = list(raw.get("serial_number_ids") or [])
        duplicated = seen_units.intersection(serial_ids)
        if duplicated:
            raise ValidationError(f"Serial number {min(duplicated)} appears on more than one line")
        seen_units.update(serial_ids)

        prepared.append({
            "variation": variation,
            "product": variation.product,
            "quantity": quantity,
            "unit_price_cents": unit_price_cents,
            "serial_number_ids": serial_ids,
            "is_serial": bool(variation.product.enable_serial or raw.get("requires_serial")),
        })
    return prepared


def _check_stock(location_id: int, items: list[dict]) -> None:
    requested: dict[int, Decimal] = {}
    for item in items:
        if item["is_serial"]:
            continue
        variation_id = item["variation"].id
        requested[variation_id] = requested.get(variation_id, Decimal("0")) + item["quantity"]

        available = stock_ledger_service.get_available(variation_id, location_id)
        if available < requested[variation_id]:
            product_id = item["product"].id
            raise InsufficientStock(
                f"Insufficient stock for item {product_id}. "
                f"Available: {format_quantity(available)}, Required: {format_quantity(requested[variation_id])}",
                details={
                    "product_id": product_id,
                    "variation_id": variation_id,
                    "available": format_quantity(available),
                    "required": format_quantity(requested[variation_id]),
                },
            )


def _check_serials(location_id: int, items: list[dict]) -> None:
    for item in items:
        if not item["is_serial"]:
            continue
        provided = len(item["serial_number_ids"])
        if Decimal(provided) != item["quantity"]:
            product_id = item["product"].id
            raise SerialCountMismatch(
                f"Serial number count mismatch for item {product_id}. "
                f"Expected: {format_quantity(item['quantity'])}, Provided: {provided}",
                details={
                    "product_id": product_id,
                    "expected": format_quantity(item["quantity"]),
                    "provided": provided,
                },
            )

    for item in items:
        if item["is_serial"]:
            serial_service.check_available(
                item["serial_number_ids"],
                location_id=location_id,
                variation_id=item["variation"].id,
            )


def create_sale(
    *,
    location_id: int,
    user_id: int,
    items: list[dict],
    payments: list[dict],
    customer_id: int | None = None,
    tax_cents: int = 0,
    discount_cents: int = 0,
    shipping_cents: int = 0,
    notes: str | None = None,
    client_reference: str | None = None,
) -> tuple[Sale, bool]:
    """
    Record a completed sale.

    items: [{"variation_id" | "product_id", "quantity": Decimal,
             "unit_price_cents": int, "serial_number_ids": [int],
             "requires_serial": bool}]
    payments: [{"method": str, "amount_cents": int, "reference_number": str}]

    Returns (sale, created). created is False when client_reference names a
    sale already recorded at this location.

    Raises:
        InsufficientStock, SerialCountMismatch, UnitNotAvailable,
        PaymentMismatch, DuplicateSale, ValidationError, LocationAccessDenied
    """
    tolerance = current_app.config.get("PAYMENT_TOLERANCE_CENTS", 1)
    window = timedelta(seconds=current_app.config.get("DUPLICATE_SALE_WINDOW_SECONDS", 10))

    def _op():
        begin_write()

        if client_reference:
            existing = _find_by_client_reference(location_id, client_reference)
            if existing is not None:
                return existing, False

        user = db.session.get(User, user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found")
        location = get_location(location_id, org_id=user.org_id)
        ensure_location_access(user_id, location.id, "sell")

        sold_to = WALK_IN_CUSTOMER
        if customer_id is not None:
            customer = db.session.get(Customer, customer_id)
            if customer is None or customer.org_id != user.org_id:
                raise RecordNotFound(f"Customer {customer_id} not found")
            sold_to = customer.name

        prepared = _prepare_items(user.org_id, items)
        fingerprint = _fingerprint(location.id, user_id, prepared)

        if not client_reference and window.total_seconds() > 0:
            recent = (
                db.session.query(Sale)
                .filter(
                    Sale.location_id == location.id,
                    Sale.created_by_user_id == user_id,
                    Sale.fingerprint == fingerprint,
                    Sale.created_at >= utcnow() - window,
                )
                .order_by(Sale.id.desc())
                .first()
            )
            if recent is not None:
                raise DuplicateSale(
                    f"Duplicate sale detected: {recent.invoice_number} with the same items was just recorded",
                    details={"invoice_number": recent.invoice_number, "sale_id": recent.id},
                )

        _check_stock(location.id, prepared)
        _check_serials(location.id, prepared)

        subtotal_cents = sum(
            _line_total_cents(item["quantity"], item["unit_price_cents"]) for item in prepared
        )
        total_cents = subtotal_cents + tax_cents + shipping_cents - discount_cents
        if total_cents < 0:
            raise ValidationError("Discount cannot exceed the sale total")

        paid_cents = sum(p["amount_cents"] for p in payments)
        if abs(paid_cents - total_cents) > tolerance:
            raise PaymentMismatch(
                f"Payment total {format_cents(paid_cents)} does not match sale total {format_cents(total_cents)}",
                details={"paid": format_cents(paid_cents), "total": format_cents(total_cents)},
            )

        invoice_number = next_document_number(
            location_id=location.id,
            document_type="INVOICE",
            prefix="INV",
        )

        sale = Sale(
            location_id=location.id,
            customer_id=customer_id,
            invoice_number=invoice_number,
            status=SALE_STATUS_COMPLETED,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            discount_cents=discount_cents,
            shipping_cents=shipping_cents,
            total_cents=total_cents,
            notes=notes,
            client_reference=client_reference,
            fingerprint=fingerprint,
            created_by_user_id=user_id,
            created_at=utcnow(),
        )
        db.session.add(sale)
        db.session.flush()

        allocated_ids = []
        for item in prepared:
            line = SaleItem(
                sale_id=sale.id,
                product_id=item["product"].id,
                variation_id=item["variation"].id,
                quantity=item["quantity"],
                unit_price_cents=item["unit_price_cents"],
                line_total_cents=_line_total_cents(item["quantity"], item["unit_price_cents"]),
            )
            db.session.add(line)
            db.session.flush()

            stock_ledger_service.reserve_and_debit(
                line.variation_id,
                location.id,
                item["quantity"],
                reference_type="sale",
                reference_id=sale.id,
                reference_line_id=line.id,
                movement_type=stock_ledger_service.MOVEMENT_SALE,
                user_id=user_id,
                product_id=line.product_id,
            )

            if item["serial_number_ids"]:
                units = serial_service.allocate(
                    item["serial_number_ids"],
                    sale,
                    sold_to,
                    variation_id=line.variation_id,
                    user_id=user_id,
                )
                line.serial_numbers = [
                    {"id": unit.id, "serial_number": unit.serial_number, "imei": unit.imei}
                    for unit in units
                ]
                allocated_ids.extend(unit.id for unit in units)

        for payment in payments:
            db.session.add(Payment(
                sale_id=sale.id,
                method=payment["method"],
                amount_cents=payment["amount_cents"],
                reference_number=payment.get("reference_number"),
            ))

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.SALE_CREATE,
            entity_type="sale",
            entity_id=sale.id,
            entity_ids=allocated_ids,
            description=f"Sale {invoice_number} at {location.name}, total {format_cents(total_cents)}",
            details={"invoice_number": invoice_number, "total": format_cents(total_cents)},
        )

        commit_write()
        current_app.logger.info(
            "Sale created: %s location=%s total=%s",
            invoice_number,
            location.id,
            format_cents(total_cents),
        )
        return sale, True

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # A concurrent request with the same client_reference committed first
        if client_reference:
            existing = _find_by_client_reference(location_id, client_reference)
            if existing is not None:
                return existing, False
        raise


def void_sale(sale_id: int, *, user_id: int, reason: str | None = None) -> Sale:
    """
    Void a completed sale and restore its stock and serial units.

    Raises:
        RecordNotFound: unknown sale or another organization's sale
        AlreadyVoided: the sale was voided before; nothing is credited twice
    """
    def _op():
        begin_write()

        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        user = db.session.get(User, user_id)
        if sale is None or user is None or sale.location.org_id != user.org_id:
            raise RecordNotFound(f"Sale {sale_id} not found")

        if sale.status == SALE_STATUS_VOIDED:
            raise AlreadyVoided(
                f"Sale {sale.invoice_number} is already voided",
                details={"invoice_number": sale.invoice_number},
            )
        ensure_location_access(user_id, sale.location_id, "void sales")

        restored_ids = []
        for line in sale.items:
            stock_ledger_service.credit(
                line.variation_id,
                sale.location_id,
                line.quantity,
                reference_type="sale",
                reference_id=sale.id,
                reference_line_id=line.id,
                movement_type=stock_ledger_service.MOVEMENT_SALE_VOID,
                user_id=user_id,
            )
            unit_ids = line.serial_number_ids()
            if unit_ids:
                serial_service.release(unit_ids, sale, user_id=user_id)
                restored_ids.extend(unit_ids)

        sale.status = SALE_STATUS_VOIDED
        sale.voided_by_user_id = user_id
        sale.voided_at = utcnow()
        sale.void_reason = reason

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.SALE_DELETE,
            entity_type="sale",
            entity_id=sale.id,
            entity_ids=restored_ids,
            description=f"Sale {sale.invoice_number} voided and stock restored",
            details={"invoice_number": sale.invoice_number, "reason": reason},
        )

        commit_write()
        current_app.logger.info("Sale voided: %s by user=%s", sale.invoice_number, user_id)
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: int, *, org_id: int | None = None) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None or (org_id is not None and sale.location.org_id != org_id):
        raise RecordNotFound(f"Sale {sale_id} not found")
    return sale


def list_sales(
    *,
    org_id: int,
    location_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[Sale]:
    query = db.session.query(Sale).join(Location, Location.id == Sale.location_id).filter(Location.org_id == org_id)
    if location_id is not None:
        query = query.filter(Sale.location_id == location_id)
    if status:
        query = query.filter(Sale.status == status)
    return query.order_by(Sale.id.desc()).limit(min(limit, 500)).all()
