from __future__ import annotations

from ..extensions import db
from posledger.quantities import format_cents, format_quantity
from posledger.time_utils import to_utc_z


SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_VOIDED = "voided"


class Customer(db.Model):
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "org_id": self.org_id, "name": self.name, "phone": self.phone}


class Sale(db.Model):
    """
    Sale header.

    A sale is written once, complete with items and payments, and afterwards
    only changes status (completed -> voided). Voiding never deletes rows.
    Money columns are integer cents.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("location_id", "invoice_number", name="uq_sales_location_invoice"),
        db.UniqueConstraint("location_id", "client_reference", name="uq_sales_location_client_reference"),
        db.Index("ix_sales_location_created", "location_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    invoice_number = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    # Caller-supplied idempotency key; a replay returns the existing sale
    client_reference = db.Column(db.String(64), nullable=True)
    # Hash of location, user and items, for the duplicate-submission window
    fingerprint = db.Column(db.String(64), nullable=False, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location")
    customer = db.relationship("Customer")
    items = db.relationship("SaleItem", backref="sale", lazy=True, order_by="SaleItem.id")
    payments = db.relationship("Payment", backref="sale", lazy=True, order_by="Payment.id")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "location_id": self.location_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "subtotal": format_cents(self.subtotal_cents),
            "tax": format_cents(self.tax_cents),
            "discount": format_cents(self.discount_cents),
            "shipping": format_cents(self.shipping_cents),
            "total": format_cents(self.total_cents),
            "notes": self.notes,
            "client_reference": self.client_reference,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at),
            "void_reason": self.void_reason,
        }
        if include_lines:
            data["items"] = [item.to_dict() for item in self.items]
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False)

    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # Snapshot of the allocated units: [{"id": .., "serial_number": .., "imei": ..}]
    serial_numbers = db.Column(db.JSON, nullable=True)

    def serial_number_ids(self) -> list[int]:
        return [entry["id"] for entry in (self.serial_numbers or [])]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "quantity": format_quantity(self.quantity),
            "unit_price": format_cents(self.unit_price_cents),
            "line_total": format_cents(self.line_total_cents),
            "serial_numbers": self.serial_numbers or [],
        }


class Payment(db.Model):
    """Declared payment. No settlement happens here; only the sum is validated."""
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    method = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reference_number = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "method": self.method,
            "amount": format_cents(self.amount_cents),
            "reference_number": self.reference_number,
            "created_at": to_utc_z(self.created_at),
        }
