from __future__ import annotations

from ..extensions import db
from posledger.quantities import format_quantity
from posledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data, scoped to an organization.

    enable_serial marks products whose units are tracked one by one in the
    serial registry; every sale or transfer of such a product must name the
    exact units involved.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("org_id", "sku", name="uq_products_org_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    enable_serial = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "sku": self.sku,
            "name": self.name,
            "enable_serial": self.enable_serial,
            "is_active": self.is_active,
        }


class ProductVariation(db.Model):
    """Sellable variant of a product; stock is held per variation and location."""
    __tablename__ = "product_variations"
    __table_args__ = (
        db.UniqueConstraint("product_id", "name", name="uq_product_variations_product_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False, default="Default")
    sku = db.Column(db.String(64), nullable=True)

    product = db.relationship("Product", backref=db.backref("variations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
        }


class StockLevel(db.Model):
    """
    Available quantity of one variation at one location.

    Written only by stock_ledger_service through guarded UPDATE statements;
    the CHECK constraint is the last line against a negative balance.
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint("variation_id", "location_id", name="uq_stock_levels_variation_location"),
        db.CheckConstraint("quantity_available >= 0", name="ck_stock_levels_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    quantity_available = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variation = db.relationship("ProductVariation")
    location = db.relationship("Location")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "location_id": self.location_id,
            "quantity_available": format_quantity(self.quantity_available),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only quantity movement against a StockLevel.

    The unique key (reference, line, variation, location, type) makes every
    ledger call idempotent: replaying the same reference finds the existing
    row instead of moving stock twice. reference_line_id is 0 for
    header-level references so the key never contains NULL.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint(
            "reference_type",
            "reference_id",
            "reference_line_id",
            "variation_id",
            "location_id",
            "movement_type",
            name="uq_stock_movements_reference",
        ),
        db.Index("ix_stock_movements_variation_location", "variation_id", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False)

    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Numeric(18, 4), nullable=False)
    balance_after = db.Column(db.Numeric(18, 4), nullable=False)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=False)
    reference_line_id = db.Column(db.Integer, nullable=False, default=0)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "location_id": self.location_id,
            "movement_type": self.movement_type,
            "quantity_delta": format_quantity(self.quantity_delta),
            "balance_after": format_quantity(self.balance_after),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "reference_line_id": self.reference_line_id or None,
            "user_id": self.user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
