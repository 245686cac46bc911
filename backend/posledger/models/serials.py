from __future__ import annotations

from ..extensions import db
from posledger.time_utils import to_utc_z


UNIT_STATUS_IN_STOCK = "in_stock"
UNIT_STATUS_SOLD = "sold"
UNIT_STATUS_IN_TRANSIT = "in_transit"
UNIT_STATUS_RETURNED = "returned"
UNIT_STATUS_DAMAGED = "damaged"
UNIT_STATUS_WARRANTY_RETURN = "warranty_return"

UNIT_STATUSES = {
    UNIT_STATUS_IN_STOCK,
    UNIT_STATUS_SOLD,
    UNIT_STATUS_IN_TRANSIT,
    UNIT_STATUS_RETURNED,
    UNIT_STATUS_DAMAGED,
    UNIT_STATUS_WARRANTY_RETURN,
}

UNIT_CONDITIONS = {"new", "used", "refurbished", "damaged", "defective"}

MOVEMENT_PURCHASE = "purchase"
MOVEMENT_SALE = "sale"
MOVEMENT_SALE_VOID = "sale_void"
MOVEMENT_TRANSFER_OUT = "transfer_out"
MOVEMENT_TRANSFER_IN = "transfer_in"
MOVEMENT_CUSTOMER_RETURN = "customer_return"
MOVEMENT_SUPPLIER_RETURN = "supplier_return"
MOVEMENT_DAMAGE = "damage"
MOVEMENT_REPAIR = "repair"
MOVEMENT_ADJUSTMENT = "adjustment"

MOVEMENT_TYPES = {
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_SALE_VOID,
    MOVEMENT_TRANSFER_OUT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_CUSTOMER_RETURN,
    MOVEMENT_SUPPLIER_RETURN,
    MOVEMENT_DAMAGE,
    MOVEMENT_REPAIR,
    MOVEMENT_ADJUSTMENT,
}

WALK_IN_CUSTOMER = "Walk-in Customer"


class SerializedUnit(db.Model):
    """
    One individually tracked item (serial number, optionally an IMEI).

    Units are created at goods receipt and never deleted. Status changes go
    through serial_service, which appends a UnitMovement for each one.
    """
    __tablename__ = "serialized_units"
    __table_args__ = (
        db.UniqueConstraint("org_id", "serial_number", name="uq_serialized_units_org_serial"),
        db.UniqueConstraint("org_id", "imei", name="uq_serialized_units_org_imei"),
        db.Index("ix_serialized_units_variation_location_status", "variation_id", "current_location_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False)

    serial_number = db.Column(db.String(191), nullable=False)
    imei = db.Column(db.String(32), nullable=True)

    status = db.Column(db.String(32), nullable=False, default=UNIT_STATUS_IN_STOCK)
    condition = db.Column(db.String(32), nullable=False, default="new")
    current_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    sold_to = db.Column(db.String(255), nullable=True)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)

    purchase_cost_cents = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<SerializedUnit id={self.id} serial={self.serial_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "serial_number": self.serial_number,
            "imei": self.imei,
            "status": self.status,
            "condition": self.condition,
            "current_location_id": self.current_location_id,
            "sale_id": self.sale_id,
            "sold_to": self.sold_to,
            "sold_at": to_utc_z(self.sold_at),
            "created_at": to_utc_z(self.created_at),
        }


class UnitMovement(db.Model):
    """Append-only history row for one SerializedUnit transition."""
    __tablename__ = "unit_movements"
    __table_args__ = (
        db.CheckConstraint("serial_number_id > 0", name="ck_unit_movements_unit_positive"),
        db.Index("ix_unit_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    serial_number_id = db.Column(db.Integer, db.ForeignKey("serialized_units.id"), nullable=False, index=True)
    movement_type = db.Column(db.String(32), nullable=False)
    from_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)
    to_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    moved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    moved_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    unit = db.relationship("SerializedUnit", backref=db.backref("movements", lazy=True, order_by="UnitMovement.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "serial_number_id": self.serial_number_id,
            "movement_type": self.movement_type,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "moved_by": self.moved_by,
            "notes": self.notes,
            "moved_at": to_utc_z(self.moved_at),
        }
