from __future__ import annotations

from ..extensions import db
from posledger.quantities import format_quantity
from posledger.time_utils import to_utc_z


class Transfer(db.Model):
    """
    Stock transfer between two locations of the same organization.

    Lifecycle (see services/transfer_states.py for the transition table):
    draft -> pending_check -> checked -> in_transit -> arrived -> verifying
    -> verified -> completed, with cancellation before shipment.

    Stock leaves the origin only at send (stock_deducted flips to True) and
    reaches the destination only at complete, using received quantities.
    Each step stamps its actor and timestamp on the header.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.UniqueConstraint("from_location_id", "transfer_number", name="uq_transfers_from_number"),
        db.CheckConstraint("from_location_id <> to_location_id", name="ck_transfers_distinct_locations"),
        db.Index("ix_transfers_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_number = db.Column(db.String(32), nullable=False)
    from_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    to_location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default="draft")
    stock_deducted = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    checked_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    checked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    check_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    sent_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    arrived_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    arrived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    verification_started_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    verification_started_at = db.Column(db.DateTime(timezone=True), nullable=True)

    verified_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    completed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    from_location = db.relationship("Location", foreign_keys=[from_location_id])
    to_location = db.relationship("Location", foreign_keys=[to_location_id])
    items = db.relationship("TransferItem", backref="transfer", lazy=True, order_by="TransferItem.id")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "status": self.status,
            "stock_deducted": self.stock_deducted,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "checked_by_user_id": self.checked_by_user_id,
            "checked_at": to_utc_z(self.checked_at),
            "check_notes": self.check_notes,
            "rejection_reason": self.rejection_reason,
            "sent_by_user_id": self.sent_by_user_id,
            "sent_at": to_utc_z(self.sent_at),
            "arrived_by_user_id": self.arrived_by_user_id,
            "arrived_at": to_utc_z(self.arrived_at),
            "verification_started_by_user_id": self.verification_started_by_user_id,
            "verification_started_at": to_utc_z(self.verification_started_at),
            "verified_by_user_id": self.verified_by_user_id,
            "verified_at": to_utc_z(self.verified_at),
            "completed_by_user_id": self.completed_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransferItem(db.Model):
    __tablename__ = "transfer_items"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", "variation_id", name="uq_transfer_items_transfer_variation"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False)

    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    received_quantity = db.Column(db.Numeric(18, 4), nullable=True)

    serial_number_ids = db.Column(db.JSON, nullable=True)
    received_serial_number_ids = db.Column(db.JSON, nullable=True)

    verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    has_discrepancy = db.Column(db.Boolean, nullable=False, default=False)
    discrepancy_notes = db.Column(db.Text, nullable=True)

    @property
    def variance(self):
        if self.received_quantity is None:
            return None
        return self.received_quantity - self.quantity

    def to_dict(self) -> dict:
        variance = self.variance
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "quantity": format_quantity(self.quantity),
            "received_quantity": format_quantity(self.received_quantity) if self.received_quantity is not None else None,
            "variance": format_quantity(variance) if variance is not None else None,
            "serial_number_ids": self.serial_number_ids or [],
            "received_serial_number_ids": self.received_serial_number_ids,
            "verified": self.verified,
            "verified_by_user_id": self.verified_by_user_id,
            "verified_at": to_utc_z(self.verified_at),
            "has_discrepancy": self.has_discrepancy,
            "discrepancy_notes": self.discrepancy_notes,
        }


class DocumentSequence(db.Model):
    """
    Atomic per-location document counters.

    document_type carries the period, e.g. "INVOICE-202610", so numbering
    restarts every month.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("location_id", "document_type", name="uq_doc_sequences_location_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())


class StockReceipt(db.Model):
    """
    Goods receipt: stock arriving from outside the organization (purchase or
    opening balance). The ledger credit and any serial registrations
    reference this row.
    """
    __tablename__ = "stock_receipts"
    __table_args__ = (
        db.UniqueConstraint("location_id", "client_reference", name="uq_stock_receipts_location_client_reference"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False)
    receipt_type = db.Column(db.String(16), nullable=False, default="purchase")
    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    supplier_reference = db.Column(db.String(128), nullable=True)
    client_reference = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "receipt_type": self.receipt_type,
            "quantity": format_quantity(self.quantity),
            "unit_cost_cents": self.unit_cost_cents,
            "supplier_reference": self.supplier_reference,
            "client_reference": self.client_reference,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryCorrection(db.Model):
    """
    Counted-stock correction for one variation at one location.

    Requested with the physical count; the ledger changes only on approval,
    by someone other than the requester, which applies the counted
    difference as a single adjustment movement. Serialized stock is
    only corrected downward, by writing off the named units.
    """
    __tablename__ = "inventory_corrections"
    __table_args__ = (
        db.Index("ix_inventory_corrections_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variation_id = db.Column(db.Integer, db.ForeignKey("product_variations.id"), nullable=False, index=True)

    system_count = db.Column(db.Numeric(18, 4), nullable=False)
    physical_count = db.Column(db.Numeric(18, 4), nullable=False)
    difference = db.Column(db.Numeric(18, 4), nullable=False)
    applied_quantity = db.Column(db.Numeric(18, 4), nullable=True)
    serial_number_ids = db.Column(db.JSON, nullable=False, default=list)
    reason = db.Column(db.String(255), nullable=False)
    remarks = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending")
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    location = db.relationship("Location")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "system_count": format_quantity(self.system_count),
            "physical_count": format_quantity(self.physical_count),
            "difference": format_quantity(self.difference),
            "applied_quantity": format_quantity(self.applied_quantity) if self.applied_quantity is not None else None,
            "serial_number_ids": list(self.serial_number_ids or []),
            "reason": self.reason,
            "remarks": self.remarks,
            "status": self.status,
            "stock_movement_id": self.stock_movement_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by_user_id": self.rejected_by_user_id,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejection_reason": self.rejection_reason,
        }
