from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from posledger.time_utils import to_utc_z
from .inventory import StockMovement
from .serials import UnitMovement


class ImmutableRecordError(Exception):
    """Raised when code tries to modify or delete an append-only row."""


class AuditLogEntry(db.Model):
    """
    Append-only record of every ledger-affecting or workflow event.

    Written inside the same transaction as the change it describes, so an
    aborted operation leaves no entry behind. username is copied at write
    time and entity_ids lists every sale/transfer/unit id touched.
    """
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        db.Index("ix_audit_log_action_created", "action", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    username = db.Column(db.String(64), nullable=True)

    action = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    entity_ids = db.Column(db.JSON, nullable=False, default=list)
    description = db.Column(db.Text, nullable=False)
    details = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "username": self.username,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_ids": self.entity_ids or [],
            "description": self.description,
            "details": self.details,
            "ip_address": self.ip_address,
            "created_at": to_utc_z(self.created_at),
        }


def _refuse_update(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only and cannot be modified"
    )


def _refuse_delete(mapper, connection, target):
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only and cannot be deleted"
    )


for _model in (AuditLogEntry, StockMovement, UnitMovement):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
