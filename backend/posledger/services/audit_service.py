# Overview: Service-layer operations for the audit log; append and query only.

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from ..extensions import db
from ..models import AuditLogEntry, User

"""
Audit log invariants

- Append-only: rows are never updated or deleted (ORM listeners refuse it).
- Entries are added to the caller's transaction and never committed here,
  so a rolled-back operation leaves no entry.
- One entry per ledger-affecting or workflow operation.
"""

SALE_CREATE = "sale_create"
SALE_DELETE = "sale_delete"
STOCK_RECEIVE = "stock_receive"
TRANSFER_CREATE = "stock_transfer_create"
TRANSFER_SUBMIT = "stock_transfer_submit"
TRANSFER_APPROVE = "stock_transfer_approve"
TRANSFER_REJECT = "stock_transfer_reject"
TRANSFER_SEND = "stock_transfer_send"
TRANSFER_ARRIVED = "stock_transfer_arrived"
TRANSFER_VERIFICATION_START = "stock_transfer_verification_start"
TRANSFER_ITEM_VERIFY = "stock_transfer_item_verify"
TRANSFER_RECEIVE = "stock_transfer_receive"
TRANSFER_DELETE = "stock_transfer_delete"
CORRECTION_CREATE = "inventory_correction_create"
CORRECTION_APPROVE = "inventory_correction_approve"
CORRECTION_REJECT = "inventory_correction_reject"


def log_action(
    *,
    user_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    description: str,
    entity_ids: Iterable[int] | None = None,
    details: dict | None = None,
    org_id: int | None = None,
    ip_address: str | None = None,
) -> AuditLogEntry:
    """Append an audit entry to the current transaction (no commit)."""
    username = None
    if user_id is not None:
        user = db.session.get(User, user_id)
        if user is not None:
            username = user.username
            org_id = org_id or user.org_id

    ids = list(entity_ids) if entity_ids is not None else []
    if entity_id is not None and entity_id not in ids:
        ids.insert(0, entity_id)

    entry = AuditLogEntry(
        org_id=org_id,
        user_id=user_id,
        username=username,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_ids=ids,
        description=description,
        details=details,
        ip_address=ip_address,
    )
    db.session.add(entry)
    return entry


def list_entries(
    *,
    org_id: int | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    query = db.session.query(AuditLogEntry)
    if org_id is not None:
        query = query.filter(AuditLogEntry.org_id == org_id)
    if action:
        query = query.filter(AuditLogEntry.action == action)
    if entity_type:
        query = query.filter(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLogEntry.entity_id == entity_id)
    if since is not None:
        query = query.filter(AuditLogEntry.created_at >= since)
    return query.order_by(AuditLogEntry.id.desc()).limit(min(limit, 500)).all()
