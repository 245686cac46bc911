# Overview: Service-layer operations for inter-location transfers; workflow, stock timing and duties.

"""
Transfer workflow

LIFECYCLE (see transfer_states.TRANSITIONS):
1. draft: created with items, editable
2. pending_check: submitted for checking
3. checked: approved by someone other than the creator (rejection returns it to draft)
4. in_transit: sent; origin stock debited, serial units in transit
5. arrived / verifying: destination acknowledges and counts
6. verified: every item has a received quantity
7. completed: destination stock credited with the received quantities
8. cancelled: only while no stock has left the origin

STOCK TIMING: the origin is debited only at send and the destination is
credited only at complete. The difference between sent and received is kept
on the item as its variance and is never written back to the origin.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Transfer, TransferItem, Location, User
from posledger.quantities import format_quantity, quantize_quantity
from posledger.time_utils import utcnow
from posledger.validation import ValidationError
from . import audit_service, serial_service, stock_ledger_service
from .concurrency import begin_write, commit_write, lock_for_update, run_with_retry
from .document_service import next_document_number
from .errors import InvalidTransition, RecordNotFound, SerialCountMismatch, SeparationOfDutiesError
from .inventory_service import get_location, resolve_variation
from .permission_service import (
    ensure_location_access,
    get_user_permissions,
    get_user_role_names,
    require_permission,
    user_can_access_location,
)
from .transfer_states import TransferAction, TransferStatus, actions_from, next_status


A = TransferAction

ACTION_PERMISSIONS = {
    A.SUBMIT: "CREATE_TRANSFERS",
    A.APPROVE: "CHECK_TRANSFERS",
    A.REJECT: "CHECK_TRANSFERS",
    A.SEND: "SEND_TRANSFERS",
    A.MARK_ARRIVED: "RECEIVE_TRANSFERS",
    A.START_VERIFICATION: "VERIFY_TRANSFERS",
    A.VERIFY_ITEM: "VERIFY_TRANSFERS",
    A.COMPLETE: "COMPLETE_TRANSFERS",
    A.CANCEL: "CANCEL_TRANSFERS",
}

# Which end of the transfer the actor must have access to
ACTION_LOCATIONS = {
    A.SUBMIT: "from_location_id",
    A.SEND: "from_location_id",
    A.CANCEL: "from_location_id",
    A.MARK_ARRIVED: "to_location_id",
    A.START_VERIFICATION: "to_location_id",
    A.VERIFY_ITEM: "to_location_id",
    A.COMPLETE: "to_location_id",
}


@dataclass(frozen=True)
class SodRule:
    action: TransferAction
    actor_fields: tuple[str, ...]
    optional: bool
    message: str


SOD_RULES: tuple[SodRule, ...] = (
    SodRule(A.APPROVE, ("created_by_user_id",), False, "You cannot approve your own transfer"),
    SodRule(A.REJECT, ("created_by_user_id",), False, "You cannot reject your own transfer"),
    SodRule(
        A.SEND,
        ("created_by_user_id", "checked_by_user_id"),
        True,
        "A transfer must be sent by someone other than its creator and checker",
    ),
    SodRule(A.MARK_ARRIVED, ("created_by_user_id",), True, "You cannot receive your own transfer"),
    SodRule(
        A.COMPLETE,
        ("created_by_user_id", "sent_by_user_id", "arrived_by_user_id"),
        True,
        "A transfer must be completed by someone other than its creator, sender and receiver",
    ),
)


def _sod_exempt(user_id: int) -> bool:
    exempt = set(current_app.config.get("TRANSFER_SOD_EXEMPT_ROLES") or ())
    return bool(exempt) and bool(exempt.intersection(get_user_role_names(user_id)))


def sod_violation(transfer: Transfer, user_id: int, action: TransferAction) -> str | None:
    """Message of the first separation-of-duties rule user_id would break, else None."""
    strict = current_app.config.get("TRANSFER_STRICT_SOD", False)
    exempt = None
    for rule in SOD_RULES:
        if rule.action != action:
            continue
        if rule.optional:
            if not strict:
                continue
            if exempt is None:
                exempt = _sod_exempt(user_id)
            if exempt:
                continue
        if any(getattr(transfer, field) == user_id for field in rule.actor_fields):
            return rule.message
    return None


def _authorize(transfer: Transfer, user_id: int, action: TransferAction) -> None:
    require_permission(user_id, ACTION_PERMISSIONS[action], resource=transfer.transfer_number)

    location_field = ACTION_LOCATIONS.get(action)
    if location_field:
        ensure_location_access(user_id, getattr(transfer, location_field), action.value.replace("_", " "))

    message = sod_violation(transfer, user_id, action)
    if message:
        current_app.logger.warning(
            "Separation of duties blocked %s on transfer %s by user=%s",
            action.value,
            transfer.transfer_number,
            user_id,
        )
        raise SeparationOfDutiesError(
            message,
            details={"code": "SAME_USER_VIOLATION", "action": action.value},
        )


def _load_for_update(transfer_id: int, user_id: int) -> Transfer:
    transfer = lock_for_update(db.session.query(Transfer).filter_by(id=transfer_id)).first()
    user = db.session.get(User, user_id)
    if transfer is None or user is None or transfer.from_location.org_id != user.org_id:
        raise RecordNotFound(f"Transfer {transfer_id} not found")
    return transfer


def _begin(transfer_id: int, user_id: int, action: TransferAction) -> tuple[Transfer, TransferStatus]:
    """Lock the transfer, check the move is legal and the user may make it."""
    begin_write()
    transfer = _load_for_update(transfer_id, user_id)
    target = next_status(transfer.status, action)
    _authorize(transfer, user_id, action)
    return transfer, target


def _audit(transfer: Transfer, user_id: int, action: str, description: str, details: dict | None = None) -> None:
    audit_service.log_action(
        user_id=user_id,
        action=action,
        entity_type="stock_transfer",
        entity_id=transfer.id,
        description=description,
        details={"transfer_number": transfer.transfer_number, "status": transfer.status, **(details or {})},
    )


def _commit(transfer: Transfer, event: str, user_id: int) -> Transfer:
    commit_write()
    current_app.logger.info(
        "Transfer %s %s by user=%s (status=%s)",
        transfer.transfer_number,
        event,
        user_id,
        transfer.status,
    )
    return transfer


def create_transfer(
    from_location_id: int,
    to_location_id: int,
    items: list[dict],
    *,
    user_id: int,
    notes: str | None = None,
) -> Transfer:
    """
    Create a draft transfer.

    items: [{"variation_id" | "product_id", "quantity": Decimal,
             "serial_number_ids": [int]}]

    Serialized items must list exactly quantity units, all in stock at the
    origin. Stock quantities are checked when the transfer is sent.
    """
    def _op():
        begin_write()

        if from_location_id == to_location_id:
            raise ValidationError("Cannot transfer to the same location")

        user = db.session.get(User, user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found")
        origin = get_location(from_location_id, org_id=user.org_id)
        destination = get_location(to_location_id, org_id=user.org_id)
        ensure_location_access(user_id, origin.id, "create transfers")

        if not items:
            raise ValidationError("At least one item is required")

        prepared = []
        seen_variations: set[int] = set()
        for raw in items:
            variation = resolve_variation(
                org_id=user.org_id,
                variation_id=raw.get("variation_id"),
                product_id=raw.get("product_id"),
            )
            if variation.id in seen_variations:
                raise ValidationError(f"Variation {variation.id} is listed more than once")
            seen_variations.add(variation.id)

            quantity = quantize_quantity(raw["quantity"])
            if quantity <= 0:
                raise ValidationError("quantity must be > 0")

            serial_ids = list(raw.get("serial_number_ids") or [])
            if variation.product.enable_serial or serial_ids:
                if Decimal(len(serial_ids)) != quantity:
                    raise SerialCountMismatch(
                        f"Serial number count mismatch for item {variation.product_id}. "
                        f"Expected: {format_quantity(quantity)}, Provided: {len(serial_ids)}",
                        details={"product_id": variation.product_id, "expected": format_quantity(quantity), "provided": len(serial_ids)},
                    )
                serial_service.check_available(
                    serial_ids,
                    location_id=origin.id,
                    variation_id=variation.id,
                    purpose="transfer",
                )
            prepared.append((variation, quantity, serial_ids))

        transfer = Transfer(
            transfer_number=next_document_number(
                location_id=origin.id,
                document_type="TRANSFER",
                prefix="TR",
            ),
            from_location_id=origin.id,
            to_location_id=destination.id,
            status=TransferStatus.DRAFT.value,
            notes=notes,
            created_by_user_id=user_id,
            created_at=utcnow(),
        )
        db.session.add(transfer)
        db.session.flush()

        for variation, quantity, serial_ids in prepared:
            db.session.add(TransferItem(
                transfer_id=transfer.id,
                product_id=variation.product_id,
                variation_id=variation.id,
                quantity=quantity,
                serial_number_ids=serial_ids or None,
            ))

        _audit(
            transfer,
            user_id,
            audit_service.TRANSFER_CREATE,
            f"Transfer {transfer.transfer_number} created from {origin.name} to {destination.name}",
        )
        return _commit(transfer, "created", user_id)

    return run_with_retry(_op)


def submit_for_check(transfer_id: int, *, user_id: int) -> Transfer:
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.SUBMIT)
        transfer.status = target.value
        _audit(transfer, user_id, audit_service.TRANSFER_SUBMIT, f"Transfer {transfer.transfer_number} submitted for checking")
        return _commit(transfer, "submitted", user_id)

    return run_with_retry(_op)


def approve(transfer_id: int, *, user_id: int, check_notes: str | None = None) -> Transfer:
    """pending_check -> checked. The creator can never approve."""
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.APPROVE)
        transfer.status = target.value
        transfer.checked_by_user_id = user_id
        transfer.checked_at = utcnow()
        transfer.check_notes = check_notes
        transfer.rejection_reason = None
        _audit(transfer, user_id, audit_service.TRANSFER_APPROVE, f"Transfer {transfer.transfer_number} approved")
        return _commit(transfer, "approved", user_id)

    return run_with_retry(_op)


def reject(transfer_id: int, *, user_id: int, reason: str) -> Transfer:
    """pending_check -> draft with the reason stored. The creator can never reject."""
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")

    def _op():
        transfer, target = _begin(transfer_id, user_id, A.REJECT)
        transfer.status = target.value
        transfer.checked_by_user_id = user_id
        transfer.checked_at = utcnow()
        transfer.rejection_reason = reason.strip()
        _audit(
            transfer,
            user_id,
            audit_service.TRANSFER_REJECT,
            f"Transfer {transfer.transfer_number} rejected: {transfer.rejection_reason}",
            {"reason": transfer.rejection_reason},
        )
        return _commit(transfer, "rejected", user_id)

    return run_with_retry(_op)


def send(transfer_id: int, *, user_id: int) -> Transfer:
    """
    checked -> in_transit.

    Debits every item at the origin and moves serial units in transit. One
    short item aborts the whole send.
    """
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.SEND)

        unit_ids = []
        for item in transfer.items:
            stock_ledger_service.reserve_and_debit(
                item.variation_id,
                transfer.from_location_id,
                item.quantity,
                reference_type="transfer",
                reference_id=transfer.id,
                reference_line_id=item.id,
                movement_type=stock_ledger_service.MOVEMENT_TRANSFER_OUT,
                user_id=user_id,
                product_id=item.product_id,
                note=transfer.transfer_number,
            )
            if item.serial_number_ids:
                serial_service.dispatch(
                    item.serial_number_ids,
                    transfer,
                    variation_id=item.variation_id,
                    user_id=user_id,
                )
                unit_ids.extend(item.serial_number_ids)

        transfer.status = target.value
        transfer.stock_deducted = True
        transfer.sent_by_user_id = user_id
        transfer.sent_at = utcnow()

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.TRANSFER_SEND,
            entity_type="stock_transfer",
            entity_id=transfer.id,
            entity_ids=unit_ids,
            description=f"Transfer {transfer.transfer_number} sent; stock deducted at origin",
            details={"transfer_number": transfer.transfer_number, "status": transfer.status},
        )
        return _commit(transfer, "sent", user_id)

    return run_with_retry(_op)


def mark_arrived(transfer_id: int, *, user_id: int) -> Transfer:
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.MARK_ARRIVED)
        transfer.status = target.value
        transfer.arrived_by_user_id = user_id
        transfer.arrived_at = utcnow()
        _audit(transfer, user_id, audit_service.TRANSFER_ARRIVED, f"Transfer {transfer.transfer_number} arrived at destination")
        return _commit(transfer, "arrived", user_id)

    return run_with_retry(_op)


def start_verification(transfer_id: int, *, user_id: int) -> Transfer:
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.START_VERIFICATION)
        transfer.status = target.value
        transfer.verification_started_by_user_id = user_id
        transfer.verification_started_at = utcnow()
        _audit(
            transfer,
            user_id,
            audit_service.TRANSFER_VERIFICATION_START,
            f"Verification started for transfer {transfer.transfer_number}",
        )
        return _commit(transfer, "verification started", user_id)

    return run_with_retry(_op)


def verify_item(
    transfer_id: int,
    item_id: int,
    *,
    user_id: int,
    received_quantity,
    notes: str | None = None,
    received_serial_number_ids: list[int] | None = None,
) -> Transfer:
    """
    Record what arrived for one item.

    A shortfall is recorded as a discrepancy, not an error. Receiving more
    than was sent is refused. For serial items the received units default to
    every sent unit and their count must equal received_quantity. After the
    last item is verified the transfer becomes verified.
    """
    received = quantize_quantity(received_quantity)
    if received < 0:
        raise ValidationError("received_quantity must be >= 0")

    def _op():
        transfer, _ = _begin(transfer_id, user_id, A.VERIFY_ITEM)

        item = next((i for i in transfer.items if i.id == item_id), None)
        if item is None:
            raise RecordNotFound(f"Transfer item {item_id} not found on {transfer.transfer_number}")
        if item.verified:
            raise InvalidTransition(f"Transfer item {item_id} is already verified")
        if received > item.quantity:
            raise ValidationError("Cannot receive more than sent quantity")

        if item.serial_number_ids:
            sent_ids = list(item.serial_number_ids)
            serial_ids = sent_ids if received_serial_number_ids is None else list(received_serial_number_ids)
            unknown = [i for i in serial_ids if i not in sent_ids]
            if unknown:
                raise ValidationError(f"Serial number {unknown[0]} was not sent on this transfer")
            if Decimal(len(serial_ids)) != received:
                raise SerialCountMismatch(
                    f"Serial number count mismatch for item {item.product_id}. "
                    f"Expected: {format_quantity(received)}, Provided: {len(serial_ids)}",
                    details={"product_id": item.product_id, "expected": format_quantity(received), "provided": len(serial_ids)},
                )
            item.received_serial_number_ids = serial_ids
        elif received_serial_number_ids:
            raise ValidationError("This item has no serial numbers")

        now = utcnow()
        item.received_quantity = received
        item.verified = True
        item.verified_by_user_id = user_id
        item.verified_at = now
        item.has_discrepancy = received != item.quantity
        item.discrepancy_notes = notes

        if all(i.verified for i in transfer.items):
            transfer.status = TransferStatus.VERIFIED.value
            transfer.verified_by_user_id = user_id
            transfer.verified_at = now

        _audit(
            transfer,
            user_id,
            audit_service.TRANSFER_ITEM_VERIFY,
            f"Verified item {item.id} on transfer {transfer.transfer_number}: "
            f"sent {format_quantity(item.quantity)}, received {format_quantity(received)}",
            {"item_id": item.id, "variance": format_quantity(item.variance)},
        )
        return _commit(transfer, "item verified", user_id)

    return run_with_retry(_op)


def complete(transfer_id: int, *, user_id: int) -> Transfer:
    """
    verified -> completed.

    Credits the destination with each item's received quantity. Serial units
    that were not received stay in transit and show up in reconciliation.
    """
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.COMPLETE)

        received_units = []
        variances = {}
        for item in transfer.items:
            received = item.received_quantity if item.received_quantity is not None else Decimal("0")
            if received > 0:
                stock_ledger_service.credit(
                    item.variation_id,
                    transfer.to_location_id,
                    received,
                    reference_type="transfer",
                    reference_id=transfer.id,
                    reference_line_id=item.id,
                    movement_type=stock_ledger_service.MOVEMENT_TRANSFER_IN,
                    user_id=user_id,
                    note=transfer.transfer_number,
                )
            if item.received_serial_number_ids:
                serial_service.receive(item.received_serial_number_ids, transfer, user_id=user_id)
                received_units.extend(item.received_serial_number_ids)
            if item.has_discrepancy:
                variances[str(item.id)] = format_quantity(item.variance)

        transfer.status = target.value
        transfer.completed_by_user_id = user_id
        transfer.completed_at = utcnow()

        audit_service.log_action(
            user_id=user_id,
            action=audit_service.TRANSFER_RECEIVE,
            entity_type="stock_transfer",
            entity_id=transfer.id,
            entity_ids=received_units,
            description=f"Transfer {transfer.transfer_number} completed; stock added at destination",
            details={"transfer_number": transfer.transfer_number, "status": transfer.status, "variances": variances},
        )
        return _commit(transfer, "completed", user_id)

    return run_with_retry(_op)


def cancel(transfer_id: int, *, user_id: int, reason: str | None = None) -> Transfer:
    """
    Cancel a transfer whose stock has not left the origin.

    Transfers with stock_deducted set are refused, so cancelling never
    touches the ledger.
    """
    def _op():
        transfer, target = _begin(transfer_id, user_id, A.CANCEL)
        if transfer.stock_deducted:
            raise InvalidTransition(
                f"Cannot cancel transfer {transfer.transfer_number}: stock has already been sent",
                details={"status": transfer.status, "action": A.CANCEL.value},
            )

        transfer.status = target.value
        transfer.cancelled_by_user_id = user_id
        transfer.cancelled_at = utcnow()
        transfer.cancellation_reason = reason
        _audit(
            transfer,
            user_id,
            audit_service.TRANSFER_DELETE,
            f"Transfer {transfer.transfer_number} cancelled",
            {"reason": reason},
        )
        return _commit(transfer, "cancelled", user_id)

    return run_with_retry(_op)


def available_actions(transfer: Transfer, user_id: int) -> list[str]:
    """Actions user_id may perform on transfer right now."""
    permissions = get_user_permissions(user_id)
    allowed = []
    for action in actions_from(transfer.status):
        if ACTION_PERMISSIONS[action] not in permissions:
            continue
        location_field = ACTION_LOCATIONS.get(action)
        if location_field and not user_can_access_location(user_id, getattr(transfer, location_field)):
            continue
        if sod_violation(transfer, user_id, action):
            continue
        if action == A.CANCEL and transfer.stock_deducted:
            continue
        allowed.append(action.value)
    return allowed


def get_transfer(transfer_id: int, *, org_id: int | None = None) -> Transfer:
    transfer = db.session.get(Transfer, transfer_id)
    if transfer is None or (org_id is not None and transfer.from_location.org_id != org_id):
        raise RecordNotFound(f"Transfer {transfer_id} not found")
    return transfer


def list_transfers(
    *,
    org_id: int,
    status: str | None = None,
    location_id: int | None = None,
    limit: int = 100,
) -> list[Transfer]:
    query = (
        db.session.query(Transfer)
        .join(Location, Location.id == Transfer.from_location_id)
        .filter(Location.org_id == org_id)
    )
    if status:
        query = query.filter(Transfer.status == status)
    if location_id is not None:
        query = query.filter(
            db.or_(Transfer.from_location_id == location_id, Transfer.to_location_id == location_id)
        )
    return query.order_by(Transfer.id.desc()).limit(min(limit, 500)).all()
