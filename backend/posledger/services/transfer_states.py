# Overview: Transfer lifecycle states, actions and the transition table.

from __future__ import annotations

from enum import Enum

from .errors import InvalidTransition


class TransferStatus(str, Enum):
    DRAFT = "draft"
    PENDING_CHECK = "pending_check"
    CHECKED = "checked"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransferAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    SEND = "send"
    MARK_ARRIVED = "mark_arrived"
    START_VERIFICATION = "start_verification"
    VERIFY_ITEM = "verify_item"
    COMPLETE = "complete"
    CANCEL = "cancel"


S = TransferStatus
A = TransferAction

# The only definition of legal moves. verify_item stays in verifying; the
# service promotes the transfer to verified once every item is verified.
TRANSITIONS: dict[tuple[TransferStatus, TransferAction], TransferStatus] = {
    (S.DRAFT, A.SUBMIT): S.PENDING_CHECK,
    (S.PENDING_CHECK, A.APPROVE): S.CHECKED,
    (S.PENDING_CHECK, A.REJECT): S.DRAFT,
    (S.CHECKED, A.SEND): S.IN_TRANSIT,
    (S.IN_TRANSIT, A.MARK_ARRIVED): S.ARRIVED,
    (S.ARRIVED, A.START_VERIFICATION): S.VERIFYING,
    (S.VERIFYING, A.VERIFY_ITEM): S.VERIFYING,
    (S.VERIFIED, A.COMPLETE): S.COMPLETED,
    (S.DRAFT, A.CANCEL): S.CANCELLED,
    (S.PENDING_CHECK, A.CANCEL): S.CANCELLED,
    (S.CHECKED, A.CANCEL): S.CANCELLED,
    (S.IN_TRANSIT, A.CANCEL): S.CANCELLED,
}


def can_transition(status, action) -> bool:
    return (TransferStatus(status), TransferAction(action)) in TRANSITIONS


def next_status(status, action) -> TransferStatus:
    """Target status for action, or InvalidTransition."""
    status = TransferStatus(status)
    action = TransferAction(action)
    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidTransition(
            f"Cannot {action.value} transfer in status {status.value}",
            details={"status": status.value, "action": action.value},
        ) from None


def actions_from(status) -> list[TransferAction]:
    status = TransferStatus(status)
    return [action for (from_status, action) in TRANSITIONS if from_status == status]
