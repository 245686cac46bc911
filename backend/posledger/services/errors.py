# Overview: Domain error taxonomy shared by the inventory, sales and transfer services.

from __future__ import annotations


class InventoryError(Exception):
    """
    Base for caller-correctable failures.

    The message is shown to the operator verbatim; details carries the
    structured values (available quantity, expected count, ...) and is merged
    into the JSON error body.
    """
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStock(InventoryError):
    pass


class SerialCountMismatch(InventoryError):
    pass


class UnitNotAvailable(InventoryError):
    pass


class PaymentMismatch(InventoryError):
    pass


class InvalidTransition(InventoryError):
    """Workflow action attempted from the wrong state or by the wrong actor."""


class AlreadyVoided(InventoryError):
    pass


class DuplicateSale(InventoryError):
    http_status = 409


class RecordNotFound(InventoryError):
    http_status = 404


class UnitMovementIntegrityError(InventoryError):
    """A unit movement without a real unit id was about to be written."""
    http_status = 500


class SeparationOfDutiesError(InventoryError):
    """The acting user already played a conflicting role on this document."""
    http_status = 403


class LocationAccessDenied(InventoryError):
    http_status = 403


class CommitOutcomeUnknown(InventoryError):
    """The COMMIT failed; the change may or may not have been recorded."""
    http_status = 503
