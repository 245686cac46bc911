# Overview: Service-layer operations for document numbering (invoices, transfers).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from posledger.time_utils import period_code
from .errors import InventoryError


class DocumentSequenceError(InventoryError):
    """Raised when document sequence operations fail."""
    http_status = 409


def next_document_number(
    *,
    location_id: int,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next monthly document number for a location.

    Returns e.g. "INV-202610-0007". Runs inside the caller's transaction, so
    a rolled-back sale or transfer gives its number back. The first insert
    for a (location, period) pair runs in a savepoint; a concurrent insert
    that wins the unique constraint falls back to the UPDATE path.

    Numbers never outgrow the padded width: with the default pad the
    10,000th document of a month at one location raises
    DocumentSequenceError.
    """
    if not location_id:
        raise DocumentSequenceError("location_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    period = period_code()
    sequence_type = f"{document_type}-{period}"

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.location_id == location_id,
            DocumentSequence.document_type == sequence_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        value = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(location_id=location_id, document_type=sequence_type)
            .scalar()
        )
        return value - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        number = _current()
    else:
        try:
            with db.session.begin_nested():
                db.session.add(
                    DocumentSequence(location_id=location_id, document_type=sequence_type, next_number=2)
                )
            number = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            number = _current()

    if number >= 10 ** pad:
        raise DocumentSequenceError(
            f"Document numbers for {document_type} are exhausted for {period} at this location",
            details={"document_type": document_type, "period": period, "limit": 10 ** pad - 1},
        )

    return f"{prefix}-{period}-{str(number).zfill(pad)}"
