from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from posledger.quantities import CENT, QUANTITY_PLACES, cents_from_amount, to_decimal


# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

SERIAL_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,191}$")


class ValidationError(ValueError):
    """400-level input problem."""


def pick(data: dict, *keys: str, default: Any = None) -> Any:
    """
    Return the first key present in data.

    Request bodies use snake_case; older clients send camelCase, so callers
    list both spellings: pick(data, "item_id", "itemId").
    """
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer")
    if parsed <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return parsed


def parse_optional_id(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    return parse_id(value, field)


def parse_id_list(values: Any, field: str) -> list[int]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{field} must be a list of ids")
    ids = [parse_id(v, field) for v in values]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"{field} contains duplicate ids")
    return ids


def _parse_decimal(value: Any, field: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, str):
        value = value.strip()
        if not value or "e" in value.lower():
            raise ValidationError(f"{field} must be a plain number")
    try:
        parsed = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return parsed


def parse_quantity(value: Any, field: str = "quantity", *, allow_zero: bool = False) -> Decimal:
    """Positive decimal quantity with at most four decimal places."""
    qty = _parse_decimal(value, field)
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    if qty != qty.quantize(QUANTITY_PLACES):
        raise ValidationError(f"{field} allows at most 4 decimal places")
    return qty.quantize(QUANTITY_PLACES)


def parse_amount_cents(value: Any, field: str, *, default: int | None = None) -> int:
    """Currency amount given in major units (e.g. 70.00), returned in cents."""
    if value is None and default is not None:
        return default
    amount = _parse_decimal(value, field)
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} allows at most 2 decimal places")
    cents = cents_from_amount(amount)
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS / 100:,.2f}")
    return cents


def require_text(value: Any, field: str, *, max_length: int | None = None) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def optional_text(value: Any, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_length:
        text = text[:max_length]
    return text


def validate_serial_number(serial: Any) -> str:
    if not isinstance(serial, str) or not SERIAL_NUMBER_PATTERN.match(serial.strip()):
        raise ValidationError(
            f"Invalid serial number {serial!r}: use 3-191 letters, digits, '-' or '_'"
        )
    return serial.strip()
