"""
Core — Input Coercion

Normalises caller-supplied quantities, identifiers and dates before they
reach the ORM, raising BusinessRuleViolation with the offending field.

@file core/parsing.py
"""

import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from core.constants import QUANTITY_DECIMAL_PLACES, QUANTITY_MAX_DIGITS
from core.exceptions import BusinessRuleViolation

QUANTUM = Decimal(1).scaleb(-QUANTITY_DECIMAL_PLACES)
# Exclusive upper bound of what a quantity column can hold.
QUANTITY_LIMIT = Decimal(10) ** (QUANTITY_MAX_DIGITS - QUANTITY_DECIMAL_PLACES)


def to_quantity(value, *, field_name: str = 'quantity', allow_negative: bool = False) -> Decimal:
    """
    Convert ``value`` to a Decimal with three decimal places. Zero is always
    rejected; negative values only when ``allow_negative`` is set.
    """
    if value is None or value == '' or isinstance(value, bool):
        raise BusinessRuleViolation(
            detail=f'{field_name} is required and must be a number.',
            context={field_name: value},
        )
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise BusinessRuleViolation(
            detail=f'{field_name} must be a number.', context={field_name: str(value)},
        ) from exc
    if not quantity.is_finite():
        raise BusinessRuleViolation(
            detail=f'{field_name} must be finite.', context={field_name: str(value)},
        )
    try:
        quantity = quantity.quantize(QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise BusinessRuleViolation(
            detail=f'{field_name} is out of range.', context={field_name: str(value)},
        ) from exc
    if abs(quantity) >= QUANTITY_LIMIT:
        raise BusinessRuleViolation(
            detail=f'{field_name} must be below {QUANTITY_LIMIT:,}.',
            context={field_name: str(value), 'limit': str(QUANTITY_LIMIT)},
        )
    if quantity == 0 or (quantity < 0 and not allow_negative):
        qualifier = 'non-zero' if allow_negative else 'positive'
        raise BusinessRuleViolation(
            detail=f'{field_name} must be {qualifier}.', context={field_name: str(value)},
        )
    return quantity


def to_uuid(value, *, field_name: str = 'id') -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as exc:
        raise BusinessRuleViolation(
            detail=f'{field_name} is not a valid identifier.', context={field_name: value},
        ) from exc


def to_date(value, *, field_name: str = 'date') -> date:
    """
    Accept a date, a datetime (its date part), an ISO date string or an
    ISO datetime string. The whole string must parse.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip() if isinstance(value, str) else ''
    try:
        if len(text) <= 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise BusinessRuleViolation(
            detail=f'{field_name} must be an ISO date (YYYY-MM-DD).', context={field_name: value},
        ) from exc


def to_flag(value, *, field_name: str = 'flag') -> bool:
    """Only real booleans are accepted; strings such as 'false' are rejected."""
    if not isinstance(value, bool):
        raise BusinessRuleViolation(
            detail=f'{field_name} must be true or false.', context={field_name: value},
        )
    return value
