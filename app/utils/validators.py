"""
Input sanitization and per-field validators for product payloads.

Each field validator takes the raw JSON value and either returns the cleaned
value or raises ``InvalidInputError``. ``FIELD_VALIDATORS`` doubles as the
allow-list of mutable product fields.
"""
import math
import re
import uuid
from typing import Any, Callable

from app.exceptions import InvalidInputError

NAME_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
CATEGORY_MAX_LENGTH = 100

STOCK_OPERATIONS = ("increment", "decrement", "set")

_ANGLE_BRACKETS = re.compile(r"[<>]")


def sanitize_string(value: str) -> str:
    """Strip angle brackets and surrounding whitespace."""
    return _ANGLE_BRACKETS.sub("", value).strip()


def is_number(value: Any) -> bool:
    """True for finite JSON numbers (booleans excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # integers too large to convert to a float
        return False


def is_valid_id(value: Any) -> bool:
    """True when ``value`` is a canonical product identifier."""
    if not isinstance(value, str):
        return False
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


def require_valid_id(value: Any) -> str:
    if not is_valid_id(value):
        raise InvalidInputError("Product ID is not valid", error="Invalid ID")
    return value


def validate_name(value: Any) -> str:
    if not isinstance(value, str) or not sanitize_string(value):
        raise InvalidInputError(
            "Name is required and must be a non-empty string", error="Invalid name"
        )
    name = sanitize_string(value)
    if len(name) > NAME_MAX_LENGTH:
        raise InvalidInputError(
            f"Name must be at most {NAME_MAX_LENGTH} characters", error="Invalid name"
        )
    return name


def validate_price(value: Any) -> float:
    if not is_number(value) or value < 0:
        raise InvalidInputError(
            "Price must be a non-negative number", error="Invalid price"
        )
    return float(value)


def _bounded_text(field: str, max_length: int) -> Callable[[Any], str]:
    label = field.capitalize()

    def validate(value: Any) -> str:
        if not isinstance(value, str):
            raise InvalidInputError(f"{label} must be a string", error=f"Invalid {field}")
        text = sanitize_string(value)
        if len(text) > max_length:
            raise InvalidInputError(
                f"{label} must be at most {max_length} characters",
                error=f"Invalid {field}",
            )
        return text

    validate.__name__ = f"validate_{field}"
    return validate


validate_description = _bounded_text("description", DESCRIPTION_MAX_LENGTH)
validate_category = _bounded_text("category", CATEGORY_MAX_LENGTH)


def validate_stock(value: Any) -> int:
    if not is_number(value) or value < 0:
        raise InvalidInputError(
            "Stock must be a non-negative number", error="Invalid stock"
        )
    return math.floor(value)


FIELD_VALIDATORS: dict[str, Callable[[Any], Any]] = {
    "name": validate_name,
    "price": validate_price,
    "description": validate_description,
    "category": validate_category,
    "stock": validate_stock,
}


def validate_quantity(value: Any) -> int:
    """Stock quantities are positive whole numbers."""
    if not is_number(value) or value <= 0 or value != math.floor(value):
        raise InvalidInputError(
            "Quantity must be a positive number", error="Invalid quantity"
        )
    return int(value)


def validate_operation(value: Any) -> str:
    if value is None:
        return "increment"
    if value not in STOCK_OPERATIONS:
        raise InvalidInputError(
            f"Operation must be one of: {', '.join(STOCK_OPERATIONS)}",
            error="Invalid operation",
        )
    return value
