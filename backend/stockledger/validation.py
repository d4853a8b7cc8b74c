from __future__ import annotations

from typing import Any

from .exceptions import ValidationError


# Upper bound for any single money amount in minor units (9,999,999.99)
MAX_AMOUNT_CENTS = 999_999_999


def require_json_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def coerce_int(value: Any, field: str, *, minimum: int | None = None, allow_none: bool = False) -> int | None:
    """
    Strict integer coercion for request input.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals
    and scientific notation.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")

    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return result


def coerce_amount_cents(value: Any, field: str = "amount_cents") -> int:
    amount = coerce_int(value, field, minimum=0)
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return amount


def coerce_optional_str(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def parse_items(raw_items: Any, *, extra_int_fields: tuple[str, ...] = ()) -> list[dict]:
    """
    Validate a list of {product_id, quantity, ...} objects from a request.

    Quantities must be positive integers; extra integer fields must be >= 0.
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        item = {
            "product_id": coerce_int(raw.get("product_id"), f"items[{index}].product_id", minimum=1),
            "quantity": coerce_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1),
        }
        for field in extra_int_fields:
            if raw.get(field) is not None:
                item[field] = coerce_int(raw.get(field), f"items[{index}].{field}", minimum=0)
        items.append(item)
    return items
