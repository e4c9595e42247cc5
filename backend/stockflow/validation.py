from __future__ import annotations

from typing import Any


# Maximum amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def coerce_int(value: Any, field: str, *, minimum: int | None = None, required: bool = True) -> int | None:
    """
    Strict integer parsing for JSON bodies and query strings.

    Accepts ints and plain digit strings; rejects bools, floats, decimals and
    scientific notation.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        # Reject scientific notation (e.g., "1e15") and decimals (e.g., "12.5")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
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
    if field.endswith("_cents") and result > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS} cents")
    return result


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def lot_rows(payload: dict) -> list[tuple[int, int]]:
    """
    Read `lots: [{"lot_id": .., "quantity": ..}, ...]` from a request body.

    Rows with quantity 0 are kept here; the allocation engine drops them.
    """
    raw = payload.get("lots") or []
    if not isinstance(raw, list):
        raise ValidationError("lots must be a list")
    rows = []
    for i, row in enumerate(raw):
        if not isinstance(row, dict):
            raise ValidationError(f"lots[{i}] must be an object")
        rows.append((
            coerce_int(row.get("lot_id"), f"lots[{i}].lot_id", minimum=1),
            coerce_int(row.get("quantity"), f"lots[{i}].quantity", minimum=0),
        ))
    return rows
