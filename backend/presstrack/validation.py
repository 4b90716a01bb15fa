from __future__ import annotations

from typing import Any, Optional

from .errors import ValidationError


def require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", requested=missing)


def coerce_int(value: Any, field: str, *, required: bool = True) -> Optional[int]:
    """
    Strict integer coercion for JSON payloads.

    Accepts ints (not bools) and plain digit strings. Floats, decimals and
    scientific notation are rejected rather than rounded.
    """
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, int) and not isinstance(value, bool):
        return value

    if isinstance(value, str):
        stripped = value.strip()
        # Reject scientific notation (e.g., "1e3") and decimal points (e.g., "12.5")
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a whole number")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be a whole number")

    if isinstance(value, float):
        raise ValidationError(f"{field} must be a whole number, not a decimal")

    raise ValidationError(f"{field} must be a whole number")


def coerce_bool(value: Any, field: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise ValidationError(f"{field} must be a boolean")


def optional_str(value: Any, field: str, *, max_len: int = 255) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return value or None
