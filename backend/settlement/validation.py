# Overview: Shared error classes and request-input coercion helpers.

from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., receipt already reviewed)."""


class NotFoundError(LookupError):
    """404-level missing entity."""


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """
    Strictly coerce JSON/form input to int.

    Rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be an integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return result


def parse_optional_int(value: Any, field: str, *, minimum: int | None = None) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return parse_int(value, field, minimum=minimum)


def require_text(data: dict, field: str, *, max_length: int = 255) -> str:
    value = data.get(field)
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value


def optional_text(data: dict, field: str, *, max_length: int = 255) -> str | None:
    value = data.get(field)
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value


def require_email(data: dict, field: str) -> str:
    value = require_text(data, field, max_length=255)
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValidationError(f"{field} must be a valid email address")
    return value.lower()
