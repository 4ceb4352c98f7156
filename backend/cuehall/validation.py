from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from cuehall.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Maximum hourly rate / price: 999,999,999.99
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT = Decimal("999999999.99")
CENT = Decimal("0.01")

# ESP32 GPIO pins wired to the 16-channel relay board
ALLOWED_GPIO_PINS = (23, 19, 18, 27, 26, 25, 33, 32, 14, 13, 12, 5, 17, 16, 4, 15)
MIN_RELAY_CHANNEL = 0
MAX_RELAY_CHANNEL = 15


class DomainError(Exception):
    """Base for errors surfaced to the caller with an HTTP status."""
    status_code = 400


class ValidationError(DomainError, ValueError):
    """400-level input problem."""
    status_code = 400


class AuthenticationError(DomainError):
    """401-level: device token, signature or timestamp rejected."""
    status_code = 401


class ReplayError(AuthenticationError):
    """401-level: nonce already presented within the freshness window."""


class AuthorizationError(DomainError):
    """403-level: elevated action without a valid re-auth grant."""
    status_code = 403


class NotFoundError(DomainError):
    """404-level: missing table, session, device or command."""
    status_code = 404


class ConflictError(DomainError, ValueError):
    """409-level business rule conflict (e.g., table already occupied)."""
    status_code = 409


class StateError(DomainError):
    """409-level: operation invalid for the current session or table status."""
    status_code = 409


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{col.key} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        raise ValidationError(f"{col.key} must be an integer")

    # Fixed-point amounts
    if isinstance(coltype, Numeric):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        return parse_amount(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse a non-negative fixed-point amount (2 decimal places max)."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} allows at most 2 decimal places")
    return amount


def parse_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be an integer")
        value = int(value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if number <= 0:
        raise ValidationError(f"{field} must be > 0")
    return number


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_table(patch: dict) -> None:
    """
    Wiring rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    channel = patch.get("relay_channel")
    if channel is not None and not (MIN_RELAY_CHANNEL <= channel <= MAX_RELAY_CHANNEL):
        raise ValidationError(
            f"relay_channel must be between {MIN_RELAY_CHANNEL} and {MAX_RELAY_CHANNEL}"
        )

    pin = patch.get("gpio_pin")
    if pin is not None and pin not in ALLOWED_GPIO_PINS:
        raise ValidationError(f"gpio_pin {pin} is not an allowed relay pin")
