# Overview: Pure billing arithmetic; no database access and no side effects.

"""
Rate Calculator

All amounts are Decimal and rounded UP to whole currency units. Open-ended
sessions are priced as follows:
- OWNER_LOCK: always 0
- FLEXIBLE: 0 while running; at stop, every started hour is billed
- PACKAGE: the package's fixed price regardless of the clock
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_CEILING

from ..models.billing import (
    RATE_FLEXIBLE,
    RATE_HOURLY,
    RATE_MANUAL,
    RATE_OWNER_LOCK,
    RATE_PACKAGE,
)
from ..validation import ValidationError


MIN_START_MINUTES = 60
START_STEP_MINUTES = 60
MIN_EXTENSION_MINUTES = 15
EXTENSION_STEP_MINUTES = 15

ZERO = Decimal("0")
_WHOLE = Decimal("1")


def _ceil_whole(amount: Decimal) -> Decimal:
    return amount.quantize(_WHOLE, rounding=ROUND_CEILING)


def prorated_amount(rate_per_hour: Decimal, minutes: int) -> Decimal:
    """ceil(rate_per_hour * minutes / 60) at zero decimal places."""
    return _ceil_whole(Decimal(rate_per_hour) * Decimal(minutes) / Decimal(60))


def compute_session_total(
    rate_type: str,
    rate_per_hour: Decimal,
    effective_minutes: int,
    package_price: Decimal | None = None,
    *,
    stopped: bool = False,
) -> Decimal:
    """
    Total owed for a session of effective_minutes.

    FLEXIBLE stays at 0 until stopped=True, then bills whole hours rounded up.
    """
    if rate_type in (RATE_HOURLY, RATE_MANUAL):
        return prorated_amount(rate_per_hour, effective_minutes)
    if rate_type == RATE_PACKAGE:
        if package_price is None:
            raise ValidationError("PACKAGE sessions require a package price")
        return Decimal(package_price)
    if rate_type == RATE_OWNER_LOCK:
        return ZERO
    if rate_type == RATE_FLEXIBLE:
        if not stopped:
            return ZERO
        hours = math.ceil(effective_minutes / 60)
        return _ceil_whole(Decimal(hours) * Decimal(rate_per_hour))
    raise ValidationError(f"Unknown rate type: {rate_type}")


def compute_extension_cost(
    rate_per_hour: Decimal,
    additional_minutes: int,
    package_price: Decimal | None = None,
) -> Decimal:
    if package_price is not None:
        return Decimal(package_price)
    return prorated_amount(rate_per_hour, additional_minutes)


def elapsed_minutes(start, end) -> int:
    """Whole minutes between start and end, partial minutes rounded up."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def validate_start_duration(minutes: int, *, privileged: bool = False) -> None:
    """
    Starts: at least MIN_START_MINUTES, whole hours only.

    privileged actors go down the OWNER_LOCK path and skip granularity rules.
    """
    if privileged:
        return
    if minutes < MIN_START_MINUTES:
        raise ValidationError(f"durationMinutes must be at least {MIN_START_MINUTES}")
    if minutes % START_STEP_MINUTES != 0:
        raise ValidationError(f"durationMinutes must be a multiple of {START_STEP_MINUTES}")


def validate_extension_duration(minutes: int) -> None:
    if minutes < MIN_EXTENSION_MINUTES:
        raise ValidationError(f"additionalMinutes must be at least {MIN_EXTENSION_MINUTES}")
    if minutes % EXTENSION_STEP_MINUTES != 0:
        raise ValidationError(f"additionalMinutes must be a multiple of {EXTENSION_STEP_MINUTES}")
