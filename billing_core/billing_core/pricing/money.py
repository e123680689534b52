"""Normalisation of money input to integer minor units.

Integers are always minor units: ``4500`` is 45.00, never 4500.00.  Strings
with a decimal point are major units and must not carry sub-minor precision.
Floats are refused outright since they cannot represent cents exactly.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from billing_core.errors import ScheduleValidationError

_MINOR_PER_MAJOR = 100


def to_minor_units(value: int | str | Decimal) -> int:
    """Convert *value* to a positive integer amount in minor units.

    Raises
    ------
    ScheduleValidationError
        If the value is a float, a bool, not numeric, has more than two
        decimal places, or is not strictly positive.
    """
    if isinstance(value, (bool, float)):
        raise ScheduleValidationError(f"Money must be integer minor units or a decimal string, got {value!r}")

    if isinstance(value, int):
        amount = value
    else:
        text = str(value).strip()
        try:
            parsed = Decimal(text)
        except InvalidOperation as exc:
            raise ScheduleValidationError(f"Invalid money amount {value!r}") from exc
        if not parsed.is_finite():
            raise ScheduleValidationError(f"Invalid money amount {value!r}")

        if isinstance(value, Decimal) or "." in text:
            scaled = parsed * _MINOR_PER_MAJOR
            if scaled != scaled.to_integral_value():
                raise ScheduleValidationError(f"Amount {value!r} has more precision than one minor unit")
            amount = int(scaled)
        else:
            if parsed != parsed.to_integral_value():
                raise ScheduleValidationError(f"Invalid money amount {value!r}")
            amount = int(parsed)

    if amount <= 0:
        raise ScheduleValidationError(f"Amount must be positive, got {value!r}")
    return amount
