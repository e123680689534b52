"""Month arithmetic and money normalisation for plan pricing."""

from billing_core.pricing.money import to_minor_units
from billing_core.pricing.months import month_interval, month_start, next_month_start, parse_month

__all__ = [
    "month_interval",
    "month_start",
    "next_month_start",
    "parse_month",
    "to_minor_units",
]
