"""Exception hierarchy for billing operations.

Services raise these; the HTTP layer translates them into status codes and
bulk jobs record them per item.
"""

from __future__ import annotations

from datetime import date


class BillingError(Exception):
    """Base class for all billing-engine errors."""


class PriceUnavailableError(BillingError):
    """No applied price exists for the requested month of a dynamic plan."""

    def __init__(self, plan_id: str, month: date) -> None:
        self.plan_id = plan_id
        self.month = month
        super().__init__(f"No price available for plan {plan_id} in {month:%Y-%m}")


class ScheduleValidationError(BillingError, ValueError):
    """A submitted monthly price schedule or money value is malformed."""


class PricingMigrationError(BillingError, ValueError):
    """A FIXED/DYNAMIC conversion request cannot be carried out."""


class InvalidTransitionError(BillingError):
    """A user-initiated onboarding status change is not allowed."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")


class PlanNotFoundError(BillingError, LookupError):
    """The referenced membership plan does not exist."""


class BusinessNotFoundError(BillingError, LookupError):
    """The referenced business does not exist."""


class InvalidSignatureError(BillingError):
    """An inbound processor event failed signature verification."""
