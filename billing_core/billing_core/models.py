"""Domain enumerations and value objects shared by the state layer and services."""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import BaseModel, Field


class PricingType(str, Enum):
    """How a membership plan's price is determined."""

    FIXED = "FIXED"
    DYNAMIC = "DYNAMIC"


class PlanStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class AlertType(str, Enum):
    """Categories of persisted operator alerts."""

    MISSING_DYNAMIC_PRICE = "MISSING_DYNAMIC_PRICE"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTIONS_AUTO_RESUMED = "SUBSCRIPTIONS_AUTO_RESUMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PRICE_APPLY_FAILED = "PRICE_APPLY_FAILED"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class SubscriptionKind(str, Enum):
    """Which internal representation a subscription record lives in."""

    CURRENT = "current"
    LEGACY = "legacy"


# Processor statuses considered live for price conversions.
BILLABLE_STATUSES: frozenset[str] = frozenset({"active", "trialing", "paused"})

CANCELED_STATUS = "canceled"


class MonthlyPrice(BaseModel):
    """One entry of a plan's monthly price schedule."""

    month: date = Field(..., description="First day of the month the price applies to")
    price: int = Field(..., gt=0, description="Price in integer minor units")
