"""Shared Pydantic request and response models for API endpoints.

Money fields accept integer minor units (``4500``) or a decimal string in
major units (``"45.00"``).  JSON floats are refused by the strict types so
that ``45.0`` can never be mistaken for 45 cents.
"""

from __future__ import annotations

from datetime import date, datetime

from billing_core.models import PlanStatus, PricingType
from billing_core.onboarding.state_machine import BusinessStatus
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

Money = StrictInt | StrictStr

# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    """Acknowledgement returned to the processor."""

    status: str
    event_id: str | None = None


# ---------------------------------------------------------------------------
# Plans and pricing
# ---------------------------------------------------------------------------


class MonthlyPriceIn(BaseModel):
    """One schedule entry: ``{"month": "2026-07", "price": 4500}``."""

    month: date | StrictStr
    price: Money


class PlanUpdateRequest(BaseModel):
    """Request body for ``PATCH /plans/{plan_id}``; every field is optional."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=256)
    description: str | None = None
    status: PlanStatus | None = None
    pricing_type: PricingType | None = None
    base_price: Money | None = None
    schedule: list[MonthlyPriceIn] | None = None


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: str
    name: str
    description: str | None = None
    status: str
    pricing_type: str
    base_price: int | None = None
    currency: str
    interval: str
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None


class ScheduleEditResponse(BaseModel):
    current_price_id: str | None = None
    current_price_supplied: bool = False
    current_price_changed: bool = False
    items_created: int = 0


class MigrationResponse(BaseModel):
    from_type: PricingType
    to_type: PricingType
    price_id: str
    considered: int
    updated: int
    errored: int
    archived_items: int
    errors: list[dict[str, str]] = Field(default_factory=list)


class ResumeResponse(BaseModel):
    """Result of a bulk resume run."""

    plan_id: str
    price_id: str
    considered: int
    resumed: int
    charged: int
    skipped: int
    errored: int
    errors: list[dict[str, str]] = Field(default_factory=list)


class PlanUpdateResponse(BaseModel):
    plan: PlanResponse
    changed_fields: list[str] = Field(default_factory=list)
    new_price_id: str | None = None
    migration: MigrationResponse | None = None
    schedule: ScheduleEditResponse | None = None
    resume: ResumeResponse | None = None


class PriceResolutionResponse(BaseModel):
    """The price billing a plan at a point in time."""

    plan_id: str
    pricing_type: PricingType
    month: date
    price_id: str
    amount: int | None = None


class ScheduleItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    effective_month: date
    price: int
    applied: bool
    stripe_price_id: str | None = None
    applied_at: datetime | None = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: str
    alert_type: str
    severity: str
    title: str
    message: str
    subject_type: str | None = None
    subject_id: str | None = None
    metadata_json: dict | None = Field(default=None, serialization_alias="metadata")  # type: ignore[type-arg]
    resolved: bool
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    unresolved_counts: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class TransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None = None
    to_status: str
    reason: str
    source: str
    source_event_id: str | None = None
    created_at: datetime


class NextActionResponse(BaseModel):
    action: str
    message: str
    can_access_dashboard: bool


class OnboardingStatusResponse(BaseModel):
    business_id: str
    status: BusinessStatus
    next_action: NextActionResponse
    history: list[TransitionResponse] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    """Request body for a user-initiated onboarding status change."""

    to_status: BusinessStatus
    reason: str = Field(..., min_length=1, max_length=1000)
