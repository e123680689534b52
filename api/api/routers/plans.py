"""Plan pricing endpoints: update, price resolution, schedule, and resume."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.errors import (
    PlanNotFoundError,
    PriceUnavailableError,
    PricingMigrationError,
    ScheduleValidationError,
)
from billing_core.pricing import month_start
from billing_core.state.repository import PlanRepository
from billing_core.state.tables import PlanTable
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import BusinessDep, ProcessorDep, SessionDep, SettingsDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    PlanResponse,
    PlanUpdateRequest,
    PlanUpdateResponse,
    PriceResolutionResponse,
    ResumeResponse,
    ScheduleItemResponse,
)
from api.services.plan_service import PlanService
from api.services.price_queue_service import PriceQueueService
from api.services.resume_engine import ResumeResult, SubscriptionResumeEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["plans"])


async def _get_plan(session: AsyncSession, plan_id: str, business_id: str) -> PlanTable:
    plan = await PlanRepository(session).get(plan_id, business_id=business_id)
    if plan is None:
        raise HTTPException(status_code=404, detail=f"Plan {plan_id} not found")
    return plan


def _resume_payload(result: ResumeResult) -> dict[str, Any]:
    return {
        "plan_id": result.plan_id,
        "price_id": result.price_id,
        "considered": result.considered,
        "resumed": result.resumed,
        "charged": result.charged,
        "skipped": result.skipped,
        "errored": result.errored,
        "errors": result.errors,
    }


@router.patch("/{plan_id}", response_model=PlanUpdateResponse)
async def update_plan(
    plan_id: str,
    body: PlanUpdateRequest,
    session: SessionDep,
    processor: ProcessorDep,
    settings: SettingsDep,
    business_id: BusinessDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_PLANS)),
) -> dict[str, Any]:
    """Apply a partial update to a plan.

    Pricing-type switches and schedule edits are routed to the pricing
    services; supplying a missing current-month price resumes the plan's
    paused subscriptions in the same request.
    """
    service = PlanService(
        session,
        processor,
        business_id=business_id,
        resume_item_timeout=settings.resume_item_timeout,
    )
    try:
        result = await service.update_plan(
            plan_id,
            name=body.name,
            description=body.description,
            status=body.status,
            pricing_type=body.pricing_type,
            base_price=body.base_price,
            schedule=[entry.model_dump() for entry in body.schedule] if body.schedule is not None else None,
            actor=user_identity,
        )
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (ScheduleValidationError, PricingMigrationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    payload: dict[str, Any] = {
        "plan": PlanResponse.model_validate(result.plan),
        "changed_fields": result.changed_fields,
        "new_price_id": result.new_price_id,
        "migration": None,
        "schedule": None,
        "resume": _resume_payload(result.resume) if result.resume is not None else None,
    }
    if result.migration is not None:
        migration = result.migration
        payload["migration"] = {
            "from_type": migration.from_type,
            "to_type": migration.to_type,
            "price_id": migration.price_id,
            "considered": migration.considered,
            "updated": migration.updated,
            "errored": migration.errored,
            "archived_items": migration.archived_items,
            "errors": migration.errors,
        }
    if result.schedule is not None:
        payload["schedule"] = {
            "current_price_id": result.schedule.current_price_id,
            "current_price_supplied": result.schedule.current_price_supplied,
            "current_price_changed": result.schedule.current_price_changed,
            "items_created": result.schedule.items_created,
        }
    return payload


@router.get("/{plan_id}/price", response_model=PriceResolutionResponse)
async def get_plan_price(
    plan_id: str,
    session: SessionDep,
    business_id: BusinessDep,
    at: datetime | None = Query(default=None, description="Instant to resolve; defaults to now."),
    _role: Role = Depends(require_permission(Permission.READ_PLANS)),
) -> dict[str, Any]:
    """Return the Stripe price that bills the plan at ``at``.

    Returns 404 when a DYNAMIC plan has no applied price for that month.
    """
    instant = at or datetime.now(UTC)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)

    plan = await _get_plan(session, plan_id, business_id)

    try:
        price_id, amount = await PriceQueueService(session).price_at(plan, instant)
    except PriceUnavailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    return {
        "plan_id": plan.id,
        "pricing_type": plan.pricing_type,
        "month": month_start(instant),
        "price_id": price_id,
        "amount": amount,
    }


@router.get("/{plan_id}/schedule", response_model=list[ScheduleItemResponse])
async def get_plan_schedule(
    plan_id: str,
    session: SessionDep,
    business_id: BusinessDep,
    _role: Role = Depends(require_permission(Permission.READ_PLANS)),
) -> list[Any]:
    """List the plan's non-archived queue items, oldest month first."""
    plan = await _get_plan(session, plan_id, business_id)
    return list(await PriceQueueService(session).list_schedule(plan))


@router.post("/{plan_id}/resume-paused", response_model=ResumeResponse)
async def resume_paused(
    plan_id: str,
    session: SessionDep,
    processor: ProcessorDep,
    settings: SettingsDep,
    business_id: BusinessDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.RESUME_SUBSCRIPTIONS)),
) -> dict[str, Any]:
    """Resume the plan's paused subscriptions onto its current price.

    Returns 409 when the plan has no current price to resume onto.
    """
    plan = await _get_plan(session, plan_id, business_id)
    try:
        price_id = await PriceQueueService(session, processor).current_price_id(plan)
    except PriceUnavailableError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    engine = SubscriptionResumeEngine(session, processor, item_timeout=settings.resume_item_timeout)
    result = await engine.resume_plan(plan, price_id, actor=user_identity)
    return _resume_payload(result)
