"""Operator-facing plan updates.

:meth:`PlanService.update_plan` is the single entry point for changing a
plan's attributes, price or pricing type.  The whole request is validated
before the first Stripe call, so a rejected update leaves both the local
store and the processor untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from billing_core.errors import PlanNotFoundError, PricingMigrationError, ScheduleValidationError
from billing_core.models import MonthlyPrice, PlanStatus, PricingType
from billing_core.pricing import month_start, to_minor_units
from billing_core.state.repository import PlanRepository
from billing_core.state.tables import PlanTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.audit_service import AuditAction, AuditService
from api.services.price_queue_service import (
    PriceQueueService,
    ScheduleEditResult,
    processor_for_plan,
    validate_schedule,
)
from api.services.pricing_migration import MigrationResult, PricingMigrationService
from api.services.processor import ProcessorClientFactory
from api.services.resume_engine import ResumeResult, SubscriptionResumeEngine

logger = logging.getLogger(__name__)


@dataclass
class PlanUpdateResult:
    """What an update changed, including any follow-up work it triggered."""

    plan: PlanTable
    changed_fields: list[str] = field(default_factory=list)
    migration: MigrationResult | None = None
    schedule: ScheduleEditResult | None = None
    resume: ResumeResult | None = None
    new_price_id: str | None = None


class PlanService:
    """Validate and apply plan updates.

    Parameters
    ----------
    session:
        Request-scoped database session; the caller commits.
    processor:
        Stripe client factory.
    business_id:
        Business the caller acts for; plans of other businesses are not
        visible.
    resume_item_timeout:
        Per-subscription timeout handed to the resume engine.
    """

    def __init__(
        self,
        session: AsyncSession,
        processor: ProcessorClientFactory,
        *,
        business_id: str | None = None,
        resume_item_timeout: float = 60.0,
    ) -> None:
        self._session = session
        self._processor = processor
        self._business_id = business_id
        self._resume_item_timeout = resume_item_timeout
        self._plans = PlanRepository(session)
        self._prices = PriceQueueService(session, processor)

    async def get_plan(self, plan_id: str) -> PlanTable:
        plan = await self._plans.get(plan_id, business_id=self._business_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    async def update_plan(
        self,
        plan_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        status: PlanStatus | None = None,
        pricing_type: PricingType | None = None,
        base_price: int | str | Decimal | None = None,
        schedule: Sequence[MonthlyPrice | Mapping[str, Any]] | None = None,
        actor: str = "system",
        today: date | None = None,
    ) -> PlanUpdateResult:
        """Apply a partial update to a plan.

        Raises
        ------
        PlanNotFoundError
            If the plan does not exist for this business.
        ScheduleValidationError
            If a price or schedule is malformed, or the plan would be ACTIVE
            and DYNAMIC without a current-month price.
        PricingMigrationError
            If a pricing-type switch lacks the data it needs.
        """
        today = today or datetime.now(UTC).date()
        plan = await self.get_plan(plan_id)
        current_type = PricingType(plan.pricing_type)
        target_type = pricing_type or current_type
        target_status = status or PlanStatus(plan.status)
        amount = to_minor_units(base_price) if base_price is not None else None
        validated = validate_schedule(schedule, today=today) if schedule is not None else None

        await self._validate(plan, current_type, target_type, target_status, amount, validated, today)

        result = PlanUpdateResult(plan=plan)
        client = await processor_for_plan(self._session, self._processor, plan)

        if name is not None and name != plan.name:
            await self._plans.update(plan, name=name)
            result.changed_fields.append("name")
            if plan.stripe_product_id:
                try:
                    await client.update_product(plan.stripe_product_id, name=name)
                except Exception:
                    logger.warning("Could not rename product %s", plan.stripe_product_id, exc_info=True)
        if description is not None and description != plan.description:
            await self._plans.update(plan, description=description)
            result.changed_fields.append("description")

        migrations = PricingMigrationService(self._session, self._processor)
        if target_type != current_type:
            if target_type == PricingType.DYNAMIC:
                result.migration = await migrations.to_dynamic(plan, validated or [], today=today, actor=actor)
            else:
                result.migration = await migrations.to_fixed(plan, amount, actor=actor)
            result.new_price_id = result.migration.price_id
            result.changed_fields.append("pricing_type")
        elif target_type == PricingType.DYNAMIC and validated is not None:
            result.schedule = await self._prices.replace_schedule(plan, validated, today=today)
            result.changed_fields.append("schedule")
            if result.schedule.current_price_supplied and result.schedule.current_price_id:
                result.new_price_id = result.schedule.current_price_id
                engine = SubscriptionResumeEngine(
                    self._session, self._processor, item_timeout=self._resume_item_timeout
                )
                result.resume = await engine.resume_plan(plan, result.schedule.current_price_id, actor=actor)
        elif target_type == PricingType.FIXED and amount is not None and amount != plan.base_price:
            result.new_price_id = await self._change_fixed_price(plan, amount, actor=actor)
            result.changed_fields.append("base_price")

        if target_status.value != plan.status:
            await self._plans.update(plan, status=target_status.value)
            result.changed_fields.append("status")

        if result.changed_fields:
            await AuditService(self._session, business_id=plan.business_id, actor=actor).log(
                AuditAction.PLAN_UPDATED,
                entity_type="plan",
                entity_id=plan.id,
                fields=result.changed_fields,
            )
        logger.info("Plan %s updated by %s: %s", plan.id, actor, ",".join(result.changed_fields) or "no changes")
        return result

    async def _validate(
        self,
        plan: PlanTable,
        current_type: PricingType,
        target_type: PricingType,
        target_status: PlanStatus,
        amount: int | None,
        schedule: list[MonthlyPrice] | None,
        today: date,
    ) -> None:
        current_month = month_start(today)
        schedule_has_current = schedule is not None and any(entry.month == current_month for entry in schedule)

        if target_type == PricingType.FIXED:
            if schedule is not None:
                raise ScheduleValidationError("A monthly schedule only applies to DYNAMIC plans")
            if current_type == PricingType.DYNAMIC and amount is None:
                raise PricingMigrationError("Switching to FIXED pricing requires a base price")
        else:
            if amount is not None:
                raise ScheduleValidationError("DYNAMIC plans are priced by their monthly schedule, not a base price")
            if current_type == PricingType.FIXED:
                if not schedule:
                    raise PricingMigrationError("Switching to DYNAMIC pricing requires a monthly schedule")
                if not schedule_has_current:
                    raise PricingMigrationError(
                        f"The schedule must include the current month {current_month:%Y-%m}"
                    )

        if target_status == PlanStatus.ACTIVE and target_type == PricingType.DYNAMIC:
            if not schedule_has_current and not await self._prices.has_price_for(plan, today):
                raise ScheduleValidationError(
                    f"An ACTIVE DYNAMIC plan needs a price for the current month {current_month:%Y-%m}"
                )

    async def _change_fixed_price(self, plan: PlanTable, amount: int, *, actor: str) -> str:
        """Mint the new fixed price, repoint the plan, then retire the old price."""
        client = await processor_for_plan(self._session, self._processor, plan)
        price_id = await self._prices.mint_price(client, plan, amount)
        previous = plan.stripe_price_id
        await self._plans.update(plan, base_price=amount, stripe_price_id=price_id)
        await self._prices.deactivate_best_effort(client, previous)
        await AuditService(self._session, business_id=plan.business_id, actor=actor).log(
            AuditAction.PLAN_PRICE_CHANGED,
            entity_type="plan",
            entity_id=plan.id,
            base_price=amount,
            price_id=price_id,
            previous_price_id=previous,
        )
        return price_id
