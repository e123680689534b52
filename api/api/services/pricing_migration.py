"""Conversion of membership plans between FIXED and DYNAMIC pricing.

FIXED -> DYNAMIC only changes the plan and its queue; subscriptions move
to the monthly price at their next renewal (see ``billing_cycle``).

DYNAMIC -> FIXED moves every live subscription to the new fixed price
straight away.  Each subscription is updated independently; failures are
collected, so ``updated + errored`` always equals the number considered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from billing_core.errors import PricingMigrationError
from billing_core.models import BILLABLE_STATUSES, MonthlyPrice, PricingType
from billing_core.pricing import month_start
from billing_core.state.repository import PlanRepository, PriceQueueRepository, SubscriptionRepository
from billing_core.state.tables import PlanTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.audit_service import AuditAction, AuditService
from api.services.price_queue_service import PriceQueueService, processor_for_plan, validate_schedule
from api.services.processor import ProcessorClientFactory

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    """Summary of one pricing-type conversion."""

    plan_id: str
    from_type: PricingType
    to_type: PricingType
    price_id: str
    considered: int = 0
    updated: int = 0
    errored: int = 0
    archived_items: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class PricingMigrationService:
    def __init__(self, session: AsyncSession, processor: ProcessorClientFactory) -> None:
        self._session = session
        self._processor = processor
        self._plans = PlanRepository(session)
        self._queue = PriceQueueRepository(session)
        self._prices = PriceQueueService(session, processor)

    async def to_dynamic(
        self,
        plan: PlanTable,
        entries: Iterable[MonthlyPrice | Mapping[str, Any]],
        *,
        today: date,
        actor: str = "system",
    ) -> MigrationResult:
        """Convert a FIXED plan to a monthly schedule.

        Raises
        ------
        PricingMigrationError
            If the plan is already dynamic, or the schedule is empty or lacks
            the current month.
        """
        if plan.pricing_type == PricingType.DYNAMIC.value:
            raise PricingMigrationError(f"Plan {plan.id} is already DYNAMIC")
        schedule = validate_schedule(entries, today=today)
        if not schedule:
            raise PricingMigrationError("A DYNAMIC plan needs a non-empty monthly schedule")
        current = month_start(today)
        current_entry = next((entry for entry in schedule if entry.month == current), None)
        if current_entry is None:
            raise PricingMigrationError(f"The schedule must include the current month {current:%Y-%m}")

        client = await processor_for_plan(self._session, self._processor, plan)
        await self._queue.delete_unapplied(plan.id)
        await self._queue.delete_archived_months(plan.id, [entry.month for entry in schedule])

        price_id = await self._prices.mint_price(client, plan, current_entry.price, month=current)
        for entry in schedule:
            if entry.month == current:
                existing = await self._queue.get_for_month(plan.id, current)
                if existing is not None:
                    # Applied row left over from an earlier DYNAMIC period this month.
                    existing.price = entry.price
                    await self._queue.mark_applied(existing, price_id)
                else:
                    await self._queue.add(
                        plan_id=plan.id, month=current, price=entry.price, applied=True, stripe_price_id=price_id
                    )
            else:
                await self._queue.add(plan_id=plan.id, month=entry.month, price=entry.price)

        previous = plan.stripe_price_id
        await self._plans.update(plan, pricing_type=PricingType.DYNAMIC.value, stripe_price_id=price_id)
        await self._prices.deactivate_best_effort(client, previous)

        result = MigrationResult(
            plan_id=plan.id,
            from_type=PricingType.FIXED,
            to_type=PricingType.DYNAMIC,
            price_id=price_id,
        )
        await self._audit(plan, result, actor=actor, months=len(schedule))
        return result

    async def to_fixed(
        self,
        plan: PlanTable,
        base_price: int | None,
        *,
        actor: str = "system",
    ) -> MigrationResult:
        """Convert a DYNAMIC plan to a single fixed price.

        Raises
        ------
        PricingMigrationError
            If the plan is already fixed or no base price is given.
        """
        if plan.pricing_type == PricingType.FIXED.value:
            raise PricingMigrationError(f"Plan {plan.id} is already FIXED")
        if base_price is None:
            raise PricingMigrationError("Switching to FIXED pricing requires a base price")

        client = await processor_for_plan(self._session, self._processor, plan)
        price_id = await self._prices.mint_price(client, plan, base_price)
        result = MigrationResult(
            plan_id=plan.id,
            from_type=PricingType.DYNAMIC,
            to_type=PricingType.FIXED,
            price_id=price_id,
        )

        subscriptions = await SubscriptionRepository(self._session).list_for_plan(
            plan.id, statuses=BILLABLE_STATUSES
        )
        result.considered = len(subscriptions)
        for record in subscriptions:
            try:
                subscription = await client.retrieve_subscription(record.stripe_subscription_id)
                await client.swap_price(subscription, price_id)
                result.updated += 1
            except Exception as exc:
                logger.error(
                    "Moving subscription %s to fixed price %s failed",
                    record.stripe_subscription_id,
                    price_id,
                    exc_info=True,
                )
                result.errored += 1
                result.errors.append({"subscription_id": record.stripe_subscription_id, "error": str(exc)})

        result.archived_items = await self._queue.archive_unapplied(plan.id)
        await self._plans.update(
            plan,
            pricing_type=PricingType.FIXED.value,
            base_price=base_price,
            stripe_price_id=price_id,
        )
        await self._audit(plan, result, actor=actor)
        return result

    async def _audit(self, plan: PlanTable, result: MigrationResult, *, actor: str, **extra: Any) -> None:
        await AuditService(self._session, business_id=plan.business_id, actor=actor).log(
            AuditAction.PRICING_MIGRATED,
            entity_type="plan",
            entity_id=plan.id,
            from_type=result.from_type.value,
            to_type=result.to_type.value,
            price_id=result.price_id,
            updated=result.updated,
            errored=result.errored,
            **extra,
        )
        logger.info(
            "Plan %s migrated %s -> %s: considered=%d updated=%d errored=%d",
            plan.id,
            result.from_type.value,
            result.to_type.value,
            result.considered,
            result.updated,
            result.errored,
        )
