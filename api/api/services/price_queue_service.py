"""Monthly price queue for DYNAMIC membership plans.

A dynamic plan carries one queue item per calendar month.  An item becomes
*applied* once a Stripe price exists for it; only applied, non-archived
items are ever used to bill.  Resolution for an instant looks at the
half-open month containing it and never falls back to a neighbouring
month: a missing month is reported as :class:`PriceUnavailableError`.

Every price change follows the same order: mint the new Stripe price,
point the internal references (queue item, plan) at it, then deactivate
the previous price.  Deactivation is best-effort; a stale active price is
harmless, a dangling reference is not.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from billing_core.errors import PriceUnavailableError, ScheduleValidationError
from billing_core.models import AlertSeverity, AlertType, MonthlyPrice, PlanStatus, PricingType
from billing_core.pricing import month_interval, month_start, next_month_start, parse_month, to_minor_units
from billing_core.pricing.months import days_until
from billing_core.state.repository import BusinessRepository, PlanRepository, PriceQueueRepository
from billing_core.state.tables import PlanTable, PriceQueueItemTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import PRICE_QUEUE_APPLIED_TOTAL
from api.services.alert_service import AlertService
from api.services.audit_service import AuditAction, AuditService
from api.services.processor import ProcessorClient, ProcessorClientFactory

logger = logging.getLogger(__name__)

DEFAULT_REMINDERS: dict[int, str] = {7: "WARNING", 3: "URGENT", 1: "CRITICAL"}


@dataclass
class ScheduleEditResult:
    """Outcome of replacing a plan's schedule.

    ``current_price_supplied`` is set when the current month had no applied
    price before the edit and has one now; paused subscriptions can then be
    resumed.
    """

    current_price_id: str | None = None
    current_price_supplied: bool = False
    current_price_changed: bool = False
    items_created: int = 0


@dataclass
class ApplyDueResult:
    considered: int = 0
    applied: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class MissingPriceCheckResult:
    plans_checked: int = 0
    alerts_raised: int = 0
    alerts_resolved: int = 0


async def processor_for_plan(
    session: AsyncSession,
    processor: ProcessorClientFactory,
    plan: PlanTable,
) -> ProcessorClient:
    """Return a client scoped to the connected account of *plan*'s business."""
    business = await BusinessRepository(session).get(plan.business_id)
    return processor.for_account(business.stripe_account_id if business is not None else None)


def validate_schedule(entries: Iterable[MonthlyPrice | Mapping[str, Any]], *, today: date) -> list[MonthlyPrice]:
    """Normalise and check a submitted schedule.

    Raises
    ------
    ScheduleValidationError
        On a malformed month, a month before the current one, a duplicate
        month, or a price that is not a positive minor-unit amount.
    """
    current = month_start(today)
    seen: set[date] = set()
    validated: list[MonthlyPrice] = []
    for entry in entries:
        if isinstance(entry, MonthlyPrice):
            raw_month: Any = entry.month
            raw_price: Any = entry.price
        else:
            raw_month = entry.get("month")
            raw_price = entry.get("price")
        if raw_month is None or raw_price is None:
            raise ScheduleValidationError("Each schedule entry needs a month and a price")

        try:
            month = parse_month(raw_month)
        except ValueError as exc:
            raise ScheduleValidationError(str(exc)) from exc
        if month < current:
            raise ScheduleValidationError(f"Cannot schedule a price for past month {month:%Y-%m}")
        if month in seen:
            raise ScheduleValidationError(f"Month {month:%Y-%m} appears more than once")
        seen.add(month)

        validated.append(MonthlyPrice(month=month, price=to_minor_units(raw_price)))

    return sorted(validated, key=lambda item: item.month)


class PriceQueueService:
    """Resolution and maintenance of dynamic plan price schedules.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    processor:
        Client factory; required for anything that mints prices.
    """

    def __init__(
        self,
        session: AsyncSession,
        processor: ProcessorClientFactory | None = None,
    ) -> None:
        self._session = session
        self._processor = processor
        self._queue = PriceQueueRepository(session)
        self._plans = PlanRepository(session)

    # -- Resolution ----------------------------------------------------------

    async def resolve(self, plan: PlanTable, at: date | datetime) -> PriceQueueItemTable:
        """Return the applied queue item covering the month of *at*."""
        start, end = month_interval(at)
        item = await self._queue.get_applied_in_interval(plan.id, start, end)
        if item is None:
            raise PriceUnavailableError(plan.id, start)
        return item

    async def current_price_id(self, plan: PlanTable, at: date | datetime | None = None) -> str:
        """Return the Stripe price billing *plan* at *at* (default: now)."""
        if plan.pricing_type == PricingType.FIXED.value:
            if not plan.stripe_price_id:
                raise PriceUnavailableError(plan.id, month_start(at or datetime.now(UTC)))
            return plan.stripe_price_id
        item = await self.resolve(plan, at or datetime.now(UTC))
        return item.stripe_price_id or ""

    async def price_at(self, plan: PlanTable, at: date | datetime) -> tuple[str, int | None]:
        """Return ``(stripe_price_id, amount)`` billing *plan* in the month of *at*."""
        if plan.pricing_type == PricingType.DYNAMIC.value:
            item = await self.resolve(plan, at)
            return item.stripe_price_id or "", item.price
        return await self.current_price_id(plan, at), plan.base_price

    async def has_price_for(self, plan: PlanTable, at: date | datetime) -> bool:
        try:
            await self.resolve(plan, at)
        except PriceUnavailableError:
            return False
        return True

    async def list_schedule(self, plan: PlanTable) -> list[PriceQueueItemTable]:
        return await self._queue.list_for_plan(plan.id)

    # -- Price objects -------------------------------------------------------

    async def mint_price(
        self,
        client: ProcessorClient,
        plan: PlanTable,
        amount: int,
        *,
        month: date | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Create a recurring Stripe price for *plan* and return its id."""
        if not plan.stripe_product_id:
            raise ScheduleValidationError(f"Plan {plan.id} has no Stripe product")
        metadata = {"plan_id": plan.id}
        if month is not None:
            metadata["effective_month"] = f"{month:%Y-%m}"
        price = await client.create_price(
            product_id=plan.stripe_product_id,
            unit_amount=amount,
            currency=plan.currency,
            interval=plan.interval,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info("Minted price %s for plan %s (%d %s)", price["id"], plan.id, amount, plan.currency)
        return price["id"]

    async def deactivate_best_effort(self, client: ProcessorClient, price_id: str | None) -> bool:
        """Deactivate *price_id*; failures are logged and swallowed."""
        if not price_id:
            return False
        try:
            await client.deactivate_price(price_id)
        except Exception:
            logger.warning("Could not deactivate price %s", price_id, exc_info=True)
            return False
        return True

    def _require_processor(self) -> ProcessorClientFactory:
        if self._processor is None:
            raise RuntimeError("PriceQueueService needs a processor client factory to mint prices")
        return self._processor

    # -- Schedule edits ------------------------------------------------------

    async def replace_schedule(
        self,
        plan: PlanTable,
        entries: Iterable[MonthlyPrice | Mapping[str, Any]],
        *,
        today: date,
    ) -> ScheduleEditResult:
        """Replace the not-yet-applied part of *plan*'s schedule.

        Unapplied items are deleted and recreated from *entries*; applied
        items are kept.  A current-month entry is applied immediately: it
        re-prices the current item if one is applied, or supplies it.
        """
        schedule = validate_schedule(entries, today=today)
        client = await processor_for_plan(self._session, self._require_processor(), plan)
        current = month_start(today)
        result = ScheduleEditResult()

        await self._queue.delete_unapplied(plan.id)
        await self._queue.delete_archived_months(plan.id, [entry.month for entry in schedule])

        for entry in schedule:
            existing = await self._queue.get_for_month(plan.id, entry.month)

            if entry.month == current:
                if existing is not None and existing.stripe_price_id:
                    if existing.price != entry.price:
                        await self._reprice_item(client, plan, existing, entry.price)
                        result.current_price_changed = True
                    result.current_price_id = existing.stripe_price_id
                    continue

                price_id = await self.mint_price(client, plan, entry.price, month=entry.month)
                await self._queue.add(
                    plan_id=plan.id, month=entry.month, price=entry.price, applied=True, stripe_price_id=price_id
                )
                previous = plan.stripe_price_id
                await self._plans.update(plan, stripe_price_id=price_id)
                await self.deactivate_best_effort(client, previous)
                result.current_price_id = price_id
                result.current_price_supplied = True
                result.items_created += 1
                continue

            if existing is not None:
                # An applied future month cannot occur; keep whatever is there.
                continue
            await self._queue.add(plan_id=plan.id, month=entry.month, price=entry.price)
            result.items_created += 1

        await AuditService(self._session, business_id=plan.business_id).log(
            AuditAction.PRICE_SCHEDULE_UPDATED,
            entity_type="plan",
            entity_id=plan.id,
            months=[f"{entry.month:%Y-%m}" for entry in schedule],
            current_price_supplied=result.current_price_supplied,
            current_price_changed=result.current_price_changed,
        )
        logger.info(
            "Schedule for plan %s replaced: %d item(s) created, current supplied=%s changed=%s",
            plan.id,
            result.items_created,
            result.current_price_supplied,
            result.current_price_changed,
        )
        return result

    async def _reprice_item(
        self,
        client: ProcessorClient,
        plan: PlanTable,
        item: PriceQueueItemTable,
        amount: int,
    ) -> None:
        previous = item.stripe_price_id
        price_id = await self.mint_price(client, plan, amount, month=item.effective_month)
        item.price = amount
        await self._queue.mark_applied(item, price_id)
        if plan.stripe_price_id in (previous, None):
            await self._plans.update(plan, stripe_price_id=price_id)
        await self.deactivate_best_effort(client, previous)

    # -- Scheduled jobs ------------------------------------------------------

    async def apply_due(self, today: date) -> ApplyDueResult:
        """Mint prices for every unapplied item whose month has started.

        Each item runs in its own SAVEPOINT; one failure is recorded as a
        ``PRICE_APPLY_FAILED`` alert and the job moves on.
        """
        processor = self._require_processor()
        result = ApplyDueResult()
        alerts = AlertService(self._session)

        for item in await self._queue.list_due(today):
            result.considered += 1
            plan = await self._plans.get(item.plan_id)
            if plan is None:
                continue
            # A rolled-back SAVEPOINT expires what it touched.
            item_id, month, amount = item.id, item.effective_month, item.price
            plan_id, plan_name, business_id = plan.id, plan.name, plan.business_id
            try:
                async with self._session.begin_nested():
                    client = await processor_for_plan(self._session, processor, plan)
                    price_id = await self.mint_price(
                        client,
                        plan,
                        amount,
                        month=month,
                        idempotency_key=f"queue-item-{item_id}",
                    )
                    previous = plan.stripe_price_id
                    await self._queue.mark_applied(item, price_id)
                    await self._plans.update(plan, stripe_price_id=price_id)
                    await AuditService(self._session, business_id=business_id).log(
                        AuditAction.PRICE_APPLIED,
                        entity_type="plan",
                        entity_id=plan_id,
                        month=f"{month:%Y-%m}",
                        price=amount,
                        stripe_price_id=price_id,
                    )
                await self.deactivate_best_effort(client, previous)
                result.applied += 1
                PRICE_QUEUE_APPLIED_TOTAL.labels(outcome="applied").inc()
            except Exception as exc:
                logger.error("Applying queue item %s of plan %s failed", item_id, plan_id, exc_info=True)
                result.failed += 1
                PRICE_QUEUE_APPLIED_TOTAL.labels(outcome="failed").inc()
                result.errors.append({"item_id": item_id, "plan_id": plan_id, "error": str(exc)})
                await alerts.raise_alert(
                    business_id=business_id,
                    alert_type=AlertType.PRICE_APPLY_FAILED,
                    severity=AlertSeverity.URGENT,
                    title=f"Price for {plan_name} could not be applied",
                    message=f"Applying the {month:%Y-%m} price failed: {exc}",
                    subject_type="plan",
                    subject_id=plan_id,
                    metadata={"item_id": item_id},
                )

        logger.info(
            "apply_due: considered=%d applied=%d failed=%d",
            result.considered,
            result.applied,
            result.failed,
        )
        return result

    async def check_missing_prices(
        self,
        today: date,
        *,
        reminders: Mapping[int, str] | None = None,
    ) -> MissingPriceCheckResult:
        """Warn about ACTIVE dynamic plans with no price for next month.

        *reminders* maps days-before-next-month to alert severity; alerts are
        only raised on those days.  Plans that have a next-month item get
        their open reminders resolved.
        """
        schedule = dict(reminders or DEFAULT_REMINDERS)
        target = next_month_start(today)
        days = days_until(target, today)
        alerts = AlertService(self._session)
        result = MissingPriceCheckResult()

        for plan in await self._plans.list_by_pricing(PricingType.DYNAMIC.value, status=PlanStatus.ACTIVE.value):
            result.plans_checked += 1
            item = await self._queue.get_for_month(plan.id, target)
            if item is not None and item.archived_at is None:
                result.alerts_resolved += await alerts.resolve_for_subjects(
                    AlertType.MISSING_DYNAMIC_PRICE, [plan.id]
                )
                continue

            severity = schedule.get(days)
            if severity is None:
                continue
            _, created = await alerts.raise_alert(
                business_id=plan.business_id,
                alert_type=AlertType.MISSING_DYNAMIC_PRICE,
                severity=AlertSeverity(severity),
                title=f"No {target:%B %Y} price for {plan.name}",
                message=(
                    f"Plan {plan.name} has no price scheduled for {target:%Y-%m}. "
                    f"Renewals in {days} day(s) will be paused until a price is set."
                ),
                subject_type="plan",
                subject_id=plan.id,
                metadata={"month": f"{target:%Y-%m}", "days_until": days},
            )
            if created:
                result.alerts_raised += 1

        logger.info(
            "check_missing_prices: checked=%d raised=%d resolved=%d (target=%s, days=%d)",
            result.plans_checked,
            result.alerts_raised,
            result.alerts_resolved,
            f"{target:%Y-%m}",
            days,
        )
        return result
