"""Bulk resume of subscriptions paused for lack of a monthly price.

When a DYNAMIC plan's current-month price is supplied after renewals were
already auto-paused, every locally paused subscription of the plan is
resumed onto the new price and charged for the period it missed.

Subscriptions are handled one at a time, each bounded by a timeout and
wrapped in its own SAVEPOINT, so one slow or failing subscription never
blocks or rolls back the others.  ``resumed + skipped + errored`` always
equals ``considered``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from billing_core.models import AlertSeverity, AlertType
from billing_core.state.repository import ConsumerRepository, SubscriptionRecord, SubscriptionRepository
from billing_core.state.tables import PlanTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import SUBSCRIPTION_RESUMES_TOTAL
from api.services.alert_service import AlertService
from api.services.audit_service import AuditAction, AuditService
from api.services.price_queue_service import processor_for_plan
from api.services.processor import ProcessorClient, ProcessorClientFactory

logger = logging.getLogger(__name__)

RESUME_REASON = "current_month_price_supplied"


class ResumeOutcome(str, Enum):
    RESUMED = "resumed"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass
class ResumeItem:
    subscription_id: str
    outcome: ResumeOutcome
    charged: bool = False
    error: str | None = None


@dataclass
class ResumeResult:
    """Counters and per-subscription detail of one resume run."""

    plan_id: str
    price_id: str
    considered: int = 0
    resumed: int = 0
    charged: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    items: list[ResumeItem] = field(default_factory=list)

    @property
    def errored(self) -> int:
        return sum(1 for item in self.items if item.outcome == ResumeOutcome.ERRORED)


class SubscriptionResumeEngine:
    """Resume a plan's auto-paused subscriptions onto a new price.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    processor:
        Client factory for the plan's connected account.
    item_timeout:
        Seconds allowed per subscription, processor calls included.
    """

    def __init__(
        self,
        session: AsyncSession,
        processor: ProcessorClientFactory,
        *,
        item_timeout: float = 60.0,
    ) -> None:
        self._session = session
        self._processor = processor
        self._item_timeout = item_timeout
        self._subscriptions = SubscriptionRepository(session)

    async def resume_plan(self, plan: PlanTable, price_id: str, *, actor: str = "system") -> ResumeResult:
        client = await processor_for_plan(self._session, self._processor, plan)
        paused = await self._subscriptions.list_paused_for_plan(plan.id)
        result = ResumeResult(plan_id=plan.id, price_id=price_id, considered=len(paused))
        logger.info("Resuming %d paused subscription(s) of plan %s onto %s", len(paused), plan.id, price_id)

        for record in paused:
            item = await self._resume_one_bounded(client, record, price_id)
            result.items.append(item)
            SUBSCRIPTION_RESUMES_TOTAL.labels(outcome=item.outcome.value).inc()
            if item.outcome == ResumeOutcome.RESUMED:
                result.resumed += 1
                if item.charged:
                    result.charged += 1
            elif item.outcome == ResumeOutcome.SKIPPED:
                result.skipped += 1
            if item.error is not None:
                result.errors.append({"subscription_id": item.subscription_id, "error": item.error})

        await self._record_outcome(plan, result, actor=actor)
        logger.info(
            "Resume of plan %s finished: considered=%d resumed=%d charged=%d skipped=%d errored=%d",
            plan.id,
            result.considered,
            result.resumed,
            result.charged,
            result.skipped,
            result.errored,
        )
        return result

    async def _resume_one_bounded(
        self,
        client: ProcessorClient,
        record: SubscriptionRecord,
        price_id: str,
    ) -> ResumeItem:
        subscription_id = record.stripe_subscription_id
        try:
            async with self._session.begin_nested():
                return await asyncio.wait_for(
                    self._resume_one(client, record, price_id),
                    timeout=self._item_timeout,
                )
        except TimeoutError:
            logger.error("Resume of subscription %s timed out after %.1fs", subscription_id, self._item_timeout)
            return ResumeItem(subscription_id, ResumeOutcome.ERRORED, error="timed out")
        except Exception as exc:
            logger.error("Resume of subscription %s failed", subscription_id, exc_info=True)
            return ResumeItem(subscription_id, ResumeOutcome.ERRORED, error=str(exc))

    async def _resume_one(self, client: ProcessorClient, record: SubscriptionRecord, price_id: str) -> ResumeItem:
        subscription_id = record.stripe_subscription_id
        subscription = await client.retrieve_subscription(subscription_id)

        if not subscription.get("pause_collection"):
            await self._subscriptions.set_paused_at(record, None)
            logger.info("Subscription %s is not paused at the processor; clearing local flag", subscription_id)
            return ResumeItem(subscription_id, ResumeOutcome.SKIPPED)

        await client.swap_price(
            subscription,
            price_id,
            resume=True,
            metadata={
                "resumed_at": datetime.now(UTC).isoformat(),
                "resumed_by_system": "true",
                "resume_reason": RESUME_REASON,
            },
        )
        await self._subscriptions.set_paused_at(record, None)

        customer_id = subscription.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        if not customer_id:
            consumer = await ConsumerRepository(self._session).get(record.consumer_id)
            customer_id = consumer.stripe_customer_id if consumer is not None else None

        try:
            if not customer_id:
                raise ValueError("no processor customer on record")
            await client.create_and_finalize_invoice(
                customer_id=customer_id,
                subscription_id=subscription_id,
                idempotency_key=f"resume-{subscription_id}-{price_id}",
            )
        except Exception as exc:
            # The resume itself succeeded; only the catch-up charge is missing.
            logger.error("Catch-up invoice for subscription %s failed", subscription_id, exc_info=True)
            return ResumeItem(subscription_id, ResumeOutcome.RESUMED, charged=False, error=f"invoice: {exc}")

        logger.info("Subscription %s resumed on %s and invoiced", subscription_id, price_id)
        return ResumeItem(subscription_id, ResumeOutcome.RESUMED, charged=True)

    async def _record_outcome(self, plan: PlanTable, result: ResumeResult, *, actor: str) -> None:
        alerts = AlertService(self._session)
        handled = [item.subscription_id for item in result.items if item.outcome != ResumeOutcome.ERRORED]
        await alerts.resolve_for_subjects(AlertType.SUBSCRIPTION_PAUSED, handled, resolved_by=actor)

        if result.resumed:
            await alerts.raise_alert(
                business_id=plan.business_id,
                alert_type=AlertType.SUBSCRIPTIONS_AUTO_RESUMED,
                severity=AlertSeverity.INFO,
                title=f"{result.resumed} subscription(s) of {plan.name} resumed",
                message=(
                    f"{result.resumed} paused subscription(s) were resumed on the new price; "
                    f"{result.charged} charged, {result.skipped} already active, {result.errored} failed."
                ),
                subject_type="plan",
                subject_id=plan.id,
                metadata={"price_id": result.price_id, "errors": result.errors},
                deduplicate=False,
            )

        if result.considered:
            await AuditService(self._session, business_id=plan.business_id, actor=actor).log(
                AuditAction.SUBSCRIPTIONS_RESUMED,
                entity_type="plan",
                entity_id=plan.id,
                price_id=result.price_id,
                considered=result.considered,
                resumed=result.resumed,
                charged=result.charged,
                skipped=result.skipped,
                errored=result.errored,
            )
