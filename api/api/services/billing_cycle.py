"""Invoice-driven billing-cycle handling.

``invoice.upcoming`` is the last point at which a DYNAMIC plan's
subscription can be moved onto the price of the month it is about to
renew into.  If no price exists for that month, collection is paused
(``keep_as_draft``) and an alert is raised instead of billing a
neighbouring month's price.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.errors import PriceUnavailableError
from billing_core.models import AlertSeverity, AlertType, PricingType
from billing_core.state.repository import ConsumerRepository, PlanRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.alert_service import AlertService
from api.services.audit_service import AuditAction, AuditService
from api.services.notification_service import NotificationService
from api.services.price_queue_service import PriceQueueService
from api.services.processor import ProcessorClientFactory, subscription_price_id
from api.services.subscription_sync import extract_sync_fields

logger = logging.getLogger(__name__)


def _subscription_ref(invoice: dict[str, Any]) -> str | None:
    ref = invoice.get("subscription")
    if isinstance(ref, dict):
        return ref.get("id")
    if ref:
        return str(ref)
    # Newer API versions nest the subscription under parent details.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    sub = details.get("subscription")
    return sub.get("id") if isinstance(sub, dict) else sub


def _renewal_instant(invoice: dict[str, Any]) -> datetime:
    """Start of the period the upcoming invoice bills for."""
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        start = (line.get("period") or {}).get("start")
        if start:
            return datetime.fromtimestamp(int(start), tz=UTC)
    for key in ("next_payment_attempt", "period_end"):
        if invoice.get(key):
            return datetime.fromtimestamp(int(invoice[key]), tz=UTC)
    return datetime.now(UTC)


class BillingCycleService:
    """Invoice event handlers for membership subscriptions."""

    def __init__(
        self,
        session: AsyncSession,
        processor: ProcessorClientFactory,
        notifier: NotificationService | None = None,
    ) -> None:
        self._session = session
        self._processor = processor
        self._notifier = notifier
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)

    async def handle_upcoming_invoice(self, invoice: dict[str, Any], account_id: str | None) -> str:
        """Move the subscription to its renewal-month price, or pause it.

        Returns ``"unchanged"``, ``"swapped"``, ``"paused"`` or ``"ignored"``.
        """
        subscription_id = _subscription_ref(invoice)
        if not subscription_id:
            return "ignored"
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            logger.info("invoice.upcoming for unknown subscription %s ignored", subscription_id)
            return "ignored"
        plan = await self._plans.get(record.plan_id)
        if plan is None or plan.pricing_type != PricingType.DYNAMIC.value:
            return "unchanged"

        renewal = _renewal_instant(invoice)
        client = self._processor.for_account(account_id)
        prices = PriceQueueService(self._session, self._processor)
        try:
            item = await prices.resolve(plan, renewal)
        except PriceUnavailableError as exc:
            await client.pause_subscription(subscription_id, behavior="keep_as_draft")
            await self._subscriptions.set_paused_at(record, datetime.now(UTC))
            await AlertService(self._session).raise_alert(
                business_id=plan.business_id,
                alert_type=AlertType.SUBSCRIPTION_PAUSED,
                severity=AlertSeverity.URGENT,
                title=f"Renewal paused: no {exc.month:%B %Y} price for {plan.name}",
                message=(
                    f"Subscription {subscription_id} renews in {exc.month:%Y-%m} but plan {plan.name} "
                    "has no price for that month. Collection is paused until a price is set."
                ),
                subject_type="subscription",
                subject_id=subscription_id,
                metadata={"plan_id": plan.id, "month": f"{exc.month:%Y-%m}"},
            )
            await AuditService(self._session, business_id=plan.business_id).log(
                AuditAction.SUBSCRIPTION_AUTO_PAUSED,
                entity_type="subscription",
                entity_id=subscription_id,
                plan_id=plan.id,
                month=f"{exc.month:%Y-%m}",
            )
            logger.warning("Paused subscription %s: %s", subscription_id, exc)
            return "paused"

        subscription = await client.retrieve_subscription(subscription_id)
        if subscription_price_id(subscription) == item.stripe_price_id:
            return "unchanged"
        await client.swap_price(subscription, item.stripe_price_id or "")
        logger.info(
            "Subscription %s moved to %s price %s",
            subscription_id,
            f"{item.effective_month:%Y-%m}",
            item.stripe_price_id,
        )
        return "swapped"

    async def handle_invoice_paid(self, invoice: dict[str, Any], account_id: str | None) -> None:
        """Refresh the subscription's period and clear payment-failure alerts."""
        subscription_id = _subscription_ref(invoice)
        if not subscription_id:
            return
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            logger.info("invoice.paid for unknown subscription %s ignored", subscription_id)
            return

        subscription = await self._processor.for_account(account_id).retrieve_subscription(subscription_id)
        await self._subscriptions.apply(record, extract_sync_fields(subscription))
        await AlertService(self._session).resolve_for_subjects(AlertType.PAYMENT_FAILED, [subscription_id])
        logger.info(
            "invoice.paid: subscription %s period now ends %s",
            subscription_id,
            record.current_period_end.isoformat() if record.current_period_end else "-",
        )

    async def handle_payment_failed(self, invoice: dict[str, Any], account_id: str | None) -> None:
        subscription_id = _subscription_ref(invoice)
        if not subscription_id:
            return
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            logger.info("invoice.payment_failed for unknown subscription %s ignored", subscription_id)
            return
        plan = await self._plans.get(record.plan_id)
        plan_name = plan.name if plan is not None else record.plan_id

        await AlertService(self._session).raise_alert(
            business_id=record.business_id,
            alert_type=AlertType.PAYMENT_FAILED,
            severity=AlertSeverity.WARNING,
            title=f"Payment failed for {plan_name}",
            message=(
                f"Invoice {invoice.get('id', '-')} for subscription {subscription_id} failed "
                f"(attempt {invoice.get('attempt_count', 1)})."
            ),
            subject_type="subscription",
            subject_id=subscription_id,
            metadata={"invoice_id": invoice.get("id"), "amount_due": invoice.get("amount_due")},
        )

        if self._notifier is not None:
            consumer = await ConsumerRepository(self._session).get(record.consumer_id)
            if consumer is not None:
                await self._notifier.send_payment_failed(to=consumer.email, plan_name=plan_name)
