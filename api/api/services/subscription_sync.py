"""Mirror processor subscriptions into local records.

Subscriptions live in one of two local shapes while a data migration is in
progress.  Every update goes through :class:`SubscriptionRecord`, which
knows which columns its shape carries, so the field mapping lives in
:func:`extract_sync_fields` alone.

Only processor-owned fields are written here (status, period boundaries,
the cancel flag and the sync timestamp).  ``paused_at``, the plan and the
consumer are owned by this system and never touched by a sync; a deletion
clears ``paused_at`` since a canceled subscription has nothing to resume.

Cancellation is terminal: a reordered update that arrives after the
deletion is ignored rather than bringing the record back to life.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from billing_core.models import CANCELED_STATUS, SubscriptionKind
from billing_core.state.repository import (
    ConsumerRepository,
    PlanRepository,
    SubscriptionRecord,
    SubscriptionRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_service import NotificationService
from api.services.processor import ProcessorClientFactory

logger = logging.getLogger(__name__)


class SyncOutcome(str, Enum):
    APPLIED = "applied"
    CREATED = "created"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SyncResult:
    outcome: SyncOutcome
    reason: str = ""
    kind: SubscriptionKind | None = None


def _from_epoch(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def extract_sync_fields(subscription: dict[str, Any]) -> dict[str, Any]:
    """Map a processor subscription onto local column values.

    Newer API versions report the period on the line item rather than the
    subscription; the first item is used as a fallback.
    """
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}

    period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

    return {
        "status": subscription.get("status"),
        "current_period_start": _from_epoch(period_start),
        "current_period_end": _from_epoch(period_end),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
        "last_synced_at": datetime.now(UTC),
    }


class SubscriptionSynchronizer:
    """Apply processor subscription events to the local store.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    processor:
        Client factory used by the checkout path to re-fetch the
        authoritative subscription.
    notifier:
        Optional notification service for cancellation emails.
    """

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

    async def sync(
        self,
        subscription: dict[str, Any],
        account_id: str | None,
        *,
        creation_event: bool = False,
    ) -> SyncResult:
        """Write the processor's view of *subscription* to its local record.

        A missing record is normal when events arrive out of order; it is
        ignored, and only logged at INFO level for non-creation events.
        """
        subscription_id = subscription.get("id", "")
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            if creation_event:
                logger.debug("Subscription %s not stored yet; awaiting checkout completion", subscription_id)
            else:
                logger.info(
                    "No local record for subscription %s (account=%s); out-of-order event ignored",
                    subscription_id,
                    account_id or "-",
                )
            return SyncResult(SyncOutcome.IGNORED, reason="unknown subscription")

        if record.status == CANCELED_STATUS and subscription.get("status") != CANCELED_STATUS:
            logger.info(
                "Subscription %s already canceled; stale %s status ignored",
                subscription_id,
                subscription.get("status"),
            )
            return SyncResult(SyncOutcome.IGNORED, reason="stale event after cancellation", kind=record.kind)

        written = await self._subscriptions.apply(record, extract_sync_fields(subscription))
        logger.info(
            "Synced %s subscription %s: status=%s fields=%s",
            record.kind.value,
            subscription_id,
            record.status,
            ",".join(written),
        )
        return SyncResult(SyncOutcome.APPLIED, kind=record.kind)

    async def create_from_checkout(self, checkout_session: dict[str, Any], account_id: str | None) -> SyncResult:
        """Create the local subscription for a completed checkout session.

        Safe to run more than once: the insert is keyed by the unique
        processor subscription id and the field sync is idempotent.
        """
        session_id = checkout_session.get("id", "")
        subscription_id = checkout_session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            logger.info("Checkout session %s has no subscription; ignoring", session_id)
            return SyncResult(SyncOutcome.IGNORED, reason="not a subscription checkout")

        plan_id = (checkout_session.get("metadata") or {}).get("plan_id")
        if not plan_id:
            logger.warning("Checkout session %s carries no plan_id metadata; ignoring", session_id)
            return SyncResult(SyncOutcome.IGNORED, reason="missing plan_id")

        plan = await PlanRepository(self._session).get(plan_id)
        if plan is None:
            logger.warning("Checkout session %s references unknown plan %s", session_id, plan_id)
            return SyncResult(SyncOutcome.IGNORED, reason="unknown plan")

        email = (checkout_session.get("customer_details") or {}).get("email") or checkout_session.get(
            "customer_email"
        )
        if not email:
            logger.warning("Checkout session %s has no customer email; ignoring", session_id)
            return SyncResult(SyncOutcome.IGNORED, reason="missing email")

        customer_id = checkout_session.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        consumer = await ConsumerRepository(self._session).get_or_create_by_email(
            plan.business_id,
            email,
            name=(checkout_session.get("customer_details") or {}).get("name"),
            stripe_customer_id=customer_id,
        )

        subscription = await self._processor.for_account(account_id).retrieve_subscription(subscription_id)
        created = await self._subscriptions.insert_current(
            stripe_subscription_id=subscription_id,
            business_id=plan.business_id,
            consumer_id=consumer.id,
            plan_id=plan.id,
            status=subscription.get("status") or "incomplete",
        )
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            raise RuntimeError(f"Subscription {subscription_id} missing right after insert")
        await self._subscriptions.apply(record, extract_sync_fields(subscription))

        logger.info(
            "Checkout %s: subscription %s %s for consumer %s on plan %s",
            session_id,
            subscription_id,
            "created" if created else "already stored",
            consumer.id,
            plan.id,
        )
        return SyncResult(SyncOutcome.CREATED if created else SyncOutcome.APPLIED, kind=record.kind)

    async def mark_canceled(self, subscription: dict[str, Any], account_id: str | None) -> SyncResult:
        """Move the record to the terminal ``canceled`` status and notify the member."""
        subscription_id = subscription.get("id", "")
        record = await self._subscriptions.find_by_external_id(subscription_id)
        if record is None:
            logger.info("Deletion of unknown subscription %s (account=%s) ignored", subscription_id, account_id or "-")
            return SyncResult(SyncOutcome.IGNORED, reason="unknown subscription")

        fields = extract_sync_fields(subscription)
        fields["status"] = CANCELED_STATUS
        await self._subscriptions.apply(record, fields)
        if record.paused_at is not None:
            await self._subscriptions.set_paused_at(record, None)
        logger.info("Subscription %s canceled", subscription_id)

        await self._notify_cancellation(record)
        return SyncResult(SyncOutcome.APPLIED, kind=record.kind)

    async def _notify_cancellation(self, record: SubscriptionRecord) -> None:
        if self._notifier is None:
            return
        consumer = await ConsumerRepository(self._session).get(record.consumer_id)
        plan = await PlanRepository(self._session).get(record.plan_id)
        if consumer is None or plan is None:
            return
        await self._notifier.send_cancellation(
            to=consumer.email,
            plan_name=plan.name,
            access_until=record.current_period_end,
        )

