"""Route verified processor events to their handlers.

Handlers are looked up by ``event["type"]``.  Types without a handler are
accepted and ignored; the processor sends many event kinds this system has
no interest in.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from billing_core.onboarding.state_machine import TransitionSource
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.billing_cycle import BillingCycleService
from api.services.notification_service import NotificationService
from api.services.onboarding_service import OnboardingService
from api.services.processor import ProcessorClientFactory
from api.services.subscription_sync import SubscriptionSynchronizer

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]

_SUBSCRIPTION_SYNC_TYPES = (
    "customer.subscription.updated",
    "customer.subscription.paused",
    "customer.subscription.resumed",
)


def _event_object(event: dict[str, Any]) -> dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


class EventDispatcher:
    """Table-driven dispatch of processor events.

    Parameters
    ----------
    processor:
        Client factory shared by all handlers.
    notifier:
        Optional member notification service.
    """

    def __init__(
        self,
        processor: ProcessorClientFactory,
        notifier: NotificationService | None = None,
    ) -> None:
        self._processor = processor
        self._notifier = notifier
        self._handlers: dict[str, Handler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.upcoming": self._on_invoice_upcoming,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "account.updated": self._on_account_updated,
        }
        for event_type in _SUBSCRIPTION_SYNC_TYPES:
            self._handlers[event_type] = self._on_subscription_changed

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def dispatch(self, session: AsyncSession, event: dict[str, Any]) -> bool:
        """Run the handler for *event* inside *session*.

        Returns ``False`` when the event type has no handler.  Handler
        exceptions propagate to the caller.
        """
        event_type = event.get("type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("No handler for event %s (%s); ignoring", event.get("id"), event_type)
            return False
        await handler(session, event)
        return True

    # -- Handlers ------------------------------------------------------------

    def _synchronizer(self, session: AsyncSession) -> SubscriptionSynchronizer:
        return SubscriptionSynchronizer(session, self._processor, self._notifier)

    def _billing_cycle(self, session: AsyncSession) -> BillingCycleService:
        return BillingCycleService(session, self._processor, self._notifier)

    async def _on_checkout_completed(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._synchronizer(session).create_from_checkout(_event_object(event), event.get("account"))

    async def _on_subscription_created(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._synchronizer(session).sync(_event_object(event), event.get("account"), creation_event=True)

    async def _on_subscription_changed(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._synchronizer(session).sync(_event_object(event), event.get("account"))

    async def _on_subscription_deleted(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._synchronizer(session).mark_canceled(_event_object(event), event.get("account"))

    async def _on_invoice_upcoming(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._billing_cycle(session).handle_upcoming_invoice(_event_object(event), event.get("account"))

    async def _on_invoice_paid(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._billing_cycle(session).handle_invoice_paid(_event_object(event), event.get("account"))

    async def _on_invoice_payment_failed(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await self._billing_cycle(session).handle_payment_failed(_event_object(event), event.get("account"))

    async def _on_account_updated(self, session: AsyncSession, event: dict[str, Any]) -> None:
        await OnboardingService(session, self._processor).apply_account_update(
            _event_object(event),
            event_id=event.get("id"),
            source=TransitionSource.WEBHOOK,
        )
