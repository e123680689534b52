"""Centralized audit logging service.

Wraps :class:`AuditRepository` with predefined action constants and a
simplified interface for routers and services.  Every significant billing
state change should be funnelled through this service so the audit trail is
consistent.
"""

from __future__ import annotations

import logging

from billing_core.state.repository import AuditRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AuditAction:
    """Well-known audit action identifiers."""

    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_PRICE_CHANGED = "PLAN_PRICE_CHANGED"
    PRICE_SCHEDULE_UPDATED = "PRICE_SCHEDULE_UPDATED"
    PRICE_APPLIED = "PRICE_APPLIED"
    PRICING_MIGRATED = "PRICING_MIGRATED"
    SUBSCRIPTIONS_RESUMED = "SUBSCRIPTIONS_RESUMED"
    SUBSCRIPTION_AUTO_PAUSED = "SUBSCRIPTION_AUTO_PAUSED"
    ONBOARDING_COMPLETED = "ONBOARDING_COMPLETED"
    ONBOARDING_RESTRICTED = "ONBOARDING_RESTRICTED"
    ONBOARDING_TRANSITION_REQUESTED = "ONBOARDING_TRANSITION_REQUESTED"
    ALERT_RESOLVED = "ALERT_RESOLVED"


class AuditService:
    """Thin wrapper around :class:`AuditRepository`.

    Parameters
    ----------
    session:
        The async database session for the current unit of work.
    business_id:
        Business whose chain the entry is appended to.
    actor:
        Identity of the operator or system principal performing the action.
        Defaults to ``"system"`` for webhook-driven and scheduled work.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        business_id: str,
        actor: str = "system",
    ) -> None:
        self._repo = AuditRepository(session, business_id=business_id)
        self._actor = actor

    async def log(
        self,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        **kwargs: object,
    ) -> str:
        """Record an audit event.

        Extra keyword arguments are stored in ``metadata_json``.  Returns
        the generated entry id.
        """
        metadata: dict | None = dict(kwargs) if kwargs else None  # type: ignore[type-arg]
        return await self._repo.log(
            actor=self._actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        )
