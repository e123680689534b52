"""Applies the onboarding state machine to stored businesses.

Three entry points change status:

* :meth:`OnboardingService.apply_account_update` for ``account.updated``
  webhooks; the processor's view wins even over the transition table.
* :meth:`OnboardingService.refresh_from_processor` for an operator-requested
  re-read of the connected account; same rules as a webhook.
* :meth:`OnboardingService.request_transition` for user-initiated changes,
  which must be legal per the transition table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from billing_core.errors import BusinessNotFoundError, InvalidTransitionError
from billing_core.onboarding.state_machine import (
    AUDITED_STATUSES,
    AccountCapabilities,
    AccountRequirements,
    BusinessStatus,
    NextAction,
    TransitionSource,
    determine_state,
    get_next_action,
    is_valid_transition,
)
from billing_core.state.repository import BusinessRepository
from billing_core.state.tables import BusinessTable, BusinessTransitionTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.audit_service import AuditAction, AuditService
from api.services.processor import ProcessorClientFactory

logger = logging.getLogger(__name__)

_AUDIT_ACTIONS: dict[BusinessStatus, str] = {
    BusinessStatus.ONBOARDING_COMPLETE: AuditAction.ONBOARDING_COMPLETED,
    BusinessStatus.RESTRICTED: AuditAction.ONBOARDING_RESTRICTED,
}


@dataclass
class OnboardingStatusView:
    """Read projection of a business's onboarding state."""

    business_id: str
    status: BusinessStatus
    next_action: NextAction
    history: list[BusinessTransitionTable] = field(default_factory=list)


def _capabilities_of(business: BusinessTable) -> AccountCapabilities | None:
    if not business.stripe_account_id:
        return None
    return AccountCapabilities(
        account_id=business.stripe_account_id,
        charges_enabled=business.charges_enabled,
        details_submitted=business.details_submitted,
        payouts_enabled=business.payouts_enabled,
        requirements=AccountRequirements(**(business.requirements_json or {})),
    )


class OnboardingService:
    """Onboarding status changes for businesses.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    processor:
        Client factory, needed only by :meth:`refresh_from_processor`.
    """

    def __init__(
        self,
        session: AsyncSession,
        processor: ProcessorClientFactory | None = None,
    ) -> None:
        self._session = session
        self._processor = processor
        self._businesses = BusinessRepository(session)

    async def _get_business(self, business_id: str) -> BusinessTable:
        business = await self._businesses.get(business_id)
        if business is None:
            raise BusinessNotFoundError(f"Business {business_id} not found")
        return business

    async def apply_account_update(
        self,
        account: dict[str, Any],
        *,
        event_id: str | None,
        source: TransitionSource = TransitionSource.WEBHOOK,
    ) -> BusinessStatus | None:
        """Store the account snapshot and move the business to the derived status.

        Returns the resulting status, or ``None`` when no business owns the
        account yet (the business row may still be in flight).
        """
        account_id = account.get("id", "")
        business = await self._businesses.get_by_account(account_id)
        if business is None:
            logger.info("account.updated for unknown account %s; ignoring", account_id)
            return None

        current = BusinessStatus(business.status)
        if event_id is not None and business.last_processed_event_id == event_id:
            logger.info("Event %s already applied to business %s", event_id, business.id)
            return current

        capabilities = AccountCapabilities.from_stripe_account(account)
        await self._businesses.update_account_snapshot(
            business,
            charges_enabled=capabilities.charges_enabled,
            details_submitted=capabilities.details_submitted,
            payouts_enabled=capabilities.payouts_enabled,
            requirements=capabilities.requirements.model_dump(),
            event_id=event_id,
        )

        new_status = determine_state(current, capabilities)
        reason = (
            f"charges_enabled={capabilities.charges_enabled} "
            f"details_submitted={capabilities.details_submitted} "
            f"past_due={len(capabilities.requirements.past_due)} "
            f"currently_due={len(capabilities.requirements.currently_due)}"
        )
        await self._transition(business, new_status, reason=reason, source=source, event_id=event_id)
        return new_status

    async def refresh_from_processor(self, business_id: str, *, actor: str) -> BusinessStatus:
        """Re-read the connected account from Stripe and apply it."""
        if self._processor is None:
            raise RuntimeError("refresh_from_processor requires a processor client factory")
        business = await self._get_business(business_id)
        if not business.stripe_account_id:
            new_status = determine_state(BusinessStatus(business.status), None)
            await self._transition(
                business, new_status, reason=f"refresh by {actor}: no account", source=TransitionSource.SYNC
            )
            return new_status

        account = await self._processor.for_account(business.stripe_account_id).retrieve_account()
        status = await self.apply_account_update(account, event_id=None, source=TransitionSource.SYNC)
        return status if status is not None else BusinessStatus(business.status)

    async def request_transition(
        self,
        business_id: str,
        to_status: BusinessStatus,
        *,
        reason: str,
        actor: str,
    ) -> BusinessTransitionTable | None:
        """Apply a user-initiated status change.

        Raises
        ------
        InvalidTransitionError
            If the transition table does not allow the change.
        """
        business = await self._get_business(business_id)
        current = BusinessStatus(business.status)
        if current == to_status:
            return None
        if not is_valid_transition(current, to_status):
            raise InvalidTransitionError(current.value, to_status.value)

        row = await self._transition(business, to_status, reason=reason, source=TransitionSource.USER, actor=actor)
        await AuditService(self._session, business_id=business.id, actor=actor).log(
            AuditAction.ONBOARDING_TRANSITION_REQUESTED,
            entity_type="business",
            entity_id=business.id,
            from_status=current.value,
            to_status=to_status.value,
            reason=reason,
        )
        return row

    async def get_status(self, business_id: str) -> OnboardingStatusView:
        business = await self._get_business(business_id)
        status = BusinessStatus(business.status)
        return OnboardingStatusView(
            business_id=business.id,
            status=status,
            next_action=get_next_action(status, _capabilities_of(business)),
            history=await self._businesses.list_transitions(business.id),
        )

    async def _transition(
        self,
        business: BusinessTable,
        new_status: BusinessStatus,
        *,
        reason: str,
        source: TransitionSource,
        event_id: str | None = None,
        actor: str = "system",
    ) -> BusinessTransitionTable | None:
        current = BusinessStatus(business.status)
        if new_status == current:
            return None

        if not is_valid_transition(current, new_status):
            if source == TransitionSource.USER:
                raise InvalidTransitionError(current.value, new_status.value)
            logger.warning(
                "Applying out-of-table transition %s -> %s for business %s (source=%s, event=%s)",
                current.value,
                new_status.value,
                business.id,
                source.value,
                event_id or "-",
            )

        row = await self._businesses.append_transition(
            business,
            to_status=new_status.value,
            reason=reason,
            source=source.value,
            source_event_id=event_id,
        )
        logger.info(
            "Business %s onboarding %s -> %s (%s)",
            business.id,
            current.value,
            new_status.value,
            source.value,
        )

        if new_status in AUDITED_STATUSES:
            await self._audit_best_effort(business, current, new_status, event_id=event_id, actor=actor)
        return row

    async def _audit_best_effort(
        self,
        business: BusinessTable,
        previous: BusinessStatus,
        new_status: BusinessStatus,
        *,
        event_id: str | None,
        actor: str,
    ) -> None:
        """Write the audit entry in a SAVEPOINT; a failure keeps the status change."""
        try:
            async with self._session.begin_nested():
                await AuditService(self._session, business_id=business.id, actor=actor).log(
                    _AUDIT_ACTIONS[new_status],
                    entity_type="business",
                    entity_id=business.id,
                    from_status=previous.value,
                    to_status=new_status.value,
                    event_id=event_id,
                )
        except Exception:
            logger.warning(
                "Audit entry for business %s (%s) failed; status change kept",
                business.id,
                new_status.value,
                exc_info=True,
            )
