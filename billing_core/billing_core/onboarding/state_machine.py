"""Business onboarding state machine.

Maps the payment processor's view of a connected account onto an internal
readiness status.  :func:`determine_state` is pure: it reads only its
arguments, so the same account snapshot always yields the same status.

The transition table restricts *user-initiated* changes.  Changes driven by
the processor (webhooks, manual refresh) are applied regardless, because
the processor's account state is authoritative; callers log a warning when
such a change is not in the table.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BusinessStatus(str, Enum):
    """Onboarding readiness of a business."""

    CREATED = "CREATED"
    DETAILS_COLLECTED = "DETAILS_COLLECTED"
    STRIPE_ACCOUNT_CREATED = "STRIPE_ACCOUNT_CREATED"
    STRIPE_ONBOARDING_REQUIRED = "STRIPE_ONBOARDING_REQUIRED"
    STRIPE_ONBOARDING_IN_PROGRESS = "STRIPE_ONBOARDING_IN_PROGRESS"
    ONBOARDING_PENDING = "ONBOARDING_PENDING"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    RESTRICTED = "RESTRICTED"
    ONBOARDING_COMPLETE = "ONBOARDING_COMPLETE"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"
    SUSPENDED = "SUSPENDED"


class TransitionSource(str, Enum):
    """Who asked for a status change."""

    WEBHOOK = "webhook"
    SYNC = "sync"
    USER = "user"


_PRE_ACCOUNT_STATUSES: frozenset[BusinessStatus] = frozenset(
    {BusinessStatus.CREATED, BusinessStatus.DETAILS_COLLECTED}
)

# Reaching one of these emits an audit entry.
AUDITED_STATUSES: frozenset[BusinessStatus] = frozenset(
    {BusinessStatus.ONBOARDING_COMPLETE, BusinessStatus.RESTRICTED}
)


class AccountRequirements(BaseModel):
    currently_due: list[str] = Field(default_factory=list)
    eventually_due: list[str] = Field(default_factory=list)
    past_due: list[str] = Field(default_factory=list)
    disabled_reason: str | None = None


class AccountCapabilities(BaseModel):
    """Snapshot of a connected account's capability flags."""

    account_id: str
    charges_enabled: bool = False
    details_submitted: bool = False
    payouts_enabled: bool = False
    requirements: AccountRequirements = Field(default_factory=AccountRequirements)
    capabilities: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_stripe_account(cls, account: dict[str, Any]) -> AccountCapabilities:
        """Build a snapshot from a Stripe ``Account`` object (or its dict form)."""
        requirements = account.get("requirements") or {}
        raw_capabilities = account.get("capabilities") or {}
        capabilities: dict[str, str] = {}
        for name, value in raw_capabilities.items():
            # Stripe returns plain status strings; some fixtures nest them.
            capabilities[name] = value.get("status", "") if isinstance(value, dict) else str(value)
        return cls(
            account_id=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            details_submitted=bool(account.get("details_submitted")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            requirements=AccountRequirements(
                currently_due=list(requirements.get("currently_due") or []),
                eventually_due=list(requirements.get("eventually_due") or []),
                past_due=list(requirements.get("past_due") or []),
                disabled_reason=requirements.get("disabled_reason"),
            ),
            capabilities=capabilities,
        )


def determine_state(
    current_status: BusinessStatus,
    capabilities: AccountCapabilities | None,
) -> BusinessStatus:
    """Return the status a business should hold given its account snapshot.

    Rules are evaluated in order and the first match wins.

    Parameters
    ----------
    current_status:
        The business's status before this evaluation.
    capabilities:
        The connected account snapshot, or ``None`` when no account exists.
    """
    if capabilities is None:
        if current_status in _PRE_ACCOUNT_STATUSES:
            return current_status
        return BusinessStatus.STRIPE_ONBOARDING_REQUIRED

    if capabilities.charges_enabled and capabilities.details_submitted:
        return BusinessStatus.ONBOARDING_COMPLETE

    requirements = capabilities.requirements
    if requirements.past_due or requirements.disabled_reason:
        return BusinessStatus.RESTRICTED

    if capabilities.details_submitted and not capabilities.charges_enabled:
        return BusinessStatus.PENDING_VERIFICATION

    if requirements.currently_due or not capabilities.details_submitted:
        return BusinessStatus.STRIPE_ONBOARDING_IN_PROGRESS

    return BusinessStatus.STRIPE_ONBOARDING_REQUIRED


_S = BusinessStatus

VALID_TRANSITIONS: dict[BusinessStatus, frozenset[BusinessStatus]] = {
    _S.CREATED: frozenset({_S.DETAILS_COLLECTED, _S.ABANDONED}),
    _S.DETAILS_COLLECTED: frozenset({_S.STRIPE_ACCOUNT_CREATED, _S.STRIPE_ONBOARDING_REQUIRED, _S.ABANDONED}),
    _S.STRIPE_ACCOUNT_CREATED: frozenset(
        {_S.STRIPE_ONBOARDING_REQUIRED, _S.STRIPE_ONBOARDING_IN_PROGRESS, _S.ABANDONED}
    ),
    _S.STRIPE_ONBOARDING_REQUIRED: frozenset({_S.STRIPE_ONBOARDING_IN_PROGRESS, _S.ABANDONED}),
    _S.STRIPE_ONBOARDING_IN_PROGRESS: frozenset(
        {_S.PENDING_VERIFICATION, _S.ONBOARDING_COMPLETE, _S.RESTRICTED, _S.FAILED, _S.ABANDONED}
    ),
    _S.ONBOARDING_PENDING: frozenset(
        {
            _S.STRIPE_ONBOARDING_IN_PROGRESS,
            _S.PENDING_VERIFICATION,
            _S.ONBOARDING_COMPLETE,
            _S.RESTRICTED,
            _S.ABANDONED,
        }
    ),
    _S.PENDING_VERIFICATION: frozenset({_S.ONBOARDING_COMPLETE, _S.RESTRICTED, _S.FAILED}),
    _S.RESTRICTED: frozenset({_S.STRIPE_ONBOARDING_IN_PROGRESS, _S.ONBOARDING_COMPLETE, _S.SUSPENDED}),
    _S.ONBOARDING_COMPLETE: frozenset({_S.RESTRICTED, _S.SUSPENDED}),
    _S.FAILED: frozenset({_S.STRIPE_ONBOARDING_REQUIRED, _S.ABANDONED}),
    _S.ABANDONED: frozenset({_S.STRIPE_ONBOARDING_REQUIRED}),
    _S.SUSPENDED: frozenset({_S.ONBOARDING_COMPLETE}),
}


def allowed_transitions(from_status: BusinessStatus) -> frozenset[BusinessStatus]:
    """Return every status reachable from *from_status* in one legal step."""
    return VALID_TRANSITIONS.get(from_status, frozenset())


def is_valid_transition(from_status: BusinessStatus, to_status: BusinessStatus) -> bool:
    return to_status in allowed_transitions(from_status)


class NextAction(BaseModel):
    """Operator-facing guidance for a business in a given status."""

    action: str
    message: str
    can_access_dashboard: bool


_NEXT_ACTIONS: dict[BusinessStatus, tuple[str, str, bool]] = {
    _S.CREATED: ("complete_details", "Complete your business details to continue", False),
    _S.DETAILS_COLLECTED: (
        "start_stripe_onboarding",
        "Connect your Stripe account to start accepting payments",
        False,
    ),
    _S.STRIPE_ONBOARDING_REQUIRED: (
        "start_stripe_onboarding",
        "Connect your Stripe account to start accepting payments",
        False,
    ),
    _S.STRIPE_ACCOUNT_CREATED: (
        "resume_stripe_onboarding",
        "Complete your Stripe onboarding to activate your account",
        False,
    ),
    _S.STRIPE_ONBOARDING_IN_PROGRESS: (
        "resume_stripe_onboarding",
        "Complete your Stripe onboarding to activate your account",
        False,
    ),
    _S.ONBOARDING_PENDING: (
        "resume_stripe_onboarding",
        "Complete your Stripe onboarding to activate your account",
        False,
    ),
    _S.PENDING_VERIFICATION: (
        "wait_verification",
        "Your account is being verified by Stripe. This usually takes a few minutes to 24 hours.",
        True,
    ),
    _S.ONBOARDING_COMPLETE: ("none", "Your account is fully set up and ready to accept payments", True),
    _S.FAILED: ("contact_support", "There was an issue with your onboarding. Please contact support.", False),
    _S.ABANDONED: ("start_stripe_onboarding", "Resume your account setup to start accepting payments", False),
    _S.SUSPENDED: ("contact_support", "Your account has been suspended. Please contact support.", False),
}


def get_next_action(
    status: BusinessStatus,
    capabilities: AccountCapabilities | None = None,
) -> NextAction:
    """Return what the business owner should do next in *status*."""
    if status is BusinessStatus.RESTRICTED:
        due = capabilities.requirements.currently_due if capabilities is not None else []
        message = "Your account requires additional information"
        if due:
            message = f"{message}: {', '.join(due)}"
        return NextAction(action="fix_requirements", message=message, can_access_dashboard=True)

    action, message, can_access = _NEXT_ACTIONS[status]
    return NextAction(action=action, message=message, can_access_dashboard=can_access)
