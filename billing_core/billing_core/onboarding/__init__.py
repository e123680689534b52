"""Business onboarding status derivation and transition rules."""

from billing_core.onboarding.state_machine import (
    AccountCapabilities,
    BusinessStatus,
    TransitionSource,
    determine_state,
    get_next_action,
    is_valid_transition,
)

__all__ = [
    "AccountCapabilities",
    "BusinessStatus",
    "TransitionSource",
    "determine_state",
    "get_next_action",
    "is_valid_transition",
]
