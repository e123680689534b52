"""Billing core: state store, pricing and onboarding logic for the membership billing engine."""

__version__ = "0.1.0"
