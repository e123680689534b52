"""API router modules for the billing control plane."""

from __future__ import annotations

from api.routers import alerts, health, metrics, onboarding, plans, webhooks

__all__ = [
    "alerts",
    "health",
    "metrics",
    "onboarding",
    "plans",
    "webhooks",
]
