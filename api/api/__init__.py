"""Billing control-plane API: webhook ingress and operator endpoints."""

__version__ = "0.1.0"
