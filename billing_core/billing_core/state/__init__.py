"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import get_engine, get_session, get_session_factory
from billing_core.state.repository import (
    AlertRepository,
    AuditRepository,
    BusinessRepository,
    ConsumerRepository,
    InboundEventRepository,
    PlanRepository,
    PriceQueueRepository,
    SubscriptionRecord,
    SubscriptionRepository,
)

__all__ = [
    "AlertRepository",
    "AuditRepository",
    "BusinessRepository",
    "ConsumerRepository",
    "InboundEventRepository",
    "PlanRepository",
    "PriceQueueRepository",
    "SubscriptionRecord",
    "SubscriptionRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
