"""FastAPI dependency injection for settings, sessions and processor clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.state.database import get_engine
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.event_dispatcher import EventDispatcher
from api.services.event_log import EventLog
from api.services.notification_service import NotificationService
from api.services.processor import ProcessorClientFactory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that manage their own transactions, such as the
    webhook event log.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Processor client factory
# ---------------------------------------------------------------------------

_processor: ProcessorClientFactory | None = None


def init_processor(settings: APISettings) -> ProcessorClientFactory:
    """Create and cache the global :class:`ProcessorClientFactory`."""
    global _processor  # noqa: PLW0603
    _processor = ProcessorClientFactory(
        api_key=settings.stripe_secret_key.get_secret_value(),
        webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        timeout=settings.stripe_request_timeout,
    )
    return _processor


def get_processor() -> ProcessorClientFactory:
    """Return the cached :class:`ProcessorClientFactory` singleton."""
    if _processor is None:
        raise RuntimeError(
            "Processor client has not been initialised. Ensure init_processor() is called during application startup."
        )
    return _processor


ProcessorDep = Annotated[ProcessorClientFactory, Depends(get_processor)]

# ---------------------------------------------------------------------------
# Notification service
# ---------------------------------------------------------------------------

_notifier: NotificationService | None = None


def init_notifier(settings: APISettings) -> NotificationService:
    """Create and cache the global :class:`NotificationService`."""
    global _notifier  # noqa: PLW0603
    _notifier = NotificationService(
        api_url=settings.notification_api_url,
        api_key=settings.notification_api_key.get_secret_value(),
        sender=settings.notification_sender,
        timeout=settings.notification_timeout,
    )
    return _notifier


async def dispose_notifier() -> None:
    """Close the notifier's HTTP pool."""
    global _notifier  # noqa: PLW0603
    if _notifier is not None:
        await _notifier.close()
        _notifier = None


def get_notifier() -> NotificationService | None:
    """Return the notifier, or ``None`` when notifications are not set up."""
    return _notifier


NotifierDep = Annotated[NotificationService | None, Depends(get_notifier)]

# ---------------------------------------------------------------------------
# Webhook event log
# ---------------------------------------------------------------------------


def get_event_log(
    session_factory: SessionFactoryDep,
    processor: ProcessorDep,
    notifier: NotifierDep,
) -> EventLog:
    """Build the persist-then-dispatch pipeline for one webhook request."""
    return EventLog(session_factory, processor, EventDispatcher(processor, notifier))


EventLogDep = Annotated[EventLog, Depends(get_event_log)]

# ---------------------------------------------------------------------------
# Operator identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_business_id(request: Request) -> str:
    """Extract business_id from authenticated request state."""
    business_id = getattr(request.state, "business_id", None)
    if business_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return business_id


BusinessDep = Annotated[str, Depends(get_business_id)]


def get_user_identity(request: Request) -> str:
    """Extract operator identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]
