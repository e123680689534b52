"""Shared fixtures for billing API tests.

Provides an in-memory SQLite database seeded with one business, one member
and a FIXED and a DYNAMIC plan, a mocked Stripe client, signed webhook
payloads, operator bearer tokens and an httpx client bound to the app.

Sessions on the in-memory engine share one connection, so a test must
finish (commit or close) one session before another one starts work.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from billing_core.pricing import month_start
from billing_core.state.repository import (
    BusinessRepository,
    ConsumerRepository,
    PlanRepository,
    PriceQueueRepository,
)
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import get_db_session, get_notifier, get_processor, get_session_factory, get_settings
from api.main import create_app
from api.security import TokenManager
from api.services.processor import ProcessorClientFactory

_TOKEN_SECRET = "test-secret-key-for-billing-tests"
_WEBHOOK_SECRET = "whsec_test_secret"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        auth_token_secret=SecretStr(_TOKEN_SECRET),
        stripe_secret_key=SecretStr("sk_test_123"),
        stripe_webhook_secret=SecretStr(_WEBHOOK_SECRET),
        resume_item_timeout=5.0,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def today():
    return datetime.now(UTC).date()


@pytest_asyncio.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession], today):
    """Insert the baseline business, member and plans, then commit.

    The DYNAMIC plan has an applied price for the current month only.
    """
    async with session_factory() as session:
        business = await BusinessRepository(session).create(
            name="Harbor Gym",
            contact_email="owner@harbor.example",
            stripe_account_id="acct_harbor",
            status="ONBOARDING_COMPLETE",
        )
        consumer = await ConsumerRepository(session).get_or_create_by_email(
            business.id, "member@example.com", name="Member", stripe_customer_id="cus_member"
        )
        plans = PlanRepository(session)
        fixed_plan = await plans.create(
            id="plan-fixed",
            business_id=business.id,
            name="Standard",
            status="ACTIVE",
            pricing_type="FIXED",
            base_price=3000,
            stripe_product_id="prod_fixed",
            stripe_price_id="price_fixed_old",
        )
        dynamic_plan = await plans.create(
            id="plan-dynamic",
            business_id=business.id,
            name="Seasonal",
            status="ACTIVE",
            pricing_type="DYNAMIC",
            stripe_product_id="prod_dynamic",
            stripe_price_id="price_current",
        )
        await PriceQueueRepository(session).add(
            plan_id=dynamic_plan.id,
            month=month_start(today),
            price=4500,
            applied=True,
            stripe_price_id="price_current",
        )
        await session.commit()

    return SimpleNamespace(
        business_id=business.id,
        account_id="acct_harbor",
        consumer_id=consumer.id,
        consumer_email=consumer.email,
        fixed_plan_id=fixed_plan.id,
        dynamic_plan_id=dynamic_plan.id,
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


@pytest.fixture()
def stripe_client() -> AsyncMock:
    """Return a mock connected-account client.

    ``create_price`` hands out ``price_new_1``, ``price_new_2``, ...; every
    other call succeeds with an empty object unless a test overrides it.
    """
    client = AsyncMock()
    counter = itertools.count(1)

    async def _create_price(**kwargs: Any) -> dict[str, Any]:
        return {"id": f"price_new_{next(counter)}", **kwargs}

    client.create_price = AsyncMock(side_effect=_create_price)
    client.deactivate_price = AsyncMock(return_value={"active": False})
    client.update_product = AsyncMock(return_value={})
    client.swap_price = AsyncMock(return_value={})
    client.pause_subscription = AsyncMock(return_value={})
    client.retrieve_subscription = AsyncMock(return_value={})
    client.create_and_finalize_invoice = AsyncMock(return_value={"id": "in_1", "status": "open"})
    client.retrieve_account = AsyncMock(return_value={})
    return client


@pytest.fixture()
def processor(stripe_client: AsyncMock) -> ProcessorClientFactory:
    """Real factory (real signature checks) whose clients are *stripe_client*."""
    factory = ProcessorClientFactory(api_key="sk_test_123", webhook_secret=_WEBHOOK_SECRET, timeout=5.0)
    factory.for_account = MagicMock(return_value=stripe_client)  # type: ignore[method-assign]
    return factory


@pytest.fixture()
def sign_payload() -> Callable[..., str]:
    """Return a function producing a Stripe-format ``t=...,v1=...`` header."""

    def _sign(payload: bytes, *, secret: str = _WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture()
def make_event() -> Callable[..., bytes]:
    """Return a function building a serialized Stripe event."""

    def _make(event_id: str, event_type: str, obj: dict[str, Any], *, account: str | None = "acct_harbor") -> bytes:
        event: dict[str, Any] = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
        if account is not None:
            event["account"] = account
        return json.dumps(event).encode("utf-8")

    return _make


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a function producing ``Authorization`` headers for a role."""
    manager = TokenManager(SecretStr(_TOKEN_SECRET))

    def _headers(business_id: str, *, role: str = "admin", sub: str = "ops@harbor.example") -> dict[str, str]:
        return {"Authorization": f"Bearer {manager.generate_token(sub, business_id, role=role)}"}

    return _headers


@pytest_asyncio.fixture
async def client(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    processor: ProcessorClientFactory,
):
    """httpx client bound to an app wired to the test database and Stripe mock."""
    application = create_app(test_settings)

    async def _override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_processor] = lambda: processor
    application.dependency_overrides[get_notifier] = lambda: None
    application.dependency_overrides[get_settings] = lambda: test_settings

    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
