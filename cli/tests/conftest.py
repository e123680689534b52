"""Shared fixtures for CLI tests.

Each test gets a file-backed SQLite database seeded with one business and
a FIXED and a DYNAMIC plan.  The Stripe client factory used by the CLI is
patched so commands talk to an ``AsyncMock`` instead of the network.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from billing_core.pricing import month_start
from billing_core.state.repository import BusinessRepository, PlanRepository, PriceQueueRepository
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import async_sessionmaker


async def _seed(db_path: str, today) -> SimpleNamespace:
    engine = get_local_engine(db_path)
    await create_local_tables(engine)
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            business = await BusinessRepository(session).create(
                name="Harbor Gym", stripe_account_id="acct_cli", status="ONBOARDING_COMPLETE"
            )
            plans = PlanRepository(session)
            await plans.create(
                id="plan-fixed",
                business_id=business.id,
                name="Standard",
                status="ACTIVE",
                pricing_type="FIXED",
                base_price=3000,
                stripe_product_id="prod_fixed",
                stripe_price_id="price_fixed",
            )
            await plans.create(
                id="plan-dynamic",
                business_id=business.id,
                name="Seasonal",
                status="ACTIVE",
                pricing_type="DYNAMIC",
                stripe_product_id="prod_dynamic",
            )
            # Scheduled but not yet minted.
            await PriceQueueRepository(session).add(plan_id="plan-dynamic", month=month_start(today), price=4500)
            await session.commit()
    finally:
        await engine.dispose()
    return SimpleNamespace(business_id=business.id, fixed_plan_id="plan-fixed", dynamic_plan_id="plan-dynamic")


@pytest.fixture()
def today():
    return datetime.now(UTC).date()


@pytest.fixture()
def db_path(tmp_path) -> str:
    return str(tmp_path / "billing.db")


@pytest.fixture()
def database_url(db_path: str) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def seeded(db_path: str, today) -> SimpleNamespace:
    return asyncio.run(_seed(db_path, today))


@pytest.fixture()
def stripe_client() -> AsyncMock:
    """Mock connected-account client; ``create_price`` hands out ``price_cli_1``, ..."""
    client = AsyncMock()
    counter = itertools.count(1)

    async def _create_price(**kwargs: Any) -> dict[str, Any]:
        return {"id": f"price_cli_{next(counter)}", **kwargs}

    client.create_price = AsyncMock(side_effect=_create_price)
    client.deactivate_price = AsyncMock(return_value={"active": False})
    return client


@pytest.fixture()
def mock_processor(stripe_client: AsyncMock):
    """Patch the CLI's client factory so every account gets *stripe_client*."""
    with patch("cli.app.ProcessorClientFactory") as factory_cls:
        factory_cls.return_value.for_account.return_value = stripe_client
        yield factory_cls.return_value


@pytest.fixture()
def query_db(db_path: str):
    """Return a function running ``await fn(session)`` against the test database."""

    def _query(fn):
        async def _run():
            engine = get_local_engine(db_path)
            try:
                async with async_sessionmaker(engine, expire_on_commit=False)() as session:
                    return await fn(session)
            finally:
                await engine.dispose()

        return asyncio.run(_run())

    return _query
