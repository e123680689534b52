"""Tests for the /api/v1/plans endpoints."""

from __future__ import annotations

import pytest
import pytest_asyncio
from billing_core.pricing import next_month_start
from billing_core.state.repository import AuditRepository, BusinessRepository, PlanRepository

from api.services.audit_service import AuditAction


@pytest_asyncio.fixture
async def unpriced_plan(session_factory, seeded):
    """A DRAFT DYNAMIC plan with an empty queue."""
    async with session_factory() as session:
        plan = await PlanRepository(session).create(
            business_id=seeded.business_id,
            name="Winter",
            status="DRAFT",
            pricing_type="DYNAMIC",
            stripe_product_id="prod_winter",
        )
        await session.commit()
    return plan.id


# ---------------------------------------------------------------------------
# GET /plans/{id}/price
# ---------------------------------------------------------------------------


class TestGetPrice:
    @pytest.mark.asyncio
    async def test_dynamic_plan_current_month(self, client, seeded, auth_headers, today):
        resp = await client.get(
            f"/api/v1/plans/{seeded.dynamic_plan_id}/price",
            headers=auth_headers(seeded.business_id, role="viewer"),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["price_id"] == "price_current"
        assert body["amount"] == 4500
        assert body["pricing_type"] == "DYNAMIC"
        assert body["month"] == f"{today:%Y-%m}-01"

    @pytest.mark.asyncio
    async def test_unpriced_month_is_404(self, client, seeded, auth_headers, today):
        following = next_month_start(today)

        resp = await client.get(
            f"/api/v1/plans/{seeded.dynamic_plan_id}/price",
            params={"at": f"{following:%Y-%m-%d}T00:00:00Z"},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_fixed_plan_returns_base_price(self, client, seeded, auth_headers):
        resp = await client.get(
            f"/api/v1/plans/{seeded.fixed_plan_id}/price",
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 200
        assert resp.json()["price_id"] == "price_fixed_old"
        assert resp.json()["amount"] == 3000

    @pytest.mark.asyncio
    async def test_plan_of_another_business_is_404(self, client, seeded, auth_headers, session_factory):
        async with session_factory() as session:
            other = await BusinessRepository(session).create(name="Other Studio")
            await session.commit()

        resp = await client.get(
            f"/api/v1/plans/{seeded.fixed_plan_id}/price",
            headers=auth_headers(other.id),
        )

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_token(self, client, seeded):
        resp = await client.get(f"/api/v1/plans/{seeded.fixed_plan_id}/price")

        assert resp.status_code == 401


class TestGetSchedule:
    @pytest.mark.asyncio
    async def test_lists_queue_items(self, client, seeded, auth_headers, today):
        resp = await client.get(
            f"/api/v1/plans/{seeded.dynamic_plan_id}/schedule",
            headers=auth_headers(seeded.business_id, role="viewer"),
        )

        assert resp.status_code == 200
        items = resp.json()
        assert len(items) == 1
        assert items[0]["effective_month"] == f"{today:%Y-%m}-01"
        assert items[0]["price"] == 4500
        assert items[0]["applied"] is True


# ---------------------------------------------------------------------------
# PATCH /plans/{id}
# ---------------------------------------------------------------------------


class TestUpdatePlan:
    @pytest.mark.asyncio
    async def test_admin_can_rename(self, client, seeded, auth_headers, stripe_client, session_factory):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"name": "Standard Plus"},
            headers=auth_headers(seeded.business_id, role="admin"),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["plan"]["name"] == "Standard Plus"
        assert body["changed_fields"] == ["name"]
        stripe_client.update_product.assert_awaited_once_with("prod_fixed", name="Standard Plus")
        async with session_factory() as session:
            entries = await AuditRepository(session, business_id=seeded.business_id).query(
                action=AuditAction.PLAN_UPDATED
            )
        assert entries[0].actor == "ops@harbor.example"

    @pytest.mark.asyncio
    async def test_viewer_cannot_update(self, client, seeded, auth_headers, stripe_client):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"name": "Nope"},
            headers=auth_headers(seeded.business_id, role="viewer"),
        )

        assert resp.status_code == 403
        stripe_client.update_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_token(self, client, seeded):
        resp = await client.patch(f"/api/v1/plans/{seeded.fixed_plan_id}", json={"name": "Nope"})

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_float_price_is_refused(self, client, seeded, auth_headers, stripe_client):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"base_price": 30.5},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 422
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sub_cent_string_is_refused(self, client, seeded, auth_headers, stripe_client):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"base_price": "30.505"},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 400
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_field_is_refused(self, client, seeded, auth_headers):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"colour": "blue"},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_fixed_price_change(self, client, seeded, auth_headers, stripe_client):
        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={"base_price": "35.00"},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["new_price_id"] == "price_new_1"
        assert body["plan"]["base_price"] == 3500
        assert body["plan"]["stripe_price_id"] == "price_new_1"
        stripe_client.deactivate_price.assert_awaited_once_with("price_fixed_old")

    @pytest.mark.asyncio
    async def test_activating_without_current_price_is_400(
        self, client, seeded, auth_headers, unpriced_plan, session_factory, today
    ):
        following = next_month_start(today)

        resp = await client.patch(
            f"/api/v1/plans/{unpriced_plan}",
            json={"status": "ACTIVE", "schedule": [{"month": f"{following:%Y-%m}", "price": 4000}]},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 400
        async with session_factory() as session:
            plan = await PlanRepository(session).get(unpriced_plan)
        assert plan.status == "DRAFT"

    @pytest.mark.asyncio
    async def test_switch_to_dynamic(self, client, seeded, auth_headers, today):
        following = next_month_start(today)

        resp = await client.patch(
            f"/api/v1/plans/{seeded.fixed_plan_id}",
            json={
                "pricing_type": "DYNAMIC",
                "schedule": [
                    {"month": f"{today:%Y-%m}", "price": 3300},
                    {"month": f"{following:%Y-%m}", "price": "36.00"},
                ],
            },
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["plan"]["pricing_type"] == "DYNAMIC"
        assert body["migration"]["from_type"] == "FIXED"
        assert body["migration"]["to_type"] == "DYNAMIC"

    @pytest.mark.asyncio
    async def test_unknown_plan_is_404(self, client, seeded, auth_headers):
        resp = await client.patch(
            "/api/v1/plans/missing",
            json={"name": "x"},
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# POST /plans/{id}/resume-paused
# ---------------------------------------------------------------------------


class TestResumePaused:
    @pytest.mark.asyncio
    async def test_nothing_paused(self, client, seeded, auth_headers):
        resp = await client.post(
            f"/api/v1/plans/{seeded.dynamic_plan_id}/resume-paused",
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["price_id"] == "price_current"
        assert body["considered"] == 0

    @pytest.mark.asyncio
    async def test_no_current_price_is_409(self, client, seeded, auth_headers, unpriced_plan):
        resp = await client.post(
            f"/api/v1/plans/{unpriced_plan}/resume-paused",
            headers=auth_headers(seeded.business_id),
        )

        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_staff_cannot_resume(self, client, seeded, auth_headers):
        resp = await client.post(
            f"/api/v1/plans/{seeded.dynamic_plan_id}/resume-paused",
            headers=auth_headers(seeded.business_id, role="staff"),
        )

        assert resp.status_code == 403
