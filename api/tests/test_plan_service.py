"""Tests for PlanService updates and FIXED/DYNAMIC pricing migrations."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from billing_core.errors import PlanNotFoundError, PricingMigrationError, ScheduleValidationError
from billing_core.models import PlanStatus, PricingType
from billing_core.pricing import month_start, next_month_start
from billing_core.state.repository import (
    AuditRepository,
    PlanRepository,
    PriceQueueRepository,
    SubscriptionRepository,
)

from api.services.audit_service import AuditAction
from api.services.plan_service import PlanService
from api.services.pricing_migration import PricingMigrationService


def _stripe_subscription(sub_id: str, price_id: str = "price_current") -> dict:
    return {
        "id": sub_id,
        "status": "active",
        "customer": "cus_member",
        "pause_collection": {"behavior": "keep_as_draft"},
        "items": {"data": [{"id": f"si_{sub_id}", "price": {"id": price_id}}]},
    }


async def _add_subscription(db_session, seeded, sub_id: str, plan_id: str, status: str = "active"):
    repo = SubscriptionRepository(db_session)
    await repo.insert_current(
        stripe_subscription_id=sub_id,
        business_id=seeded.business_id,
        consumer_id=seeded.consumer_id,
        plan_id=plan_id,
        status=status,
    )
    return await repo.find_by_external_id(sub_id)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestUpdateValidation:
    @pytest.mark.asyncio
    async def test_unknown_plan(self, db_session, seeded, processor):
        with pytest.raises(PlanNotFoundError):
            await PlanService(db_session, processor, business_id=seeded.business_id).update_plan("nope", name="x")

    @pytest.mark.asyncio
    async def test_plan_of_other_business_is_hidden(self, db_session, seeded, processor):
        with pytest.raises(PlanNotFoundError):
            await PlanService(db_session, processor, business_id="other").update_plan(seeded.fixed_plan_id, name="x")

    @pytest.mark.asyncio
    async def test_activating_dynamic_plan_without_current_price_is_rejected(
        self, db_session, seeded, processor, stripe_client, today
    ):
        plan = await PlanRepository(db_session).create(
            business_id=seeded.business_id,
            name="Winter",
            status="DRAFT",
            pricing_type="DYNAMIC",
            stripe_product_id="prod_winter",
        )
        following = next_month_start(today)

        with pytest.raises(ScheduleValidationError, match="current month"):
            await PlanService(db_session, processor).update_plan(
                plan.id,
                status=PlanStatus.ACTIVE,
                schedule=[{"month": f"{following:%Y-%m}", "price": 4000}],
                today=today,
            )

        assert plan.status == "DRAFT"
        stripe_client.create_price.assert_not_awaited()
        assert await PriceQueueRepository(db_session).list_for_plan(plan.id) == []

    @pytest.mark.asyncio
    async def test_float_base_price_rejected(self, db_session, seeded, processor, stripe_client):
        with pytest.raises(ScheduleValidationError):
            await PlanService(db_session, processor).update_plan(seeded.fixed_plan_id, base_price=30.5)  # type: ignore[arg-type]

        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sub_cent_string_rejected(self, db_session, seeded, processor):
        with pytest.raises(ScheduleValidationError):
            await PlanService(db_session, processor).update_plan(seeded.fixed_plan_id, base_price="30.505")

    @pytest.mark.asyncio
    async def test_base_price_on_dynamic_plan_rejected(self, db_session, seeded, processor):
        with pytest.raises(ScheduleValidationError):
            await PlanService(db_session, processor).update_plan(seeded.dynamic_plan_id, base_price=3000)

    @pytest.mark.asyncio
    async def test_schedule_on_fixed_plan_rejected(self, db_session, seeded, processor, today):
        with pytest.raises(ScheduleValidationError):
            await PlanService(db_session, processor).update_plan(
                seeded.fixed_plan_id, schedule=[{"month": f"{today:%Y-%m}", "price": 100}], today=today
            )

    @pytest.mark.asyncio
    async def test_switch_to_dynamic_without_current_month_rejected(self, db_session, seeded, processor, today):
        following = next_month_start(today)
        with pytest.raises(PricingMigrationError):
            await PlanService(db_session, processor).update_plan(
                seeded.fixed_plan_id,
                pricing_type=PricingType.DYNAMIC,
                schedule=[{"month": f"{following:%Y-%m}", "price": 4000}],
                today=today,
            )

    @pytest.mark.asyncio
    async def test_switch_to_fixed_without_base_price_rejected(self, db_session, seeded, processor):
        with pytest.raises(PricingMigrationError):
            await PlanService(db_session, processor).update_plan(
                seeded.dynamic_plan_id, pricing_type=PricingType.FIXED
            )


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


class TestUpdatePlan:
    @pytest.mark.asyncio
    async def test_fixed_price_change_mints_repoints_then_retires(
        self, db_session, seeded, processor, stripe_client
    ):
        order: list[str] = []
        plan = await PlanRepository(db_session).get(seeded.fixed_plan_id)

        async def _create_price(**kwargs):
            order.append("create")
            return {"id": "price_fixed_new"}

        async def _deactivate_price(price_id):
            # The plan must already point at the replacement.
            order.append(f"deactivate:{plan.stripe_price_id}")
            return {}

        stripe_client.create_price.side_effect = _create_price
        stripe_client.deactivate_price.side_effect = _deactivate_price

        result = await PlanService(db_session, processor).update_plan(
            seeded.fixed_plan_id, base_price="35.00", actor="ops"
        )

        assert result.changed_fields == ["base_price"]
        assert result.new_price_id == "price_fixed_new"
        assert result.plan.base_price == 3500
        assert result.plan.stripe_price_id == "price_fixed_new"
        assert order == ["create", "deactivate:price_fixed_new"]
        stripe_client.deactivate_price.assert_awaited_once_with("price_fixed_old")

    @pytest.mark.asyncio
    async def test_same_price_mints_nothing(self, db_session, seeded, processor, stripe_client):
        result = await PlanService(db_session, processor).update_plan(seeded.fixed_plan_id, base_price=3000)

        assert result.changed_fields == []
        stripe_client.create_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rename_updates_product_and_audits(self, db_session, seeded, processor, stripe_client):
        result = await PlanService(db_session, processor).update_plan(
            seeded.fixed_plan_id, name="Standard Plus", actor="ops"
        )

        assert result.changed_fields == ["name"]
        stripe_client.update_product.assert_awaited_once_with("prod_fixed", name="Standard Plus")
        entries = await AuditRepository(db_session, business_id=seeded.business_id).query(
            action=AuditAction.PLAN_UPDATED
        )
        assert entries[0].actor == "ops"
        assert entries[0].metadata_json["fields"] == ["name"]

    @pytest.mark.asyncio
    async def test_supplying_current_price_resumes_paused_subscriptions(
        self, db_session, seeded, processor, stripe_client, today
    ):
        plan = await PlanRepository(db_session).create(
            business_id=seeded.business_id,
            name="Summer",
            status="ACTIVE",
            pricing_type="DYNAMIC",
            stripe_product_id="prod_summer",
        )
        record = await _add_subscription(db_session, seeded, "sub_p", plan.id)
        await SubscriptionRepository(db_session).set_paused_at(record, datetime.now(UTC))
        stripe_client.retrieve_subscription.return_value = _stripe_subscription("sub_p", "price_stale")

        result = await PlanService(db_session, processor).update_plan(
            plan.id, schedule=[{"month": f"{today:%Y-%m}", "price": 4100}], today=today
        )

        assert result.schedule is not None
        assert result.schedule.current_price_supplied is True
        assert result.new_price_id == "price_new_1"
        assert result.resume is not None
        assert (result.resume.considered, result.resume.resumed, result.resume.charged) == (1, 1, 1)
        stripe_client.create_and_finalize_invoice.assert_awaited_once()
        assert record.paused_at is None


# ---------------------------------------------------------------------------
# Pricing migration
# ---------------------------------------------------------------------------


class TestPricingMigration:
    @pytest.mark.asyncio
    async def test_fixed_to_dynamic_builds_queue(self, db_session, seeded, processor, stripe_client, today):
        following = next_month_start(today)
        plan = await PlanRepository(db_session).get(seeded.fixed_plan_id)

        result = await PricingMigrationService(db_session, processor).to_dynamic(
            plan,
            [{"month": f"{today:%Y-%m}", "price": 3300}, {"month": f"{following:%Y-%m}", "price": 3600}],
            today=today,
        )

        assert result.to_type == PricingType.DYNAMIC
        assert plan.pricing_type == "DYNAMIC"
        assert plan.stripe_price_id == result.price_id == "price_new_1"
        queue = await PriceQueueRepository(db_session).list_for_plan(plan.id)
        assert [(item.effective_month, item.applied) for item in queue] == [
            (month_start(today), True),
            (following, False),
        ]
        stripe_client.deactivate_price.assert_awaited_once_with("price_fixed_old")

    @pytest.mark.asyncio
    async def test_dynamic_to_fixed_moves_every_live_subscription(
        self, db_session, seeded, processor, stripe_client, today
    ):
        plan = await PlanRepository(db_session).get(seeded.dynamic_plan_id)
        await PriceQueueRepository(db_session).add(plan_id=plan.id, month=next_month_start(today), price=5000)
        await _add_subscription(db_session, seeded, "sub_ok", plan.id, status="active")
        await _add_subscription(db_session, seeded, "sub_fail", plan.id, status="trialing")
        await _add_subscription(db_session, seeded, "sub_gone", plan.id, status="canceled")

        async def _retrieve(sub_id):
            if sub_id == "sub_fail":
                raise RuntimeError("locked")
            return _stripe_subscription(sub_id)

        stripe_client.retrieve_subscription.side_effect = _retrieve

        result = await PricingMigrationService(db_session, processor).to_fixed(plan, 3900)

        assert result.considered == 2
        assert (result.updated, result.errored) == (1, 1)
        assert result.updated + result.errored == result.considered
        assert result.errors[0]["subscription_id"] == "sub_fail"
        assert result.archived_items == 1
        assert plan.pricing_type == "FIXED"
        assert plan.base_price == 3900
        assert plan.stripe_price_id == "price_new_1"
        remaining = await PriceQueueRepository(db_session).list_for_plan(plan.id)
        assert [item.applied for item in remaining] == [True]

    @pytest.mark.asyncio
    async def test_dynamic_to_fixed_skips_canceled_row_with_stale_pause_flag(
        self, db_session, seeded, processor, stripe_client
    ):
        plan = await PlanRepository(db_session).get(seeded.dynamic_plan_id)
        record = await _add_subscription(db_session, seeded, "sub_gone", plan.id, status="canceled")
        await SubscriptionRepository(db_session).set_paused_at(record, datetime.now(UTC))

        result = await PricingMigrationService(db_session, processor).to_fixed(plan, 3900)

        assert result.considered == 0
        assert (result.updated, result.errored) == (0, 0)
        stripe_client.swap_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_switching_back_reuses_archived_month(self, db_session, seeded, processor, today):
        following = next_month_start(today)
        plan = await PlanRepository(db_session).get(seeded.dynamic_plan_id)
        queue = PriceQueueRepository(db_session)
        await queue.add(plan_id=plan.id, month=following, price=5000)
        migrations = PricingMigrationService(db_session, processor)
        await migrations.to_fixed(plan, 3900)

        await migrations.to_dynamic(
            plan,
            [{"month": f"{today:%Y-%m}", "price": 4000}, {"month": f"{following:%Y-%m}", "price": 4400}],
            today=today,
        )

        item = await queue.get_for_month(plan.id, following)
        assert item is not None
        assert item.price == 4400
        assert item.archived_at is None

    @pytest.mark.asyncio
    async def test_already_dynamic_rejected(self, db_session, seeded, processor, today):
        plan = await PlanRepository(db_session).get(seeded.dynamic_plan_id)

        with pytest.raises(PricingMigrationError):
            await PricingMigrationService(db_session, processor).to_dynamic(
                plan, [{"month": f"{today:%Y-%m}", "price": 100}], today=today
            )
