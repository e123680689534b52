"""Tests for POST /api/v1/webhooks/stripe."""

from __future__ import annotations

import pytest
from billing_core.state.repository import BusinessRepository, InboundEventRepository

_URL = "/api/v1/webhooks/stripe"


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, client, sign_payload, make_event):
        payload = make_event("evt_r1", "charge.refunded", {"id": "ch_1"})

        resp = await client.post(_URL, content=payload, headers={"Stripe-Signature": sign_payload(payload)})

        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "event_id": "evt_r1"}

    @pytest.mark.asyncio
    async def test_no_bearer_token_needed(self, client, sign_payload, make_event):
        payload = make_event("evt_r2", "charge.refunded", {"id": "ch_1"})

        resp = await client.post(
            _URL, content=payload, headers={"Stripe-Signature": sign_payload(payload), "Authorization": ""}
        )

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_signature_header(self, client, make_event):
        resp = await client.post(_URL, content=make_event("evt_r3", "charge.refunded", {}))

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected_and_not_stored(
        self, client, session_factory, sign_payload, make_event
    ):
        payload = make_event("evt_r4", "charge.refunded", {"id": "ch_1"})

        resp = await client.post(
            _URL, content=payload, headers={"Stripe-Signature": sign_payload(payload, secret="whsec_other")}
        )

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid signature"
        async with session_factory() as session:
            assert await InboundEventRepository(session).get("evt_r4") is None

    @pytest.mark.asyncio
    async def test_redelivery_is_reported_as_duplicate(self, client, sign_payload, make_event):
        payload = make_event("evt_r5", "charge.refunded", {"id": "ch_1"})
        headers = {"Stripe-Signature": sign_payload(payload)}

        first = await client.post(_URL, content=payload, headers=headers)
        second = await client.post(_URL, content=payload, headers=headers)

        assert first.json()["status"] == "ignored"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_handler_failure_returns_500_for_redelivery(
        self, client, seeded, stripe_client, sign_payload, make_event
    ):
        stripe_client.retrieve_subscription.side_effect = RuntimeError("stripe unavailable")
        checkout = {
            "id": "cs_1",
            "subscription": "sub_1",
            "customer": "cus_member",
            "customer_details": {"email": "member@example.com"},
            "metadata": {"plan_id": seeded.fixed_plan_id},
        }
        payload = make_event("evt_r6", "checkout.session.completed", checkout)

        resp = await client.post(_URL, content=payload, headers={"Stripe-Signature": sign_payload(payload)})

        assert resp.status_code == 500
        assert resp.json() == {"status": "failed", "event_id": "evt_r6"}

    @pytest.mark.asyncio
    async def test_account_update_completes_onboarding(self, client, session_factory, sign_payload, make_event):
        async with session_factory() as session:
            business = await BusinessRepository(session).create(
                name="Verify Co", stripe_account_id="acct_verify", status="PENDING_VERIFICATION"
            )
            await session.commit()
        account = {
            "id": "acct_verify",
            "charges_enabled": True,
            "details_submitted": True,
            "payouts_enabled": True,
            "requirements": {"currently_due": [], "past_due": []},
        }
        payload = make_event("evt_r7", "account.updated", account, account="acct_verify")

        resp = await client.post(_URL, content=payload, headers={"Stripe-Signature": sign_payload(payload)})

        assert resp.status_code == 200
        assert resp.json()["status"] == "processed"
        async with session_factory() as session:
            repo = BusinessRepository(session)
            stored = await repo.get(business.id)
            history = await repo.list_transitions(business.id)
        assert stored.status == "ONBOARDING_COMPLETE"
        assert len(history) == 1
        assert history[0].source_event_id == "evt_r7"
