"""Tests for the persist-then-dispatch webhook event log.

Signatures are produced with the real Stripe scheme and checked by the
real ``stripe.Webhook`` verifier; only the dispatcher is replaced where a
test needs to control handler outcomes.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from billing_core.errors import InvalidSignatureError
from billing_core.models import AlertSeverity, AlertType
from billing_core.state.repository import AlertRepository, InboundEventRepository

from api.services.alert_service import AlertService
from api.services.event_dispatcher import EventDispatcher
from api.services.event_log import EventLog, ReceiveStatus


def _mock_dispatcher(**kwargs) -> MagicMock:
    dispatcher = MagicMock(spec=EventDispatcher)
    dispatcher.dispatch = AsyncMock(**kwargs)
    return dispatcher


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class TestReceive:
    @pytest.mark.asyncio
    async def test_processed_event_is_stored_and_marked(self, session_factory, processor, sign_payload, make_event):
        dispatcher = _mock_dispatcher(return_value=True)
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_1", "customer.subscription.updated", {"id": "sub_1"})

        result = await log.receive(payload, sign_payload(payload))

        assert result.status == ReceiveStatus.PROCESSED
        assert result.event_id == "evt_1"
        dispatcher.dispatch.assert_awaited_once()
        async with session_factory() as session:
            row = await InboundEventRepository(session).get("evt_1")
        assert row is not None
        assert row.processed is True
        assert row.attempts == 1
        assert row.account_id == "acct_harbor"
        assert row.payload["data"]["object"]["id"] == "sub_1"

    @pytest.mark.asyncio
    async def test_event_is_committed_before_handler_runs(self, session_factory, processor, sign_payload, make_event):
        seen: dict = {}

        async def _handler(_session, event):
            async with session_factory() as fresh:
                row = await InboundEventRepository(fresh).get(event["id"])
                seen["stored"] = row is not None
                seen["processed"] = row.processed if row is not None else None
                seen["attempts"] = row.attempts if row is not None else None
            return True

        log = EventLog(session_factory, processor, _mock_dispatcher(side_effect=_handler))
        payload = make_event("evt_1b", "customer.subscription.updated", {"id": "sub_1"})

        result = await log.receive(payload, sign_payload(payload))

        assert result.status == ReceiveStatus.PROCESSED
        assert seen == {"stored": True, "processed": False, "attempts": 1}

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored_but_processed(self, session_factory, processor, sign_payload, make_event):
        log = EventLog(session_factory, processor, EventDispatcher(processor))
        payload = make_event("evt_2", "charge.refunded", {"id": "ch_1"})

        result = await log.receive(payload, sign_payload(payload))

        assert result.status == ReceiveStatus.IGNORED
        async with session_factory() as session:
            row = await InboundEventRepository(session).get("evt_2")
        assert row is not None
        assert row.processed is True

    @pytest.mark.asyncio
    async def test_redelivery_of_processed_event_is_duplicate(
        self, session_factory, processor, sign_payload, make_event
    ):
        dispatcher = _mock_dispatcher(return_value=True)
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_3", "invoice.paid", {"id": "in_1"})

        first = await log.receive(payload, sign_payload(payload))
        second = await log.receive(payload, sign_payload(payload))

        assert first.status == ReceiveStatus.PROCESSED
        assert second.status == ReceiveStatus.DUPLICATE
        assert dispatcher.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_bad_signature_stores_nothing(self, session_factory, processor, sign_payload, make_event):
        dispatcher = _mock_dispatcher(return_value=True)
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_4", "invoice.paid", {"id": "in_1"})

        with pytest.raises(InvalidSignatureError):
            await log.receive(payload, sign_payload(payload, secret="whsec_wrong"))

        dispatcher.dispatch.assert_not_awaited()
        async with session_factory() as session:
            assert await InboundEventRepository(session).get("evt_4") is None

    @pytest.mark.asyncio
    async def test_tampered_body_is_rejected(self, session_factory, processor, sign_payload, make_event):
        log = EventLog(session_factory, processor, _mock_dispatcher(return_value=True))
        payload = make_event("evt_5", "invoice.paid", {"id": "in_1"})
        signature = sign_payload(payload)

        with pytest.raises(InvalidSignatureError):
            await log.receive(payload.replace(b"in_1", b"in_2"), signature)


# ---------------------------------------------------------------------------
# Failures and replay
# ---------------------------------------------------------------------------


class TestFailureAndReplay:
    @pytest.mark.asyncio
    async def test_handler_failure_is_recorded_on_the_event(
        self, session_factory, processor, sign_payload, make_event
    ):
        log = EventLog(session_factory, processor, _mock_dispatcher(side_effect=RuntimeError("boom")))
        payload = make_event("evt_10", "invoice.upcoming", {"id": "in_1"})

        result = await log.receive(payload, sign_payload(payload))

        assert result.status == ReceiveStatus.FAILED
        assert "boom" in (result.error or "")
        async with session_factory() as session:
            row = await InboundEventRepository(session).get("evt_10")
        assert row is not None
        assert row.processed is False
        assert row.processing_error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_handler_writes_roll_back_on_failure(
        self, session_factory, processor, sign_payload, make_event, seeded
    ):
        async def _write_then_fail(session, event):
            await AlertService(session).raise_alert(
                business_id=seeded.business_id,
                alert_type=AlertType.PAYMENT_FAILED,
                severity=AlertSeverity.WARNING,
                title="partial",
                message="written before the failure",
                subject_id="sub_x",
            )
            raise RuntimeError("after write")

        log = EventLog(session_factory, processor, _mock_dispatcher(side_effect=_write_then_fail))
        payload = make_event("evt_11", "invoice.payment_failed", {"id": "in_1"})

        result = await log.receive(payload, sign_payload(payload))

        assert result.status == ReceiveStatus.FAILED
        async with session_factory() as session:
            assert await AlertRepository(session).list_alerts(resolved=None) == []

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_runs_handler_again(
        self, session_factory, processor, sign_payload, make_event
    ):
        dispatcher = _mock_dispatcher(side_effect=[RuntimeError("transient"), True])
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_12", "invoice.paid", {"id": "in_1"})

        first = await log.receive(payload, sign_payload(payload))
        second = await log.receive(payload, sign_payload(payload))

        assert first.status == ReceiveStatus.FAILED
        assert second.status == ReceiveStatus.PROCESSED
        async with session_factory() as session:
            row = await InboundEventRepository(session).get("evt_12")
        assert row is not None
        assert row.processed is True
        assert row.processing_error is None
        assert row.attempts == 2

    @pytest.mark.asyncio
    async def test_replay_failed_reprocesses_stored_payload(
        self, session_factory, processor, sign_payload, make_event
    ):
        dispatcher = _mock_dispatcher(side_effect=[RuntimeError("down"), True])
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_13", "invoice.paid", {"id": "in_9"})
        await log.receive(payload, sign_payload(payload))

        results = await log.replay_failed()

        assert [r.status for r in results] == [ReceiveStatus.PROCESSED]
        replayed_event = dispatcher.dispatch.await_args_list[1].args[1]
        assert replayed_event["id"] == "evt_13"
        assert replayed_event["data"]["object"]["id"] == "in_9"
        assert await log.replay_failed() == []

    @pytest.mark.asyncio
    async def test_replay_of_processed_event_is_duplicate(self, session_factory, processor, sign_payload, make_event):
        dispatcher = _mock_dispatcher(return_value=True)
        log = EventLog(session_factory, processor, dispatcher)
        payload = make_event("evt_14", "invoice.paid", {"id": "in_1"})
        await log.receive(payload, sign_payload(payload))

        result = await log.replay("evt_14")

        assert result is not None
        assert result.status == ReceiveStatus.DUPLICATE
        assert dispatcher.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_event_returns_none(self, session_factory, processor):
        log = EventLog(session_factory, processor, _mock_dispatcher(return_value=True))

        assert await log.replay("evt_missing") is None
