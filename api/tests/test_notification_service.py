"""Tests for best-effort member notifications."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from api.services.notification_service import NotificationService

_URL = "https://mail.test/emails"


def _service(handler, *, api_key: str = "re_test") -> NotificationService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationService(api_url=_URL, api_key=api_key, sender="Gym <billing@gym.test>", http_client=client)


class TestSend:
    @pytest.mark.asyncio
    async def test_success(self):
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"id": "msg_1"})

        sent = await _service(handler).send(to="member@example.com", subject="Hi", text="Hello")

        assert sent is True
        assert captured[0].headers["Authorization"] == "Bearer re_test"
        body = json.loads(captured[0].content)
        assert body == {
            "from": "Gym <billing@gym.test>",
            "to": ["member@example.com"],
            "subject": "Hi",
            "text": "Hello",
        }

    @pytest.mark.asyncio
    async def test_http_error_status_returns_false(self):
        sent = await _service(lambda request: httpx.Response(422, json={"error": "bad"})).send(
            to="member@example.com", subject="Hi", text="Hello"
        )

        assert sent is False

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sent = await _service(handler).send(to="member@example.com", subject="Hi", text="Hello")

        assert sent is False

    @pytest.mark.asyncio
    async def test_no_api_key_skips(self):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        sent = await _service(handler, api_key="").send(to="member@example.com", subject="Hi", text="Hello")

        assert sent is False
        assert calls == []


class TestTemplates:
    @pytest.mark.asyncio
    async def test_cancellation_mentions_access_end(self):
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200)

        await _service(handler).send_cancellation(
            to="member@example.com", plan_name="Standard", access_until=datetime(2026, 7, 31, tzinfo=UTC)
        )

        assert captured[0]["subject"] == "Your Standard membership has been cancelled"
        assert "July 31, 2026" in captured[0]["text"]

    @pytest.mark.asyncio
    async def test_payment_failed(self):
        captured: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(200)

        assert await _service(handler).send_payment_failed(to="member@example.com", plan_name="Standard")
        assert "Standard" in captured[0]["subject"]
