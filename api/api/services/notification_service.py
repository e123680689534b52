"""Best-effort member notifications through a transactional email API.

INVARIANT: sending never raises.  Failures are logged and reported as
``False`` so a billing operation is never rolled back because an email
could not be delivered.
"""

from __future__ import annotations

import logging
from datetime import datetime

import httpx

logger = logging.getLogger(__name__)


class NotificationService:
    """Deliver plain-text emails via an HTTP API (Resend-compatible).

    Parameters
    ----------
    api_url:
        Endpoint accepting ``{"from", "to", "subject", "text"}`` JSON.
    api_key:
        Bearer token for the API.  When empty, sends are skipped.
    sender:
        ``From`` address.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, *, to: str, subject: str, text: str) -> bool:
        if not self._api_key:
            logger.info("Notification API key not configured; skipping email to %s (%s)", to, subject)
            return False

        try:
            response = await self._client.post(
                self._api_url,
                json={"from": self._sender, "to": [to], "subject": subject, "text": text},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Notification to %s failed: %s", to, exc)
            return False

        if response.status_code >= 300:
            logger.warning("Notification to %s rejected: HTTP %d", to, response.status_code)
            return False

        logger.info("Notification sent to %s (%s)", to, subject)
        return True

    async def send_cancellation(
        self,
        *,
        to: str,
        plan_name: str,
        access_until: datetime | None,
    ) -> bool:
        if access_until is not None:
            expiry = f"You keep access until {access_until:%B %d, %Y}."
        else:
            expiry = "Your access has ended."
        return await self.send(
            to=to,
            subject=f"Your {plan_name} membership has been cancelled",
            text=f"Your {plan_name} membership has been cancelled. {expiry}",
        )

    async def send_payment_failed(self, *, to: str, plan_name: str) -> bool:
        return await self.send(
            to=to,
            subject=f"Payment failed for your {plan_name} membership",
            text=(
                f"We could not collect the payment for your {plan_name} membership. "
                "Please update your payment method to keep your membership active."
            ),
        )
