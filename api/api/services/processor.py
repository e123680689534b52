"""Stripe client scoped to connected accounts.

Stripe holds products, prices, subscriptions and invoices for each business
on that business's connected account.  :class:`ProcessorClientFactory` is
created once at startup with the platform key and hands out a
:class:`ProcessorClient` per account id.  The account is passed as the
``stripe_account`` request option on every call, so nothing is written to
the ``stripe`` module's global configuration.

The Stripe SDK is blocking.  Each call runs in a worker thread and is
bounded by ``timeout`` seconds; from the caller's side every operation
either returns the Stripe object or raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from billing_core.errors import InvalidSignatureError

logger = logging.getLogger(__name__)


def subscription_item(subscription: dict[str, Any]) -> dict[str, Any]:
    """Return the first line item of a Stripe subscription.

    Membership subscriptions carry exactly one item.

    Raises
    ------
    ValueError
        If the subscription has no items.
    """
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        raise ValueError(f"Subscription {subscription.get('id')} has no line items")
    return items[0]


def subscription_price_id(subscription: dict[str, Any]) -> str | None:
    price = subscription_item(subscription).get("price") or {}
    return price.get("id") if isinstance(price, dict) else str(price)


class ProcessorClient:
    """Stripe operations on behalf of one connected account.

    Parameters
    ----------
    stripe_module:
        The imported ``stripe`` package.
    api_key:
        Platform secret key.
    account_id:
        Connected account id (``acct_...``); ``None`` addresses the platform
        account itself.
    timeout:
        Seconds allowed per API call.
    """

    def __init__(
        self,
        stripe_module: Any,
        *,
        api_key: str,
        account_id: str | None,
        timeout: float,
    ) -> None:
        self._stripe = stripe_module
        self._api_key = api_key
        self._account_id = account_id
        self._timeout = timeout

    @property
    def account_id(self) -> str | None:
        return self._account_id

    def _options(self, idempotency_key: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._account_id:
            options["stripe_account"] = self._account_id
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout)

    # -- Subscriptions -------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(self._stripe.Subscription.retrieve, subscription_id, **self._options())

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        return await self._call(self._stripe.Subscription.modify, subscription_id, **params, **self._options())

    async def swap_price(
        self,
        subscription: dict[str, Any],
        price_id: str,
        *,
        resume: bool = False,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Move *subscription*'s line item to *price_id* without proration.

        The change takes effect from the next invoice.  With ``resume=True``
        the pause on collection is lifted in the same request.
        """
        params: dict[str, Any] = {
            "items": [{"id": subscription_item(subscription)["id"], "price": price_id}],
            "proration_behavior": "none",
        }
        if resume:
            # An empty string unsets pause_collection.
            params["pause_collection"] = ""
        if metadata:
            params["metadata"] = metadata
        return await self.update_subscription(subscription["id"], **params)

    async def pause_subscription(self, subscription_id: str, *, behavior: str = "keep_as_draft") -> dict[str, Any]:
        return await self.update_subscription(subscription_id, pause_collection={"behavior": behavior})

    # -- Products and prices -------------------------------------------------

    async def create_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return await self._call(
            self._stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=currency,
            recurring={"interval": interval},
            metadata=metadata or {},
            **self._options(idempotency_key),
        )

    async def deactivate_price(self, price_id: str) -> dict[str, Any]:
        return await self._call(self._stripe.Price.modify, price_id, active=False, **self._options())

    async def update_product(self, product_id: str, **params: Any) -> dict[str, Any]:
        return await self._call(self._stripe.Product.modify, product_id, **params, **self._options())

    # -- Invoices ------------------------------------------------------------

    async def create_and_finalize_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Create an invoice for the subscription's pending amount and finalize it.

        Pausing collection suppresses the renewal invoice, so this is how a
        catch-up charge is raised after a resume.
        """
        invoice = await self._call(
            self._stripe.Invoice.create,
            customer=customer_id,
            subscription=subscription_id,
            auto_advance=True,
            **self._options(idempotency_key),
        )
        return await self._call(self._stripe.Invoice.finalize_invoice, invoice["id"], **self._options())

    # -- Accounts ------------------------------------------------------------

    async def retrieve_account(self) -> dict[str, Any]:
        if not self._account_id:
            raise ValueError("retrieve_account requires a connected account id")
        return await self._call(self._stripe.Account.retrieve, self._account_id, api_key=self._api_key)


class ProcessorClientFactory:
    """Builds account-scoped :class:`ProcessorClient` instances.

    Parameters
    ----------
    api_key:
        Platform secret key.
    webhook_secret:
        Signing secret of the webhook endpoint.
    timeout:
        Seconds allowed per API call.
    """

    def __init__(self, *, api_key: str, webhook_secret: str, timeout: float = 20.0) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._timeout = timeout

    def _get_stripe(self) -> Any:
        """Lazily import the Stripe library."""
        import stripe

        return stripe

    def for_account(self, account_id: str | None) -> ProcessorClient:
        return ProcessorClient(
            self._get_stripe(),
            api_key=self._api_key,
            account_id=account_id,
            timeout=self._timeout,
        )

    def verify_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the event as a dict.

        Raises
        ------
        InvalidSignatureError
            If the header is missing, the signature does not match, or the
            body is not a JSON event object.
        """
        if not signature:
            raise InvalidSignatureError("Missing Stripe signature header")
        if not self._webhook_secret:
            raise InvalidSignatureError("Webhook secret is not configured")

        stripe = self._get_stripe()
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise InvalidSignatureError(f"Invalid webhook payload: {exc}") from exc

        # Persist and dispatch the raw JSON rather than the SDK object so
        # replays see exactly what was delivered.
        event = json.loads(payload)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignatureError("Webhook payload is not an event object")
        return event
