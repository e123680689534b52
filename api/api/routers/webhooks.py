"""Stripe webhook receiver.

The route is public (no bearer token); authenticity is established by the
``Stripe-Signature`` header, which is verified against the raw body before
anything is stored.
"""

from __future__ import annotations

import logging

from billing_core.errors import InvalidSignatureError
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from api.dependencies import EventLogDep
from api.schemas import WebhookAck
from api.services.event_log import ReceiveStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def receive_stripe_event(request: Request, event_log: EventLogDep) -> WebhookAck | JSONResponse:
    """Record and process one Stripe event.

    Returns 400 on a bad signature, 500 when the handler failed (so Stripe
    redelivers), and 200 for processed, ignored, and duplicate events.
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    body = await request.body()
    try:
        result = await event_log.receive(body, signature)
    except InvalidSignatureError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid signature")

    if result.status == ReceiveStatus.FAILED:
        return JSONResponse(
            status_code=500,
            content={"status": result.status.value, "event_id": result.event_id},
        )
    return WebhookAck(status=result.status.value, event_id=result.event_id)
