"""Durable, idempotent intake of processor webhook events.

Lifecycle of one delivery:

1. Verify the signature.  A bad signature is rejected before anything is
   stored.
2. Insert the event keyed by its unique id (insert-or-ignore) and commit.
   A redelivery of an already processed event stops here as a duplicate.
3. Dispatch in a fresh session.  On success the handler's writes and the
   processed mark commit together.  On failure the handler's writes roll
   back and the error is recorded on this event's row only, so the
   processor's redelivery runs the handler again.

Every update addresses the row by event id, never by type and account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from billing_core.state.repository import InboundEventRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL
from api.services.event_dispatcher import EventDispatcher
from api.services.processor import ProcessorClientFactory

logger = logging.getLogger(__name__)


class ReceiveStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class ReceiveResult:
    status: ReceiveStatus
    event_id: str
    event_type: str
    error: str | None = None


class EventLog:
    """Persist-then-dispatch pipeline for processor events.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions of each step.
    processor:
        Verifies signatures.
    dispatcher:
        Routes events to handlers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: ProcessorClientFactory,
        dispatcher: EventDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._dispatcher = dispatcher

    async def receive(self, payload: bytes, signature: str) -> ReceiveResult:
        """Verify, persist and dispatch one webhook delivery.

        Raises
        ------
        InvalidSignatureError
            If verification fails; nothing is persisted.
        """
        event = self._processor.verify_event(payload, signature)
        event_id = event["id"]
        event_type = event["type"]

        async with self._session_factory() as session:
            repo = InboundEventRepository(session)
            await repo.record(
                event_id=event_id,
                event_type=event_type,
                payload=event,
                account_id=event.get("account"),
            )
            stored = await repo.get(event_id)
            if stored is not None and stored.processed:
                await session.commit()
                logger.info("Event %s (%s) already processed; acknowledging duplicate", event_id, event_type)
                WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=ReceiveStatus.DUPLICATE.value).inc()
                return ReceiveResult(ReceiveStatus.DUPLICATE, event_id, event_type)
            await repo.start_attempt(event_id)
            await session.commit()

        return await self._process(event)

    async def replay(self, event_id: str) -> ReceiveResult | None:
        """Re-dispatch a stored event that has not been processed yet.

        Returns ``None`` when no such event is stored.
        """
        async with self._session_factory() as session:
            repo = InboundEventRepository(session)
            stored = await repo.get(event_id)
            if stored is None:
                return None
            if stored.processed:
                return ReceiveResult(ReceiveStatus.DUPLICATE, event_id, stored.event_type)
            payload = dict(stored.payload)
            await repo.start_attempt(event_id)
            await session.commit()

        logger.info("Replaying event %s (%s)", event_id, payload.get("type"))
        return await self._process(payload)

    async def replay_failed(self, limit: int = 100) -> list[ReceiveResult]:
        """Replay every stored event with a recorded handler error, oldest first."""
        async with self._session_factory() as session:
            failed_ids = [row.event_id for row in await InboundEventRepository(session).list_failed(limit)]

        results: list[ReceiveResult] = []
        for event_id in failed_ids:
            result = await self.replay(event_id)
            if result is not None:
                results.append(result)
        logger.info(
            "Replayed %d failed event(s): %d now processed",
            len(results),
            sum(1 for r in results if r.status in (ReceiveStatus.PROCESSED, ReceiveStatus.IGNORED)),
        )
        return results

    async def _process(self, event: dict[str, Any]) -> ReceiveResult:
        event_id = event["id"]
        event_type = event.get("type", "")
        try:
            async with self._session_factory() as session:
                handled = await self._dispatcher.dispatch(session, event)
                await InboundEventRepository(session).mark_processed(event_id)
                await session.commit()
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error("Handler for event %s (%s) failed: %s", event_id, event_type, error, exc_info=True)
            async with self._session_factory() as session:
                await InboundEventRepository(session).mark_failed(event_id, error)
                await session.commit()
            WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=ReceiveStatus.FAILED.value).inc()
            return ReceiveResult(ReceiveStatus.FAILED, event_id, event_type, error=error)

        status = ReceiveStatus.PROCESSED if handled else ReceiveStatus.IGNORED
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=status.value).inc()
        logger.info("Event %s (%s) %s", event_id, event_type, status.value)
        return ReceiveResult(status, event_id, event_type)
