"""Repository classes providing CRUD access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
calling ``session.commit()`` (or relying on the ``get_session`` context
manager).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models import CANCELED_STATUS, SubscriptionKind
from billing_core.state.tables import (
    AlertTable,
    AuditLogTable,
    BusinessTable,
    BusinessTransitionTable,
    ConsumerTable,
    InboundEventTable,
    LegacySubscriptionTable,
    PlanSubscriptionTable,
    PlanTable,
    PriceQueueItemTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    bool
        ``True`` if a new row was inserted, ``False`` if it already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return bool(result.rowcount)


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


class InboundEventRepository:
    """Durable log of processor events, keyed by the unique event id.

    Every state change is addressed by ``event_id`` alone.  Matching on
    event type plus account would let two concurrent events of the same
    type mark each other processed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        account_id: str | None,
    ) -> bool:
        """Insert the event unless it is already stored.

        Returns ``True`` when this call created the row.
        """
        inserted = await _dialect_upsert_nothing(
            self._session,
            InboundEventTable,
            {
                "id": _new_id(),
                "event_id": event_id,
                "event_type": event_type,
                "payload": payload,
                "account_id": account_id,
                "signature_valid": True,
                "processed": False,
                "attempts": 0,
                "created_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        if not inserted:
            logger.info("Event %s already recorded (redelivery)", event_id)
        return inserted

    async def get(self, event_id: str) -> InboundEventTable | None:
        stmt = select(InboundEventTable).where(InboundEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def start_attempt(self, event_id: str) -> None:
        """Increment the delivery attempt counter for *event_id*."""
        stmt = (
            update(InboundEventTable)
            .where(InboundEventTable.event_id == event_id)
            .values(attempts=InboundEventTable.attempts + 1)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_processed(self, event_id: str) -> None:
        stmt = (
            update(InboundEventTable)
            .where(InboundEventTable.event_id == event_id)
            .values(processed=True, processing_error=None, processed_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_failed(self, event_id: str, error: str) -> None:
        stmt = (
            update(InboundEventTable)
            .where(InboundEventTable.event_id == event_id)
            .values(processed=False, processing_error=error[:4000])
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def list_failed(self, limit: int = 100) -> list[InboundEventTable]:
        """Return unprocessed events that recorded a handler error, oldest first."""
        stmt = (
            select(InboundEventTable)
            .where(
                InboundEventTable.processed.is_(False),
                InboundEventTable.processing_error.is_not(None),
            )
            .order_by(InboundEventTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Businesses
# ---------------------------------------------------------------------------


class BusinessRepository:
    """Business rows plus their append-only onboarding history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, business_id: str) -> BusinessTable | None:
        return await self._session.get(BusinessTable, business_id)

    async def get_by_account(self, account_id: str) -> BusinessTable | None:
        stmt = select(BusinessTable).where(BusinessTable.stripe_account_id == account_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        name: str,
        contact_email: str | None = None,
        stripe_account_id: str | None = None,
        status: str = "CREATED",
    ) -> BusinessTable:
        row = BusinessTable(
            id=_new_id(),
            name=name,
            contact_email=contact_email,
            stripe_account_id=stripe_account_id,
            status=status,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def update_account_snapshot(
        self,
        business: BusinessTable,
        *,
        charges_enabled: bool,
        details_submitted: bool,
        payouts_enabled: bool,
        requirements: dict[str, Any],
        event_id: str | None,
    ) -> None:
        business.charges_enabled = charges_enabled
        business.details_submitted = details_submitted
        business.payouts_enabled = payouts_enabled
        business.requirements_json = requirements
        if event_id is not None:
            business.last_processed_event_id = event_id
        await self._session.flush()

    async def append_transition(
        self,
        business: BusinessTable,
        *,
        to_status: str,
        reason: str,
        source: str,
        source_event_id: str | None = None,
    ) -> BusinessTransitionTable:
        """Move *business* to *to_status* and insert one history row.

        History is a separate insert-only table, so concurrent deliveries
        append rather than overwrite each other.
        """
        row = BusinessTransitionTable(
            id=_new_id(),
            business_id=business.id,
            from_status=business.status,
            to_status=to_status,
            reason=reason,
            source=source,
            source_event_id=source_event_id,
            created_at=datetime.now(UTC),
        )
        business.status = to_status
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_transitions(self, business_id: str) -> list[BusinessTransitionTable]:
        stmt = (
            select(BusinessTransitionTable)
            .where(BusinessTransitionTable.business_id == business_id)
            .order_by(BusinessTransitionTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Consumers
# ---------------------------------------------------------------------------


class ConsumerRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, consumer_id: str) -> ConsumerTable | None:
        return await self._session.get(ConsumerTable, consumer_id)

    async def get_or_create_by_email(
        self,
        business_id: str,
        email: str,
        *,
        name: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> ConsumerTable:
        """Resolve the consumer for *email*, inserting it on first sight."""
        normalised = email.strip().lower()
        await _dialect_upsert_nothing(
            self._session,
            ConsumerTable,
            {
                "id": _new_id(),
                "business_id": business_id,
                "email": normalised,
                "name": name,
                "stripe_customer_id": stripe_customer_id,
                "created_at": datetime.now(UTC),
            },
            index_elements=["business_id", "email"],
        )
        stmt = select(ConsumerTable).where(
            ConsumerTable.business_id == business_id,
            ConsumerTable.email == normalised,
        )
        result = await self._session.execute(stmt)
        consumer = result.scalar_one()
        if stripe_customer_id and consumer.stripe_customer_id is None:
            consumer.stripe_customer_id = stripe_customer_id
            await self._session.flush()
        return consumer


# ---------------------------------------------------------------------------
# Plans and the price queue
# ---------------------------------------------------------------------------


class PlanRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str, *, business_id: str | None = None) -> PlanTable | None:
        stmt = select(PlanTable).where(PlanTable.id == plan_id)
        if business_id is not None:
            stmt = stmt.where(PlanTable.business_id == business_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **values: Any) -> PlanTable:
        row = PlanTable(id=values.pop("id", None) or _new_id(), **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_by_pricing(self, pricing_type: str, *, status: str | None = None) -> list[PlanTable]:
        stmt = select(PlanTable).where(PlanTable.pricing_type == pricing_type)
        if status is not None:
            stmt = stmt.where(PlanTable.status == status)
        result = await self._session.execute(stmt.order_by(PlanTable.created_at))
        return list(result.scalars().all())

    async def update(self, plan: PlanTable, **values: Any) -> PlanTable:
        for key, value in values.items():
            setattr(plan, key, value)
        await self._session.flush()
        return plan


class PriceQueueRepository:
    """Monthly price schedule rows for dynamic plans."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_applied_in_interval(self, plan_id: str, start: date, end: date) -> PriceQueueItemTable | None:
        """Return the applied item whose month lies in ``[start, end)``.

        Archived items and items without an external price never match.
        The latest effective month wins if several qualify.
        """
        stmt = (
            select(PriceQueueItemTable)
            .where(
                PriceQueueItemTable.plan_id == plan_id,
                PriceQueueItemTable.applied.is_(True),
                PriceQueueItemTable.archived_at.is_(None),
                PriceQueueItemTable.stripe_price_id.is_not(None),
                PriceQueueItemTable.effective_month >= start,
                PriceQueueItemTable.effective_month < end,
            )
            .order_by(PriceQueueItemTable.effective_month.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_month(self, plan_id: str, month: date) -> PriceQueueItemTable | None:
        stmt = select(PriceQueueItemTable).where(
            PriceQueueItemTable.plan_id == plan_id,
            PriceQueueItemTable.effective_month == month,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_plan(self, plan_id: str, *, include_archived: bool = False) -> list[PriceQueueItemTable]:
        stmt = select(PriceQueueItemTable).where(PriceQueueItemTable.plan_id == plan_id)
        if not include_archived:
            stmt = stmt.where(PriceQueueItemTable.archived_at.is_(None))
        result = await self._session.execute(stmt.order_by(PriceQueueItemTable.effective_month.asc()))
        return list(result.scalars().all())

    async def list_due(self, today: date) -> list[PriceQueueItemTable]:
        """Return unapplied items whose month has started, oldest first."""
        stmt = (
            select(PriceQueueItemTable)
            .where(
                PriceQueueItemTable.applied.is_(False),
                PriceQueueItemTable.effective_month <= today,
            )
            .order_by(PriceQueueItemTable.effective_month.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add(
        self,
        *,
        plan_id: str,
        month: date,
        price: int,
        applied: bool = False,
        stripe_price_id: str | None = None,
    ) -> PriceQueueItemTable:
        now = datetime.now(UTC)
        row = PriceQueueItemTable(
            id=_new_id(),
            plan_id=plan_id,
            effective_month=month,
            price=price,
            applied=applied,
            stripe_price_id=stripe_price_id,
            applied_at=now if applied else None,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_applied(self, item: PriceQueueItemTable, stripe_price_id: str) -> None:
        item.applied = True
        item.stripe_price_id = stripe_price_id
        item.applied_at = datetime.now(UTC)
        await self._session.flush()

    async def delete_unapplied(self, plan_id: str) -> int:
        """Delete every not-yet-applied item of *plan_id*; applied rows stay."""
        stmt = delete(PriceQueueItemTable).where(
            PriceQueueItemTable.plan_id == plan_id,
            PriceQueueItemTable.applied.is_(False),
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def archive_unapplied(self, plan_id: str) -> int:
        """Retire every not-yet-applied item of *plan_id* without deleting it."""
        stmt = (
            update(PriceQueueItemTable)
            .where(
                PriceQueueItemTable.plan_id == plan_id,
                PriceQueueItemTable.applied.is_(False),
            )
            .values(applied=True, archived_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def delete_archived_months(self, plan_id: str, months: list[date]) -> int:
        """Drop archived rows occupying *months* so a new schedule can reuse them.

        Archived rows never carried an external price, so no price history
        is lost.
        """
        if not months:
            return 0
        stmt = delete(PriceQueueItemTable).where(
            PriceQueueItemTable.plan_id == plan_id,
            PriceQueueItemTable.archived_at.is_not(None),
            PriceQueueItemTable.effective_month.in_(months),
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Subscriptions: tagged union over the current and legacy shapes
# ---------------------------------------------------------------------------

# Columns each shape accepts from processor synchronisation.
_SYNC_COLUMNS: dict[SubscriptionKind, frozenset[str]] = {
    SubscriptionKind.CURRENT: frozenset(
        {"status", "current_period_start", "current_period_end", "cancel_at_period_end", "last_synced_at"}
    ),
    SubscriptionKind.LEGACY: frozenset({"status", "current_period_end", "last_synced_at"}),
}


@dataclass
class SubscriptionRecord:
    """A subscription row tagged with the representation it lives in."""

    kind: SubscriptionKind
    row: PlanSubscriptionTable | LegacySubscriptionTable

    @property
    def id(self) -> str:
        return self.row.id

    @property
    def stripe_subscription_id(self) -> str:
        return self.row.stripe_subscription_id

    @property
    def plan_id(self) -> str:
        return self.row.plan_id

    @property
    def business_id(self) -> str:
        return self.row.business_id

    @property
    def consumer_id(self) -> str:
        return self.row.consumer_id

    @property
    def status(self) -> str:
        return self.row.status

    @property
    def current_period_end(self) -> datetime | None:
        return self.row.current_period_end

    @property
    def paused_at(self) -> datetime | None:
        return self.row.paused_at

    def apply_fields(self, fields: dict[str, Any]) -> list[str]:
        """Write the sync fields this shape carries; return the names written."""
        allowed = _SYNC_COLUMNS[self.kind]
        written: list[str] = []
        for name, value in fields.items():
            if name in allowed:
                setattr(self.row, name, value)
                written.append(name)
        return written


class SubscriptionRepository:
    """Lookup and update of subscriptions across both representations.

    Lookups try the current model first, then the legacy model.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_external_id(self, stripe_subscription_id: str) -> SubscriptionRecord | None:
        current = await self._session.execute(
            select(PlanSubscriptionTable).where(PlanSubscriptionTable.stripe_subscription_id == stripe_subscription_id)
        )
        row = current.scalar_one_or_none()
        if row is not None:
            return SubscriptionRecord(SubscriptionKind.CURRENT, row)

        legacy = await self._session.execute(
            select(LegacySubscriptionTable).where(
                LegacySubscriptionTable.stripe_subscription_id == stripe_subscription_id
            )
        )
        legacy_row = legacy.scalar_one_or_none()
        if legacy_row is not None:
            return SubscriptionRecord(SubscriptionKind.LEGACY, legacy_row)
        return None

    async def insert_current(
        self,
        *,
        stripe_subscription_id: str,
        business_id: str,
        consumer_id: str,
        plan_id: str,
        status: str,
    ) -> bool:
        """Insert a current-model row unless the external id already exists."""
        return await _dialect_upsert_nothing(
            self._session,
            PlanSubscriptionTable,
            {
                "id": _new_id(),
                "stripe_subscription_id": stripe_subscription_id,
                "business_id": business_id,
                "consumer_id": consumer_id,
                "plan_id": plan_id,
                "status": status,
                "cancel_at_period_end": False,
                "created_at": datetime.now(UTC),
            },
            index_elements=["stripe_subscription_id"],
        )

    async def apply(self, record: SubscriptionRecord, fields: dict[str, Any]) -> list[str]:
        written = record.apply_fields(fields)
        await self._session.flush()
        return written

    async def set_paused_at(self, record: SubscriptionRecord, paused_at: datetime | None) -> None:
        record.row.paused_at = paused_at
        await self._session.flush()

    async def list_paused_for_plan(self, plan_id: str) -> list[SubscriptionRecord]:
        """Return subscriptions of *plan_id* with a local pause flag, both shapes."""
        records: list[SubscriptionRecord] = []
        for kind, table in (
            (SubscriptionKind.CURRENT, PlanSubscriptionTable),
            (SubscriptionKind.LEGACY, LegacySubscriptionTable),
        ):
            stmt = (
                select(table)
                .where(table.plan_id == plan_id, table.paused_at.is_not(None))
                .order_by(table.paused_at.asc())
            )
            result = await self._session.execute(stmt)
            records.extend(SubscriptionRecord(kind, row) for row in result.scalars().all())
        return records

    async def list_for_plan(self, plan_id: str, *, statuses: frozenset[str]) -> list[SubscriptionRecord]:
        """Return subscriptions of *plan_id* whose status is in *statuses*, both shapes.

        Locally paused rows are included whatever their mirrored status;
        canceled rows never are.
        """
        records: list[SubscriptionRecord] = []
        for kind, table in (
            (SubscriptionKind.CURRENT, PlanSubscriptionTable),
            (SubscriptionKind.LEGACY, LegacySubscriptionTable),
        ):
            stmt = (
                select(table)
                .where(
                    table.plan_id == plan_id,
                    (table.status.in_(sorted(statuses))) | (table.paused_at.is_not(None)),
                    table.status != CANCELED_STATUS,
                )
                .order_by(table.created_at.asc())
            )
            result = await self._session.execute(stmt)
            records.extend(SubscriptionRecord(kind, row) for row in result.scalars().all())
        return records


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertRepository:
    def __init__(self, session: AsyncSession, *, business_id: str | None = None) -> None:
        self._session = session
        self._business_id = business_id

    def _scoped(self, stmt: Any) -> Any:
        if self._business_id is not None:
            stmt = stmt.where(AlertTable.business_id == self._business_id)
        return stmt

    async def create(
        self,
        *,
        business_id: str,
        alert_type: str,
        severity: str,
        title: str,
        message: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AlertTable:
        row = AlertTable(
            id=_new_id(),
            business_id=business_id,
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            subject_type=subject_type,
            subject_id=subject_id,
            metadata_json=metadata,
            resolved=False,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, alert_id: str) -> AlertTable | None:
        stmt = self._scoped(select(AlertTable).where(AlertTable.id == alert_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_unresolved(
        self,
        *,
        alert_type: str,
        subject_id: str,
        severity: str | None = None,
    ) -> AlertTable | None:
        stmt = select(AlertTable).where(
            AlertTable.alert_type == alert_type,
            AlertTable.subject_id == subject_id,
            AlertTable.resolved.is_(False),
        )
        if severity is not None:
            stmt = stmt.where(AlertTable.severity == severity)
        result = await self._session.execute(self._scoped(stmt).limit(1))
        return result.scalar_one_or_none()

    async def list_alerts(
        self,
        *,
        resolved: bool | None = False,
        alert_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AlertTable]:
        stmt = select(AlertTable)
        if resolved is not None:
            stmt = stmt.where(AlertTable.resolved.is_(resolved))
        if alert_type is not None:
            stmt = stmt.where(AlertTable.alert_type == alert_type)
        stmt = self._scoped(stmt).order_by(AlertTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_unresolved_by_type(self) -> dict[str, int]:
        stmt = (
            select(AlertTable.alert_type, func.count())
            .where(AlertTable.resolved.is_(False))
            .group_by(AlertTable.alert_type)
        )
        result = await self._session.execute(self._scoped(stmt))
        return {row[0]: int(row[1]) for row in result.all()}

    async def resolve(self, alert: AlertTable, *, resolved_by: str) -> AlertTable:
        alert.resolved = True
        alert.resolved_at = datetime.now(UTC)
        alert.resolved_by = resolved_by
        await self._session.flush()
        return alert

    async def resolve_for_subjects(
        self,
        *,
        alert_type: str,
        subject_ids: list[str],
        resolved_by: str,
    ) -> int:
        """Resolve open alerts of *alert_type* about any of *subject_ids*."""
        if not subject_ids:
            return 0
        stmt = (
            update(AlertTable)
            .where(
                AlertTable.alert_type == alert_type,
                AlertTable.subject_id.in_(subject_ids),
                AlertTable.resolved.is_(False),
            )
            .values(resolved=True, resolved_at=datetime.now(UTC), resolved_by=resolved_by)
        )
        if self._business_id is not None:
            stmt = stmt.where(AlertTable.business_id == self._business_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each entry links to its predecessor via ``previous_hash``, forming a
    per-business chain.  Modifying any stored row breaks the chain for every
    later entry, which :meth:`verify_chain` detects.
    """

    def __init__(self, session: AsyncSession, *, business_id: str) -> None:
        self._session = session
        self._business_id = business_id

    @staticmethod
    def _compute_hash(
        business_id: str,
        actor: str,
        action: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        parts = [
            business_id,
            actor,
            action,
            entity_type or "",
            entity_id or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
            created_at.astimezone(UTC).isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.business_id == self._business_id)
            .order_by(AuditLogTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Write an audit entry and return its id."""
        entry_id = _new_id()
        now = datetime.now(UTC)
        previous_hash = await self.get_latest_hash()
        entry_hash = self._compute_hash(
            self._business_id,
            actor,
            action,
            entity_type,
            entity_id,
            metadata,
            previous_hash,
            now,
        )
        self._session.add(
            AuditLogTable(
                id=entry_id,
                business_id=self._business_id,
                actor=actor,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata_json=metadata,
                previous_hash=previous_hash,
                entry_hash=entry_hash,
                created_at=now,
            )
        )
        await self._session.flush()

        logger.info(
            "Audit: business=%s actor=%s action=%s entity=%s/%s",
            self._business_id,
            actor,
            action,
            entity_type or "-",
            entity_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLogTable]:
        """Return entries matching the filters, most recent first."""
        stmt = select(AuditLogTable).where(AuditLogTable.business_id == self._business_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if entity_type is not None:
            stmt = stmt.where(AuditLogTable.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == entity_id)
        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self) -> tuple[bool, int]:
        """Walk the chain oldest-first.

        Returns ``(is_valid, entries_checked)``; checking stops at the first
        broken link.
        """
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.business_id == self._business_id)
            .order_by(AuditLogTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        previous: str | None = None
        checked = 0
        for entry in result.scalars().all():
            expected = self._compute_hash(
                entry.business_id,
                entry.actor,
                entry.action,
                entry.entity_type,
                entry.entity_id,
                entry.metadata_json,
                previous,
                entry.created_at,
            )
            checked += 1
            if entry.previous_hash != previous or entry.entry_hash != expected:
                logger.warning("Audit chain broken at entry %s (business=%s)", entry.id, self._business_id)
                return False, checked
            previous = entry.entry_hash
        return True, checked
