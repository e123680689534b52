"""Operator alerts: durable records of billing anomalies.

Alerts are deduplicated on (type, subject, severity) while unresolved, so a
job that runs every hour raises a given reminder once.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_core.models import AlertSeverity, AlertType
from billing_core.state.repository import AlertRepository
from billing_core.state.tables import AlertTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AlertService:
    def __init__(self, session: AsyncSession, *, business_id: str | None = None) -> None:
        self._repo = AlertRepository(session, business_id=business_id)

    async def raise_alert(
        self,
        *,
        business_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        subject_type: str | None = None,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        deduplicate: bool = True,
    ) -> tuple[AlertTable, bool]:
        """Create an alert unless an identical unresolved one exists.

        Returns ``(alert, created)``.
        """
        if deduplicate and subject_id is not None:
            existing = await self._repo.find_unresolved(
                alert_type=alert_type.value,
                subject_id=subject_id,
                severity=severity.value,
            )
            if existing is not None:
                return existing, False

        alert = await self._repo.create(
            business_id=business_id,
            alert_type=alert_type.value,
            severity=severity.value,
            title=title,
            message=message,
            subject_type=subject_type,
            subject_id=subject_id,
            metadata=metadata,
        )
        logger.warning(
            "Alert raised: type=%s severity=%s subject=%s/%s business=%s",
            alert_type.value,
            severity.value,
            subject_type or "-",
            subject_id or "-",
            business_id,
        )
        return alert, True

    async def resolve(self, alert_id: str, *, resolved_by: str) -> AlertTable | None:
        alert = await self._repo.get(alert_id)
        if alert is None:
            return None
        if not alert.resolved:
            await self._repo.resolve(alert, resolved_by=resolved_by)
        return alert

    async def resolve_for_subjects(
        self,
        alert_type: AlertType,
        subject_ids: list[str],
        *,
        resolved_by: str = "system",
    ) -> int:
        count = await self._repo.resolve_for_subjects(
            alert_type=alert_type.value,
            subject_ids=subject_ids,
            resolved_by=resolved_by,
        )
        if count:
            logger.info("Resolved %d %s alert(s)", count, alert_type.value)
        return count

    async def list_alerts(
        self,
        *,
        resolved: bool | None = False,
        alert_type: AlertType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AlertTable]:
        return await self._repo.list_alerts(
            resolved=resolved,
            alert_type=alert_type.value if alert_type else None,
            limit=limit,
            offset=offset,
        )

    async def unresolved_counts(self) -> dict[str, int]:
        return await self._repo.count_unresolved_by_type()
