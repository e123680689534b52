"""Operator alert endpoints."""

from __future__ import annotations

import logging
from typing import Any

from billing_core.models import AlertType
from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import BusinessDep, SessionDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import AlertListResponse, AlertResponse
from api.services.alert_service import AlertService
from api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    session: SessionDep,
    business_id: BusinessDep,
    resolved: bool | None = Query(default=False, description="Filter by resolution; omit for all."),
    alert_type: AlertType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_ALERTS)),
) -> dict[str, Any]:
    """List the business's alerts with per-type unresolved counts."""
    service = AlertService(session, business_id=business_id)
    alerts = await service.list_alerts(resolved=resolved, alert_type=alert_type, limit=limit, offset=offset)
    return {
        "alerts": [AlertResponse.model_validate(alert) for alert in alerts],
        "unresolved_counts": await service.unresolved_counts(),
    }


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: str,
    session: SessionDep,
    business_id: BusinessDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.RESOLVE_ALERTS)),
) -> AlertResponse:
    """Mark an alert resolved.  Resolving twice is a no-op."""
    service = AlertService(session, business_id=business_id)
    alert = await service.resolve(alert_id, resolved_by=user_identity)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")

    await AuditService(session, business_id=business_id, actor=user_identity).log(
        AuditAction.ALERT_RESOLVED,
        entity_type="alert",
        entity_id=alert.id,
        alert_type=alert.alert_type,
    )
    return AlertResponse.model_validate(alert)
