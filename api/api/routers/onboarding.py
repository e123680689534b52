"""Business onboarding status endpoints."""

from __future__ import annotations

import logging
from typing import Any

from billing_core.errors import BusinessNotFoundError, InvalidTransitionError
from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import BusinessDep, ProcessorDep, SessionDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import OnboardingStatusResponse, TransitionRequest
from api.services.onboarding_service import OnboardingService, OnboardingStatusView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])


def _ensure_own_business(requested: str, authenticated: str) -> None:
    if requested != authenticated:
        raise HTTPException(status_code=403, detail="Cannot access another business's onboarding")


def _status_payload(view: OnboardingStatusView) -> dict[str, Any]:
    return {
        "business_id": view.business_id,
        "status": view.status,
        "next_action": view.next_action.model_dump(),
        "history": view.history,
    }


@router.get("/{business_id}", response_model=OnboardingStatusResponse)
async def get_onboarding_status(
    business_id: str,
    session: SessionDep,
    tenant: BusinessDep,
    _role: Role = Depends(require_permission(Permission.READ_ONBOARDING)),
) -> dict[str, Any]:
    """Return the status, the next action for the user, and the transition history."""
    _ensure_own_business(business_id, tenant)
    try:
        view = await OnboardingService(session).get_status(business_id)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _status_payload(view)


@router.post("/{business_id}/transition", response_model=OnboardingStatusResponse)
async def request_transition(
    business_id: str,
    body: TransitionRequest,
    session: SessionDep,
    tenant: BusinessDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Apply a user-requested status change.  Returns 409 if the change is not allowed."""
    _ensure_own_business(business_id, tenant)
    service = OnboardingService(session)
    try:
        await service.request_transition(business_id, body.to_status, reason=body.reason, actor=user_identity)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _status_payload(await service.get_status(business_id))


@router.post("/{business_id}/refresh", response_model=OnboardingStatusResponse)
async def refresh_onboarding(
    business_id: str,
    session: SessionDep,
    processor: ProcessorDep,
    tenant: BusinessDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Re-read the connected account from Stripe and apply the derived status."""
    _ensure_own_business(business_id, tenant)
    service = OnboardingService(session, processor)
    try:
        await service.refresh_from_processor(business_id, actor=user_identity)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _status_payload(await service.get_status(business_id))
