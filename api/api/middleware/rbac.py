"""Role-Based Access Control dependencies.

Defines a four-tier role hierarchy (VIEWER, STAFF, ADMIN, OWNER) with
fine-grained permissions.  Each role inherits all permissions from the
roles below it in the hierarchy.

Usage in routers::

    from api.middleware.rbac import Permission, Role, require_permission

    @router.get("/{plan_id}/price")
    async def get_price(
        ...,
        _role: Role = Depends(require_permission(Permission.READ_PLANS)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """Operator roles ordered by privilege level."""

    VIEWER = 0
    STAFF = 1
    ADMIN = 2
    OWNER = 3


# Mapping from the string claim value to the enum member.
_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    # Plans and pricing
    READ_PLANS = "read:plans"
    MANAGE_PLANS = "manage:plans"
    MANAGE_PRICING = "manage:pricing"
    RESUME_SUBSCRIPTIONS = "resume:subscriptions"

    # Alerts
    READ_ALERTS = "read:alerts"
    RESOLVE_ALERTS = "resolve:alerts"

    # Onboarding
    READ_ONBOARDING = "read:onboarding"
    MANAGE_ONBOARDING = "manage:onboarding"


# ---------------------------------------------------------------------------
# Role -> Permission mapping (each role inherits from the tier below)
# ---------------------------------------------------------------------------

_VIEWER_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_PLANS,
        Permission.READ_ALERTS,
        Permission.READ_ONBOARDING,
    }
)

_STAFF_PERMS: frozenset[Permission] = _VIEWER_PERMS | frozenset(
    {
        Permission.RESOLVE_ALERTS,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _STAFF_PERMS | frozenset(
    {
        Permission.MANAGE_PLANS,
        Permission.MANAGE_PRICING,
        Permission.RESUME_SUBSCRIPTIONS,
    }
)

_OWNER_PERMS: frozenset[Permission] = _ADMIN_PERMS | frozenset(
    {
        Permission.MANAGE_ONBOARDING,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.STAFF: _STAFF_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.OWNER: _OWNER_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the operator role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request carries no authenticated identity.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


# ---------------------------------------------------------------------------
# FastAPI dependency: permission guard
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`Role` so downstream handlers can inspect
    it if needed.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info(
                "Permission denied: role=%s requires %s",
                role.name,
                permission.value,
            )
            raise HTTPException(
                status_code=403,
                detail=(f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission"),
            )
        return role

    return _guard
