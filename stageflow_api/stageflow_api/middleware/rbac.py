"""Role-based access control for the webhook endpoints.

Roles form a hierarchy (VIEWER < OPERATOR < ENGINEER < ADMIN) where each
role inherits the permissions of the ones below it.  SERVICE is outside
the hierarchy and holds only what internal services need.

Usage in routers::

    @router.post("/trigger")
    async def trigger_webhook(
        ...,
        _role: Role = Depends(require_permission(Permission.TRIGGER_WEBHOOKS)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Caller roles ordered by privilege level."""

    VIEWER = 0
    OPERATOR = 1
    ENGINEER = 2
    ADMIN = 3
    SERVICE = 10  # Non-hierarchical


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'")


class Permission(str, Enum):
    """Permission tokens checked by endpoint guards."""

    TRIGGER_WEBHOOKS = "trigger:webhooks"
    READ_WEBHOOK_DELIVERIES = "read:webhook_deliveries"
    MANAGE_WEBHOOK_RETRIES = "manage:webhook_retries"


_VIEWER_PERMS: frozenset[Permission] = frozenset()

_OPERATOR_PERMS: frozenset[Permission] = _VIEWER_PERMS | frozenset({Permission.READ_WEBHOOK_DELIVERIES})

_ENGINEER_PERMS: frozenset[Permission] = _OPERATOR_PERMS | frozenset({Permission.TRIGGER_WEBHOOKS})

_ADMIN_PERMS: frozenset[Permission] = _ENGINEER_PERMS | frozenset({Permission.MANAGE_WEBHOOK_RETRIES})

_SERVICE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.TRIGGER_WEBHOOKS,
        Permission.READ_WEBHOOK_DELIVERIES,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.OPERATOR: _OPERATOR_PERMS,
    Role.ENGINEER: _ENGINEER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.SERVICE: _SERVICE_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def get_user_role(request: Request) -> Role:
    """Return the caller's role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        The request was not authenticated.
    HTTPException(403)
        The role claim is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'")


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces *permission*."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
            )
        return role

    return _guard
