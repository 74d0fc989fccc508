from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from berthauth.service.errors import ForbiddenError
from berthauth.service.tokens import TokenClaims, UserRole

WILDCARD = "*"

# Action-resource permission ids, e.g. "create:visit"
ROLE_PERMISSIONS: Dict[UserRole, Tuple[str, ...]] = {
    UserRole.CAREGIVER: (
        "read:clients",
        "read:care-plans",
        "read:visits",
        "read:schedules",
        "create:visit",
        "update:visit",
        "update:visit-documentation",
        "delete:visit-draft",
        "create:visit-note",
        "create:alert",
        "resolve:alert",
        "create:message",
    ),
    UserRole.COORDINATOR: (
        "read:clients",
        "read:care-plans",
        "read:visits",
        "read:schedules",
        "create:visit",
        "update:visit",
        "update:visit-documentation",
        "delete:visit-draft",
        "create:visit-note",
        "create:alert",
        "resolve:alert",
        "delete:alert",
        "create:client",
        "update:client",
        "create:care-plan",
        "update:care-plan",
        "create:schedule",
        "update:schedule",
        "create:user",
    ),
    UserRole.ADMIN: (WILDCARD,),
    UserRole.FAMILY: (
        "read:clients",
        "read:care-plans",
        "read:visits",
        "read:schedules",
        "create:message",
    ),
}


def _as_list(value: str | Iterable[str] | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _role_value(role: UserRole | str) -> str:
    return role.value if isinstance(role, UserRole) else role


def get_role_permissions(role: UserRole | str) -> List[str]:
    """Default permissions for a role; unknown roles get none."""
    try:
        return list(ROLE_PERMISSIONS[UserRole(role)])
    except ValueError:
        return []


def effective_permissions(claims: TokenClaims) -> List[str]:
    if claims.permissions:
        return list(claims.permissions)
    return get_role_permissions(claims.role)


def has_role(
    claims: Optional[TokenClaims], allowed_roles: UserRole | str | Iterable[UserRole | str]
) -> bool:
    if claims is None:
        return False
    roles = _as_list(allowed_roles)
    if not roles:
        return False
    return claims.role.value in {_role_value(role) for role in roles}


def has_permission(
    claims: Optional[TokenClaims], required: str | Iterable[str]
) -> bool:
    """All required permissions must be held. Admins always pass."""
    if claims is None:
        return False
    permissions = _as_list(required)
    if not permissions:
        return False
    if claims.role is UserRole.ADMIN:
        return True
    granted = set(effective_permissions(claims))
    if WILDCARD in granted:
        return True
    return all(permission in granted for permission in permissions)


def has_zone_access(
    claims: Optional[TokenClaims], zone_id: Optional[str], *, allow_admin_bypass: bool = True
) -> bool:
    if claims is None or not zone_id:
        return False
    if allow_admin_bypass and claims.role is UserRole.ADMIN:
        return True
    return claims.zone_id == zone_id


def authorize(
    claims: Optional[TokenClaims],
    *,
    roles: UserRole | str | Iterable[UserRole | str] | None = None,
    permissions: str | Iterable[str] | None = None,
    zone_id: Optional[str] = None,
) -> None:
    """Raise ForbiddenError unless every requested check passes."""
    if roles is not None and not has_role(claims, roles):
        raise ForbiddenError(
            "insufficient role",
            detail={
                "reason": "role_not_allowed",
                "required_roles": [_role_value(role) for role in _as_list(roles)],
            },
        )
    if permissions is not None and not has_permission(claims, permissions):
        raise ForbiddenError(
            "insufficient permissions",
            detail={
                "reason": "missing_permission",
                "required_permissions": _as_list(permissions),
            },
        )
    if zone_id is not None and not has_zone_access(claims, zone_id):
        raise ForbiddenError("zone access denied", detail={"reason": "zone_mismatch"})


__all__ = [
    "ROLE_PERMISSIONS",
    "WILDCARD",
    "authorize",
    "effective_permissions",
    "get_role_permissions",
    "has_permission",
    "has_role",
    "has_zone_access",
]
