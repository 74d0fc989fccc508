import pytest

from berthauth.service.authorization import (
    ROLE_PERMISSIONS,
    authorize,
    effective_permissions,
    get_role_permissions,
    has_permission,
    has_role,
    has_zone_access,
)
from berthauth.service.errors import ForbiddenError
from berthauth.service.tokens import TokenClaims, UserRole


def _claims(role, permissions=None, zone="zone_a"):
    return TokenClaims(user_id="u1", role=role, zone_id=zone, permissions=permissions)


def test_every_role_has_a_permission_table():
    assert set(ROLE_PERMISSIONS) == set(UserRole)
    assert get_role_permissions("admin") == ["*"]
    assert "create:user" in get_role_permissions(UserRole.COORDINATOR)
    assert "create:user" not in get_role_permissions(UserRole.CAREGIVER)
    assert get_role_permissions("janitor") == []


def test_role_permissions_are_copies():
    perms = get_role_permissions("family")
    perms.append("delete:everything")
    assert "delete:everything" not in get_role_permissions("family")


def test_token_permissions_override_role_defaults():
    claims = _claims("caregiver", permissions=["read:visits"])
    assert effective_permissions(claims) == ["read:visits"]
    assert effective_permissions(_claims("caregiver", permissions=[])) == get_role_permissions(
        "caregiver"
    )


def test_has_role():
    claims = _claims("coordinator")
    assert has_role(claims, "coordinator")
    assert has_role(claims, [UserRole.ADMIN, UserRole.COORDINATOR])
    assert not has_role(claims, ["caregiver"])
    assert not has_role(claims, [])
    assert not has_role(None, "coordinator")


def test_has_permission():
    caregiver = _claims("caregiver")
    assert has_permission(caregiver, "create:visit")
    assert has_permission(caregiver, ["create:visit", "read:clients"])
    assert not has_permission(caregiver, ["create:visit", "create:user"])
    assert not has_permission(caregiver, [])
    assert not has_permission(None, "create:visit")


def test_admin_and_wildcard_always_pass():
    assert has_permission(_claims("admin", permissions=["read:visits"]), "create:user")
    assert has_permission(_claims("family", permissions=["*"]), "delete:alert")


def test_zone_access():
    caregiver = _claims("caregiver", zone="zone_a")
    assert has_zone_access(caregiver, "zone_a")
    assert not has_zone_access(caregiver, "zone_b")
    assert not has_zone_access(caregiver, None)
    admin = _claims("admin", zone="zone_a")
    assert has_zone_access(admin, "zone_b")
    assert not has_zone_access(admin, "zone_b", allow_admin_bypass=False)


def test_authorize_raises_forbidden_with_reason():
    caregiver = _claims("caregiver")
    authorize(caregiver, roles=["caregiver"], permissions=["create:visit"], zone_id="zone_a")

    with pytest.raises(ForbiddenError) as excinfo:
        authorize(caregiver, roles=["coordinator"])
    assert excinfo.value.detail["reason"] == "role_not_allowed"

    with pytest.raises(ForbiddenError) as excinfo:
        authorize(caregiver, permissions="create:user")
    assert excinfo.value.detail["reason"] == "missing_permission"

    with pytest.raises(ForbiddenError) as excinfo:
        authorize(caregiver, zone_id="zone_b")
    assert excinfo.value.detail["reason"] == "zone_mismatch"
    assert excinfo.value.status_code == 403
