from __future__ import annotations

import pytest

from gwiplatform.core.errors import InvalidRoleError
from gwiplatform.services.auth.principals import Portal, Principal, PrincipalKind
from gwiplatform.services.authz.permissions import (
    GWI_ROLE_CAPABILITIES,
    ORG_ROLE_CAPABILITIES,
    SUPER_ADMIN_ROLE_CAPABILITIES,
    can,
    can_access_org,
    can_all,
    can_any,
    can_manage_role,
    can_modify_org,
    evaluate,
    normalize_org_role,
)


def _admin(
    *, role: str | None = None, permissions: set[str] | None = None, kind=PrincipalKind.SUPER_ADMIN
) -> Principal:
    portal = Portal.ADMIN if kind == PrincipalKind.SUPER_ADMIN else Portal.GWI
    return Principal(
        id="admin-1",
        kind=kind,
        portal=portal,
        role=role,
        permissions=frozenset(permissions or set()),
    )


def _member(role: str | None) -> Principal:
    return Principal(id="user-1", kind=PrincipalKind.END_USER, portal=Portal.DASHBOARD, role=role)


@pytest.mark.parametrize(
    ("role", "capability", "expected"),
    [
        ("OWNER", "billing:manage", True),
        ("OWNER", "agents:delete", True),
        ("ADMIN", "team:manage", True),
        ("ADMIN", "audit:read", True),
        ("ADMIN", "billing:manage", False),
        ("MEMBER", "agents:execute", True),
        ("MEMBER", "data_sources:read", True),
        ("MEMBER", "agents:delete", False),
        ("MEMBER", "settings:manage", False),
        ("VIEWER", "insights:read", True),
        ("VIEWER", "agents:write", False),
        ("UNKNOWN", "agents:read", False),
        (None, "agents:read", False),
    ],
)
def test_end_user_role_table(role: str | None, capability: str, expected: bool) -> None:
    assert evaluate(PrincipalKind.END_USER, role, frozenset(), capability) is expected


def test_end_user_roles_are_nested_supersets() -> None:
    viewer = ORG_ROLE_CAPABILITIES["VIEWER"]
    member = ORG_ROLE_CAPABILITIES["MEMBER"]
    admin = ORG_ROLE_CAPABILITIES["ADMIN"]
    owner = ORG_ROLE_CAPABILITIES["OWNER"]
    assert viewer < member < admin < owner


def test_end_user_explicit_permissions_are_ignored() -> None:
    # End users are governed only by their membership role.
    assert evaluate(PrincipalKind.END_USER, "VIEWER", frozenset({"super:*"}), "billing:manage") is False


def test_gwi_wildcard_matches_namespace_only() -> None:
    principal = _admin(permissions={"gwi:*"}, kind=PrincipalKind.GWI_ADMIN)
    assert can(principal, "gwi:datasources:write") is True
    assert can(principal, "super:anything") is False
    assert can(principal, "tenants:read") is False


def test_root_wildcard_grants_everything() -> None:
    principal = _admin(permissions={"super:*"})
    for capability in ("tenants:write", "gwi:pipelines:run", "billing:read", "anything:at:all"):
        assert can(principal, capability) is True


def test_exact_permission_grant_beats_missing_role() -> None:
    principal = _admin(role="ANALYST", permissions={"tenants:write"})
    assert can(principal, "tenants:write") is True
    assert can(principal, "users:ban") is False


@pytest.mark.parametrize(
    ("role", "capability", "expected"),
    [
        ("SUPER_ADMIN", "admins:write", True),
        ("ADMIN", "tenants:suspend", True),
        ("ADMIN", "admins:write", False),
        ("SUPPORT", "support:write", True),
        ("SUPPORT", "tenants:write", False),
        ("ANALYST", "analytics:export", True),
        ("ANALYST", "features:write", False),
        ("NOT_A_ROLE", "tenants:read", False),
    ],
)
def test_super_admin_role_table(role: str, capability: str, expected: bool) -> None:
    assert evaluate(PrincipalKind.SUPER_ADMIN, role, frozenset(), capability) is expected


@pytest.mark.parametrize(
    ("role", "capability", "expected"),
    [
        ("GWI_ADMIN", "gwi:taxonomy:write", True),
        ("GWI_ADMIN", "tenants:read", False),
        ("DATA_ENGINEER", "gwi:pipelines:write", True),
        ("DATA_ENGINEER", "gwi:surveys:write", False),
        ("TAXONOMY_MANAGER", "gwi:surveys:write", True),
        ("SUPER_ADMIN", "gwi:anything", True),
        # Admin-portal roles carry no GWI capabilities.
        ("ADMIN", "gwi:datasources:read", False),
    ],
)
def test_gwi_role_table(role: str, capability: str, expected: bool) -> None:
    assert evaluate(PrincipalKind.GWI_ADMIN, role, frozenset(), capability) is expected


def test_role_tables_use_the_same_wildcard_rules() -> None:
    assert "super:*" in SUPER_ADMIN_ROLE_CAPABILITIES["SUPER_ADMIN"]
    assert "gwi:*" in GWI_ROLE_CAPABILITIES["GWI_ADMIN"]


def test_evaluate_is_pure() -> None:
    args = (PrincipalKind.SUPER_ADMIN, "SUPPORT", frozenset({"rules:*"}), "rules:write")
    assert {evaluate(*args) for _ in range(5)} == {True}


def test_empty_capability_is_denied() -> None:
    assert evaluate(PrincipalKind.SUPER_ADMIN, "SUPER_ADMIN", frozenset(), "") is False


def test_can_any_and_can_all() -> None:
    principal = _member("MEMBER")
    assert can_any(principal, ["billing:manage", "agents:write"]) is True
    assert can_any(principal, ["billing:manage", "team:manage"]) is False
    assert can_all(principal, ["agents:read", "agents:write"]) is True
    assert can_all(principal, ["agents:read", "agents:delete"]) is False
    assert can_all(principal, []) is True


@pytest.mark.parametrize(
    ("actor", "target", "expected"),
    [
        ("OWNER", "ADMIN", True),
        ("OWNER", "OWNER", False),
        ("ADMIN", "MEMBER", True),
        ("ADMIN", "VIEWER", True),
        ("ADMIN", "ADMIN", False),
        ("ADMIN", "OWNER", False),
        ("MEMBER", "VIEWER", True),
        ("MEMBER", "MEMBER", False),
        ("VIEWER", "VIEWER", False),
        (None, "VIEWER", False),
        ("OWNER", "BOGUS", False),
    ],
)
def test_can_manage_role(actor: str | None, target: str, expected: bool) -> None:
    assert can_manage_role(actor, target) is expected


def test_org_access_helpers() -> None:
    owner = _member("OWNER")
    viewer = _member("VIEWER")
    assert can_access_org(owner, "org-a", scoped_org_id="org-a") is True
    assert can_access_org(owner, "org-b", scoped_org_id="org-a") is False
    assert can_modify_org(owner, "org-a", scoped_org_id="org-a") is True
    assert can_modify_org(viewer, "org-a", scoped_org_id="org-a") is False

    support = _admin(role="SUPPORT")
    assert can_access_org(support, "any-org") is True
    assert can_modify_org(support, "any-org") is False

    engineer = _admin(role="DATA_ENGINEER", kind=PrincipalKind.GWI_ADMIN)
    assert can_access_org(engineer, "any-org") is True
    assert can_modify_org(engineer, "any-org") is False


def test_normalize_org_role() -> None:
    assert normalize_org_role(" admin ") == "ADMIN"
    with pytest.raises(InvalidRoleError):
        normalize_org_role("superuser")
