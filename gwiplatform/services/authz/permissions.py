"""Capability checks shared by every portal.

All functions here are pure: the outcome depends only on the principal kind,
role, explicit permission list, the effective grants of a managed admin role
when one is assigned, and the capability string. Denial is a plain
``False``; route dependencies turn it into a 403.
"""

from __future__ import annotations

from typing import Iterable

from gwiplatform.core.errors import InvalidRoleError
from gwiplatform.services.auth.principals import Principal, PrincipalKind


ROOT_WILDCARD = "super:*"

ORG_ROLE_ORDER: dict[str, int] = {
    "VIEWER": 1,
    "MEMBER": 2,
    "ADMIN": 3,
    "OWNER": 4,
}

_VIEWER = frozenset(
    {
        "agents:read",
        "insights:read",
        "data_sources:read",
        "reports:read",
        "dashboards:read",
        "team:read",
    }
)
_MEMBER = _VIEWER | {
    "agents:write",
    "agents:execute",
    "insights:write",
    "data_sources:write",
    "reports:write",
    "dashboards:write",
}
_ADMIN = _MEMBER | {
    "agents:delete",
    "data_sources:delete",
    "reports:delete",
    "dashboards:delete",
    "team:invite",
    "team:manage",
    "settings:read",
    "settings:manage",
    "audit:read",
}
_OWNER = _ADMIN | {"billing:manage", "org:delete"}

ORG_ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "VIEWER": _VIEWER,
    "MEMBER": frozenset(_MEMBER),
    "ADMIN": frozenset(_ADMIN),
    "OWNER": frozenset(_OWNER),
}

SUPER_ADMIN_ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "SUPER_ADMIN": frozenset({ROOT_WILDCARD}),
    "ADMIN": frozenset(
        {
            "tenants:read",
            "tenants:write",
            "tenants:suspend",
            "users:read",
            "users:write",
            "users:ban",
            "analytics:read",
            "analytics:export",
            "features:read",
            "features:write",
            "rules:read",
            "rules:write",
            "support:read",
            "support:write",
            "support:manage",
            "config:read",
            "audit:read",
            "notifications:read",
            "notifications:write",
            "billing:read",
            "admins:read",
            "roles:read",
        }
    ),
    "SUPPORT": frozenset(
        {
            "tenants:read",
            "users:read",
            "analytics:read",
            "features:read",
            "support:read",
            "support:write",
            "audit:read",
            "notifications:read",
            "billing:read",
        }
    ),
    "ANALYST": frozenset(
        {
            "tenants:read",
            "users:read",
            "analytics:read",
            "analytics:export",
            "features:read",
            "audit:read",
        }
    ),
}

GWI_ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "SUPER_ADMIN": frozenset({ROOT_WILDCARD}),
    "GWI_ADMIN": frozenset({"gwi:*"}),
    "DATA_ENGINEER": frozenset(
        {
            "gwi:pipelines:read",
            "gwi:pipelines:write",
            "gwi:pipelines:run",
            "gwi:datasources:read",
            "gwi:datasources:write",
            "gwi:quality:read",
        }
    ),
    "ML_ENGINEER": frozenset(
        {
            "gwi:agents:read",
            "gwi:agents:write",
            "gwi:llm:read",
            "gwi:pipelines:read",
            "gwi:datasources:read",
        }
    ),
    "TAXONOMY_MANAGER": frozenset(
        {
            "gwi:surveys:read",
            "gwi:surveys:write",
            "gwi:taxonomy:read",
            "gwi:taxonomy:write",
            "gwi:datasources:read",
        }
    ),
}


def normalize_org_role(role: str) -> str:
    # Membership roles are stored upper-case; reject anything outside the vocabulary.
    normalized = role.strip().upper()
    if normalized not in ORG_ROLE_ORDER:
        raise InvalidRoleError(f"Unsupported organization role: {role}")
    return normalized


def _namespace(capability: str) -> str:
    return capability.split(":", 1)[0]


def _granted_by(grants: Iterable[str], capability: str) -> bool:
    # Exact entries first, then "ns:*" wildcards; "super:*" covers every namespace.
    grants = frozenset(grants)
    if capability in grants:
        return True
    if ROOT_WILDCARD in grants:
        return True
    return f"{_namespace(capability)}:*" in grants


def role_capabilities(kind: PrincipalKind, role: str | None) -> frozenset[str]:
    if role is None:
        return frozenset()
    if kind == PrincipalKind.END_USER:
        return ORG_ROLE_CAPABILITIES.get(role, frozenset())
    if kind == PrincipalKind.SUPER_ADMIN:
        return SUPER_ADMIN_ROLE_CAPABILITIES.get(role, frozenset())
    return GWI_ROLE_CAPABILITIES.get(role, frozenset())


def evaluate(
    kind: PrincipalKind,
    role: str | None,
    permissions: Iterable[str],
    capability: str,
    role_permissions: Iterable[str] | None = None,
) -> bool:
    if not capability:
        return False
    if kind == PrincipalKind.END_USER:
        # End users have no explicit grants; the membership role decides.
        return capability in role_capabilities(kind, role)
    if _granted_by(permissions, capability):
        return True
    if role_permissions is not None:
        return _granted_by(role_permissions, capability)
    return _granted_by(role_capabilities(kind, role), capability)


def can(principal: Principal, capability: str) -> bool:
    return evaluate(
        principal.kind,
        principal.role,
        principal.permissions,
        capability,
        role_permissions=principal.role_permissions,
    )


def can_any(principal: Principal, capabilities: Iterable[str]) -> bool:
    return any(can(principal, capability) for capability in capabilities)


def can_all(principal: Principal, capabilities: Iterable[str]) -> bool:
    # An empty requirement list is vacuously satisfied.
    return all(can(principal, capability) for capability in capabilities)


def can_manage_role(actor_role: str | None, target_role: str | None) -> bool:
    # Only strictly higher ranks may change or remove a membership.
    if actor_role is None or target_role is None:
        return False
    return ORG_ROLE_ORDER.get(actor_role, 0) > ORG_ROLE_ORDER.get(target_role, 0) > 0


def can_access_org(principal: Principal, org_id: str, scoped_org_id: str | None = None) -> bool:
    if principal.kind == PrincipalKind.END_USER:
        return scoped_org_id is not None and scoped_org_id == org_id
    if principal.kind == PrincipalKind.SUPER_ADMIN:
        return can(principal, "tenants:read")
    return can(principal, "gwi:datasources:read")


def can_modify_org(principal: Principal, org_id: str, scoped_org_id: str | None = None) -> bool:
    if principal.kind == PrincipalKind.END_USER:
        return (
            scoped_org_id is not None
            and scoped_org_id == org_id
            and can(principal, "settings:manage")
        )
    if principal.kind == PrincipalKind.SUPER_ADMIN:
        return can(principal, "tenants:write")
    return can(principal, "gwi:*")
