from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

from gwiplatform.core.config import get_settings

if TYPE_CHECKING:
    from gwiplatform.domain.models import Membership


class Portal(str, Enum):
    DASHBOARD = "dashboard"
    ADMIN = "admin"
    GWI = "gwi"


class PrincipalKind(str, Enum):
    END_USER = "end_user"
    SUPER_ADMIN = "super_admin"
    GWI_ADMIN = "gwi_admin"


# Each portal issues exactly one kind of principal.
PORTAL_PRINCIPAL_KIND: dict[Portal, PrincipalKind] = {
    Portal.DASHBOARD: PrincipalKind.END_USER,
    Portal.ADMIN: PrincipalKind.SUPER_ADMIN,
    Portal.GWI: PrincipalKind.GWI_ADMIN,
}


@dataclass(frozen=True)
class Principal:
    """An authenticated identity, populated from current database state."""

    id: str
    kind: PrincipalKind
    portal: Portal
    # End users carry no role until scoped to a membership.
    role: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    # Effective grants of a managed admin role; when set they replace the built-in role table.
    role_permissions: frozenset[str] | None = None
    email: str | None = None
    name: str | None = None

    def scoped_to(self, membership: "Membership") -> "Principal":
        # Roles are per membership, so scoping yields a new principal instead of mutating.
        return replace(self, role=membership.role)

    @property
    def is_platform_admin(self) -> bool:
        return self.kind in (PrincipalKind.SUPER_ADMIN, PrincipalKind.GWI_ADMIN)


def detect_portal(path: str) -> Portal:
    # Map request paths onto portals; everything outside admin/gwi is the dashboard.
    normalized = "/" + path.lstrip("/")
    for prefix, portal in (("/api/admin", Portal.ADMIN), ("/admin", Portal.ADMIN)):
        if normalized == prefix or normalized.startswith(prefix + "/"):
            return portal
    for prefix in ("/api/gwi", "/gwi"):
        if normalized == prefix or normalized.startswith(prefix + "/"):
            return Portal.GWI
    return Portal.DASHBOARD


def cookie_name(portal: Portal) -> str:
    settings = get_settings()
    if portal == Portal.ADMIN:
        return settings.admin_session_cookie
    if portal == Portal.GWI:
        return settings.gwi_session_cookie
    return settings.dashboard_session_cookie


def session_ttl(portal: Portal) -> timedelta:
    settings = get_settings()
    if portal == Portal.ADMIN:
        return timedelta(hours=settings.admin_session_ttl_hours)
    if portal == Portal.GWI:
        return timedelta(hours=settings.gwi_session_ttl_hours)
    return timedelta(hours=settings.dashboard_session_ttl_hours)
