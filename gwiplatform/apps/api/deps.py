from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.config import PREFERENCE_COOKIE_MAX_AGE_S, get_settings
from gwiplatform.persistence.db import get_session
from gwiplatform.services import audit
from gwiplatform.services.auth.principals import Portal, Principal, cookie_name, session_ttl
from gwiplatform.services.auth.sessions import AuthError, resolve
from gwiplatform.services.authz.permissions import can, can_all, can_any
from gwiplatform.services.tenancy import TenantContext, TenantError, resolve_org


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


_AUTH_MESSAGES: dict[AuthError, str] = {
    AuthError.UNAUTHENTICATED: "Authentication required",
    AuthError.SESSION_EXPIRED: "Session expired",
    AuthError.PRINCIPAL_INACTIVE: "Account is inactive",
}

_TENANT_FAILURES: dict[TenantError, tuple[int, str]] = {
    TenantError.NOT_A_MEMBER: (status.HTTP_403_FORBIDDEN, "Not a member of this organization"),
    TenantError.NO_ORGANIZATION: (status.HTTP_404_NOT_FOUND, "No organization found"),
}


def auth_error(error: AuthError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": error.value, "message": _AUTH_MESSAGES[error]},
    )


def forbidden_error(message: str = "Forbidden", code: str = "FORBIDDEN") -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": code, "message": message},
    )


def not_found_error(message: str = "Not found") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": message},
    )


def tenant_error(error: TenantError) -> HTTPException:
    status_code, message = _TENANT_FAILURES[error]
    return HTTPException(status_code=status_code, detail={"code": error.value, "message": message})


def portal_principal(portal: Portal):
    # Dependency factory: each portal reads only its own cookie and its own session rows.
    async def _dependency(request: Request, db: AsyncSession = Depends(get_db)) -> Principal:
        token = request.cookies.get(cookie_name(portal))
        result = await resolve(db, portal, token)
        if isinstance(result, AuthError):
            raise auth_error(result)
        request.state.principal = result
        return result

    return _dependency


get_dashboard_principal = portal_principal(Portal.DASHBOARD)
get_admin_principal = portal_principal(Portal.ADMIN)
get_gwi_principal = portal_principal(Portal.GWI)

_PORTAL_PRINCIPAL_DEPS = {
    Portal.DASHBOARD: get_dashboard_principal,
    Portal.ADMIN: get_admin_principal,
    Portal.GWI: get_gwi_principal,
}


@dataclass(frozen=True)
class OrgContext:
    # Principal scoped to the resolved membership, plus the tenant it belongs to.
    principal: Principal
    tenant: TenantContext

    @property
    def organization_id(self) -> str:
        return self.tenant.organization.id


async def get_org_context(
    request: Request,
    principal: Principal = Depends(get_dashboard_principal),
    db: AsyncSession = Depends(get_db),
) -> OrgContext:
    # The header is an explicit selection; the cookie is only a hint from a previous visit.
    settings = get_settings()
    requested_org_id = request.headers.get(settings.organization_header)
    hint_org_id = request.cookies.get(settings.current_org_cookie)
    result = await resolve_org(db, principal, requested_org_id, hint_org_id)
    if isinstance(result, TenantError):
        raise tenant_error(result)
    return OrgContext(principal=principal.scoped_to(result.membership), tenant=result)


async def audited_forbidden(
    *,
    request: Request,
    db: AsyncSession,
    portal: Portal,
    principal: Principal,
    capability: str,
    organization_id: str | None,
) -> HTTPException:
    # Log capability denials before raising a 403 response.
    await audit.record(
        session=db,
        portal=portal,
        actor=principal,
        action="authz.forbidden",
        resource_type="capability",
        resource_id=capability,
        organization_id=organization_id,
        details={"path": request.url.path, "method": request.method},
        request=request,
        commit=True,
    )
    return forbidden_error("Insufficient permissions for this operation")


def require_org_capability(capability: str):
    async def _dependency(
        request: Request,
        context: OrgContext = Depends(get_org_context),
        db: AsyncSession = Depends(get_db),
    ) -> OrgContext:
        if not can(context.principal, capability):
            raise await audited_forbidden(
                request=request,
                db=db,
                portal=Portal.DASHBOARD,
                principal=context.principal,
                capability=capability,
                organization_id=context.organization_id,
            )
        return context

    return _dependency


def _platform_capability_dependency(
    portal: Portal, capabilities: tuple[str, ...], match_any: bool
):
    # Platform portals check the principal directly; there is no tenant to scope to.
    principal_dependency = _PORTAL_PRINCIPAL_DEPS[portal]
    check = can_any if match_any else can_all

    async def _dependency(
        request: Request,
        principal: Principal = Depends(principal_dependency),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not check(principal, capabilities):
            raise await audited_forbidden(
                request=request,
                db=db,
                portal=portal,
                principal=principal,
                capability=",".join(capabilities),
                organization_id=None,
            )
        return principal

    return _dependency


def require_capability(portal: Portal, capability: str, *more: str):
    return _platform_capability_dependency(portal, (capability, *more), match_any=False)


def require_any_capability(portal: Portal, capability: str, *more: str):
    return _platform_capability_dependency(portal, (capability, *more), match_any=True)


def set_session_cookie(response: Response, portal: Portal, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=cookie_name(portal),
        value=token,
        max_age=int(session_ttl(portal).total_seconds()),
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
        path="/",
    )


def clear_session_cookie(response: Response, portal: Portal) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=cookie_name(portal),
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
        path="/",
    )


def set_preference_cookie(response: Response, name: str, value: str) -> None:
    # Preference cookies are readable by the client; only auth cookies are httpOnly.
    settings = get_settings()
    response.set_cookie(
        key=name,
        value=value,
        max_age=PREFERENCE_COOKIE_MAX_AGE_S,
        samesite="lax",
        secure=settings.is_production,
        path="/",
    )
