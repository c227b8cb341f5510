from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import (
    clear_session_cookie,
    get_db,
    portal_principal,
    set_session_cookie,
)
from gwiplatform.services import audit
from gwiplatform.services.auth.login import LoginFailure, authenticate
from gwiplatform.services.auth.principals import Portal, Principal, cookie_name
from gwiplatform.services.auth.sessions import resolve, revoke_session


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class PrincipalResponse(BaseModel):
    id: str
    kind: str
    portal: str
    email: str | None
    name: str | None
    role: str | None
    permissions: list[str]


class SessionResponse(BaseModel):
    principal: PrincipalResponse
    expires_at: str | None = None


def _principal_payload(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        kind=principal.kind.value,
        portal=principal.portal.value,
        email=principal.email,
        name=principal.name,
        role=principal.role,
        permissions=sorted(principal.permissions),
    )


def build_auth_router(portal: Portal, prefix: str) -> APIRouter:
    """Login, logout and session introspection for one portal's cookie namespace."""
    router = APIRouter(prefix=prefix, tags=[f"{portal.value}-auth"])
    current_principal = portal_principal(portal)

    @router.post("/login", response_model=SessionResponse)
    async def login(
        payload: LoginRequest,
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
    ) -> SessionResponse:
        result = await authenticate(
            db, portal=portal, email=payload.email, password=payload.password, request=request
        )
        if isinstance(result, LoginFailure):
            if result.locked:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={"code": "ACCOUNT_LOCKED", "message": result.message},
                )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "INVALID_CREDENTIALS", "message": result.message},
            )
        set_session_cookie(response, portal, result.token)
        return SessionResponse(
            principal=_principal_payload(result.principal),
            expires_at=result.session.expires_at.isoformat(),
        )

    @router.post("/logout")
    async def logout(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_db),
    ) -> dict:
        # Logout always clears the cookie, even when the session is already gone.
        token = request.cookies.get(cookie_name(portal))
        principal = await resolve(db, portal, token)
        revoked = await revoke_session(db, portal=portal, token=token)
        if revoked and isinstance(principal, Principal):
            await audit.record(
                session=db,
                portal=portal,
                actor=principal,
                action="auth.logout",
                resource_type="session",
                request=request,
            )
        await db.commit()
        clear_session_cookie(response, portal)
        return {"success": True}

    @router.get("/session", response_model=SessionResponse)
    async def get_session_info(
        principal: Principal = Depends(current_principal),
    ) -> SessionResponse:
        return SessionResponse(principal=_principal_payload(principal))

    return router


dashboard_router = build_auth_router(Portal.DASHBOARD, "/api/auth")
admin_router = build_auth_router(Portal.ADMIN, "/api/admin/auth")
gwi_router = build_auth_router(Portal.GWI, "/api/gwi/auth")
