from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from gwiplatform.apps.api.errors import (
    domain_validation_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    upstream_unavailable_handler,
    validation_exception_handler,
)
from gwiplatform.apps.api.routes import auth as auth_routes
from gwiplatform.apps.api.routes import audit as audit_routes
from gwiplatform.apps.api.routes.admin_features import router as admin_features_router
from gwiplatform.apps.api.routes.admin_organizations import router as admin_organizations_router
from gwiplatform.apps.api.routes.admin_roles import router as admin_roles_router
from gwiplatform.apps.api.routes.features import router as features_router
from gwiplatform.apps.api.routes.gwi_data import router as gwi_data_router
from gwiplatform.apps.api.routes.health import router as health_router
from gwiplatform.apps.api.routes.organizations import router as organizations_router
from gwiplatform.apps.api.routes.preferences import router as preferences_router
from gwiplatform.core.config import get_settings
from gwiplatform.core.errors import (
    FeatureConfigError,
    HierarchyCycleError,
    InvalidRoleError,
    OrganizationConfigError,
    RoleConfigError,
    UpstreamUnavailableError,
)
from gwiplatform.core.logging import configure_logging
from gwiplatform.services.auth.principals import detect_portal
from gwiplatform.services.gwi_client import close_gwi_client


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Release pooled upstream connections on shutdown.
    await close_gwi_client()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        request.state.portal = detect_portal(request.url.path)
        start = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "request_completed method=%s path=%s portal=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            request.state.portal.value,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    for error_type in (
        FeatureConfigError,
        HierarchyCycleError,
        InvalidRoleError,
        OrganizationConfigError,
        RoleConfigError,
    ):
        app.add_exception_handler(error_type, domain_validation_handler)

    @app.exception_handler(UpstreamUnavailableError)
    async def _upstream_unavailable_handler(request: Request, exc: UpstreamUnavailableError):
        return await upstream_unavailable_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(auth_routes.dashboard_router)
    app.include_router(auth_routes.admin_router)
    app.include_router(auth_routes.gwi_router)
    app.include_router(organizations_router)
    app.include_router(features_router)
    app.include_router(preferences_router)
    app.include_router(audit_routes.dashboard_router)
    app.include_router(admin_organizations_router)
    app.include_router(admin_features_router)
    app.include_router(admin_roles_router)
    app.include_router(audit_routes.admin_router)
    app.include_router(gwi_data_router)

    return app


app = create_app()
