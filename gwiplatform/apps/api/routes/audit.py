from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import (
    OrgContext,
    get_db,
    not_found_error,
    require_capability,
    require_org_capability,
)
from gwiplatform.core.clock import as_utc
from gwiplatform.domain.models import AuditLogEntry
from gwiplatform.persistence.repos import audit as audit_repo
from gwiplatform.services.auth.principals import Portal, Principal


dashboard_router = APIRouter(prefix="/api/organization/audit", tags=["audit"])
admin_router = APIRouter(prefix="/api/admin/audit", tags=["admin-audit"])


class AuditEntryResponse(BaseModel):
    id: int
    occurred_at: str
    portal: str
    actor_type: str
    actor_id: str | None
    action: str
    resource_type: str
    resource_id: str | None
    organization_id: str | None
    details: dict[str, Any]
    ip_address: str | None
    user_agent: str | None


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    total: int
    next_offset: int | None


def _to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    # Serialize audit entry datetimes to ISO 8601 for API clients.
    return AuditEntryResponse(
        id=entry.id,
        occurred_at=as_utc(entry.occurred_at).isoformat(),
        portal=entry.portal,
        actor_type=entry.actor_type,
        actor_id=entry.actor_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        organization_id=entry.organization_id,
        details=entry.details_json or {},
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
    )


async def _page(db: AsyncSession, *, offset: int, limit: int, **filters: Any) -> AuditEntriesPage:
    # Fetch one extra row to learn whether another page exists.
    try:
        entries = await audit_repo.list_entries(db, offset=offset, limit=limit + 1, **filters)
        total = await audit_repo.count_entries(db, **filters)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Database error while fetching audit entries"},
        ) from exc
    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return AuditEntriesPage(
        items=[_to_response(entry) for entry in entries],
        total=total,
        next_offset=next_offset,
    )


@dashboard_router.get("")
async def list_organization_audit(
    actor_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    context: OrgContext = Depends(require_org_capability("audit:read")),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    # Organization admins only ever see their own tenant's trail.
    return await _page(
        db,
        offset=offset,
        limit=limit,
        organization_id=context.organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )


@admin_router.get("")
async def list_platform_audit(
    portal: str | None = None,
    organization_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_capability(Portal.ADMIN, "audit:read")),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    return await _page(
        db,
        offset=offset,
        limit=limit,
        portal=portal,
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )


@admin_router.get("/{entry_id}")
async def get_platform_audit_entry(
    entry_id: int,
    principal: Principal = Depends(require_capability(Portal.ADMIN, "audit:read")),
    db: AsyncSession = Depends(get_db),
) -> AuditEntryResponse:
    entry = await audit_repo.get_entry(db, entry_id)
    if entry is None:
        raise not_found_error("Audit entry not found")
    return _to_response(entry)
