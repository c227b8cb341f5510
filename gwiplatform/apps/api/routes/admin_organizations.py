from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import (
    get_db,
    not_found_error,
    require_any_capability,
    require_capability,
)
from gwiplatform.apps.api.routes.organizations import OrganizationResponse, organization_payload
from gwiplatform.core.clock import as_utc
from gwiplatform.domain.models import Organization
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services import audit, hierarchy
from gwiplatform.services import organizations as org_service
from gwiplatform.services.auth.principals import Portal, Principal


router = APIRouter(prefix="/api/admin/organizations", tags=["admin-organizations"])

_read = require_capability(Portal.ADMIN, "tenants:read")
_write = require_capability(Portal.ADMIN, "tenants:write")
# Archiving is a suspension as much as an edit.
_archive = require_any_capability(Portal.ADMIN, "tenants:write", "tenants:suspend")


class AdminOrganizationResponse(BaseModel):
    organization: OrganizationResponse
    archived_at: str | None
    created_at: str


class AdminOrganizationListResponse(BaseModel):
    items: list[AdminOrganizationResponse]
    total: int
    limit: int
    offset: int


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    slug: str | None = Field(default=None, min_length=1, max_length=128)
    plan_tier: str | None = None
    parent_id: str | None = None
    settings: dict[str, Any] | None = None
    inherit_settings: bool = True


class UpdateOrganizationRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    plan_tier: str | None = None
    # Merged into the stored settings; null values remove keys.
    settings: dict[str, Any] | None = None


class HierarchyResponse(BaseModel):
    organization: OrganizationResponse
    ancestors: list[OrganizationResponse]
    children: list[OrganizationResponse]
    descendants: list[OrganizationResponse]
    issues: list[str]


class MoveOrganizationRequest(BaseModel):
    # null detaches the organization and makes it a root.
    parent_id: str | None = None


async def _load(db: AsyncSession, org_id: str) -> Organization:
    org = await orgs_repo.get_organization(db, org_id)
    if org is None:
        raise not_found_error("Organization not found")
    return org


def _admin_payload(org: Organization) -> AdminOrganizationResponse:
    archived_at = as_utc(org.archived_at)
    return AdminOrganizationResponse(
        organization=organization_payload(org),
        archived_at=archived_at.isoformat() if archived_at else None,
        created_at=as_utc(org.created_at).isoformat(),
    )


@router.get("")
async def list_organizations(
    search: str | None = Query(default=None, max_length=128),
    plan_tier: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationListResponse:
    tier = plan_tier.strip().upper() if plan_tier else None
    rows = await orgs_repo.search_organizations(
        db,
        search=search,
        plan_tier=tier,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    total = await orgs_repo.count_organizations(
        db, search=search, plan_tier=tier, include_archived=include_archived
    )
    return AdminOrganizationListResponse(
        items=[_admin_payload(org) for org in rows], total=total, limit=limit, offset=offset
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_organization(
    payload: CreateOrganizationRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationResponse:
    try:
        org = await org_service.create_organization(db, **payload.model_dump())
    except LookupError as exc:
        raise not_found_error("Parent organization not found") from exc
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="organization.created",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        details={"slug": org.slug, "plan_tier": org.plan_tier, "parent_id": org.parent_id},
        request=request,
    )
    await db.commit()
    return _admin_payload(org)


@router.get("/{org_id}")
async def get_organization(
    org_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationResponse:
    return _admin_payload(await _load(db, org_id))


@router.patch("/{org_id}")
async def update_organization(
    org_id: str,
    payload: UpdateOrganizationRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationResponse:
    org = await _load(db, org_id)
    previous_tier = org.plan_tier
    changes = payload.model_dump(exclude_unset=True)
    org = await org_service.update_organization(db, org, **changes)
    details: dict[str, Any] = dict(changes)
    if "plan_tier" in changes:
        details["previous_plan_tier"] = previous_tier
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="organization.updated",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        details=details,
        request=request,
    )
    await db.commit()
    return _admin_payload(org)


@router.post("/{org_id}/archive")
async def archive_organization(
    org_id: str,
    request: Request,
    principal: Principal = Depends(_archive),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationResponse:
    org = await _load(db, org_id)
    org = await org_service.archive_organization(db, org)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="organization.archived",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        request=request,
    )
    await db.commit()
    return _admin_payload(org)


@router.post("/{org_id}/restore")
async def restore_organization(
    org_id: str,
    request: Request,
    principal: Principal = Depends(_archive),
    db: AsyncSession = Depends(get_db),
) -> AdminOrganizationResponse:
    org = await _load(db, org_id)
    org = await org_service.restore_organization(db, org)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="organization.restored",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        request=request,
    )
    await db.commit()
    return _admin_payload(org)


@router.get("/{org_id}/hierarchy")
async def get_organization_hierarchy(
    org_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> HierarchyResponse:
    org = await _load(db, org_id)
    # Broken chains are reported through issues rather than failing the request.
    issues = await hierarchy.validate_hierarchy(db, org)
    ancestors = [] if issues else await hierarchy.get_ancestors(db, org)
    children = await hierarchy.get_children(db, org.id)
    descendants = await hierarchy.get_descendants(db, org.id)
    return HierarchyResponse(
        organization=organization_payload(org),
        ancestors=[organization_payload(item) for item in ancestors],
        children=[organization_payload(item) for item in children],
        descendants=[organization_payload(item) for item in descendants],
        issues=issues,
    )


@router.post("/{org_id}/move")
async def move_organization(
    org_id: str,
    payload: MoveOrganizationRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    org = await _load(db, org_id)
    previous_parent_id = org.parent_id
    if payload.parent_id is not None and await orgs_repo.get_organization(db, payload.parent_id) is None:
        raise not_found_error("Parent organization not found")
    await hierarchy.move_organization(db, org, payload.parent_id)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="organization.moved",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        details={"from_parent_id": previous_parent_id, "to_parent_id": payload.parent_id},
        request=request,
    )
    await db.commit()
    return organization_payload(org)
