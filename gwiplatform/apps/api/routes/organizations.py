from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import (
    OrgContext,
    audited_forbidden,
    get_dashboard_principal,
    get_db,
    get_org_context,
    not_found_error,
    require_org_capability,
    set_preference_cookie,
    tenant_error,
)
from gwiplatform.core.clock import as_utc
from gwiplatform.core.config import get_settings
from gwiplatform.domain.models import Membership, Organization
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services import audit
from gwiplatform.services.auth.principals import Portal, Principal
from gwiplatform.services import organizations as org_service
from gwiplatform.services.authz.permissions import (
    ORG_ROLE_CAPABILITIES,
    can_access_org,
    can_modify_org,
)
from gwiplatform.services.memberships import (
    MembershipError,
    accept_invitation,
    change_role,
    create_invitation,
    remove_member,
)
from gwiplatform.services.tenancy import TenantError, list_organizations, resolve_org


router = APIRouter(prefix="/api", tags=["organizations"])

_MEMBERSHIP_FAILURES: dict[MembershipError, tuple[int, str]] = {
    MembershipError.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Not found"),
    MembershipError.FORBIDDEN: (status.HTTP_403_FORBIDDEN, "Cannot manage a member with this role"),
    MembershipError.ALREADY_MEMBER: (status.HTTP_409_CONFLICT, "Already a member of this organization"),
    MembershipError.INVITATION_EXPIRED: (status.HTTP_400_BAD_REQUEST, "Invitation has expired"),
    MembershipError.INVITATION_USED: (status.HTTP_400_BAD_REQUEST, "Invitation was already accepted"),
    MembershipError.EMAIL_MISMATCH: (status.HTTP_403_FORBIDDEN, "Invitation was issued to another email"),
    MembershipError.ORGANIZATION_UNAVAILABLE: (
        status.HTTP_403_FORBIDDEN,
        "Organization is no longer available",
    ),
}


def _membership_error(error: MembershipError) -> HTTPException:
    status_code, message = _MEMBERSHIP_FAILURES[error]
    return HTTPException(status_code=status_code, detail={"code": error.value, "message": message})


class OrganizationResponse(BaseModel):
    id: str
    slug: str
    name: str
    plan_tier: str
    parent_id: str | None
    settings: dict[str, Any]


class OrganizationMembershipResponse(BaseModel):
    organization: OrganizationResponse
    role: str
    joined_at: str


class CurrentOrganizationResponse(BaseModel):
    organization: OrganizationResponse
    role: str
    capabilities: list[str]


class MemberResponse(BaseModel):
    user_id: str
    email: str
    name: str | None
    role: str
    joined_at: str


class SelectOrganizationRequest(BaseModel):
    organization_id: str = Field(min_length=1)


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    slug: str | None = Field(default=None, min_length=1, max_length=128)


class UpdateOrganizationRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    # Merged into the stored settings; null values remove keys.
    settings: dict[str, Any] | None = None


class UpdateMemberRequest(BaseModel):
    role: str = Field(min_length=1)


class CreateInvitationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: str = Field(default="MEMBER", min_length=1)


class InvitationResponse(BaseModel):
    id: str
    organization_id: str
    email: str
    role: str
    expires_at: str
    # Returned once so the inviter can deliver it; only the hash is stored.
    token: str


class AcceptInvitationRequest(BaseModel):
    token: str = Field(min_length=1)


def organization_payload(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        slug=org.slug,
        name=org.name,
        plan_tier=org.plan_tier,
        parent_id=org.parent_id,
        settings=org.settings_json or {},
    )


def _membership_payload(org: Organization, membership: Membership) -> OrganizationMembershipResponse:
    return OrganizationMembershipResponse(
        organization=organization_payload(org),
        role=membership.role,
        joined_at=as_utc(membership.joined_at).isoformat(),
    )


@router.get("/organizations")
async def list_my_organizations(
    principal: Principal = Depends(get_dashboard_principal),
    db: AsyncSession = Depends(get_db),
) -> list[OrganizationMembershipResponse]:
    rows = await list_organizations(db, principal.id)
    return [_membership_payload(org, membership) for org, membership in rows]


@router.post("/organizations", status_code=status.HTTP_201_CREATED)
async def create_my_organization(
    payload: CreateOrganizationRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_dashboard_principal),
    db: AsyncSession = Depends(get_db),
) -> OrganizationMembershipResponse:
    # Self-serve onboarding creates a root organization on the starter plan owned by the caller.
    org = await org_service.create_organization(
        db, name=payload.name, slug=payload.slug, owner_user_id=principal.id
    )
    membership = await orgs_repo.get_membership(db, user_id=principal.id, org_id=org.id)
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=principal,
        action="organization.created",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        details={"slug": org.slug, "plan_tier": org.plan_tier},
        request=request,
    )
    await db.commit()
    set_preference_cookie(response, get_settings().current_org_cookie, org.id)
    return _membership_payload(org, membership)


@router.patch("/organizations/{org_id}")
async def update_my_organization(
    org_id: str,
    payload: UpdateOrganizationRequest,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    # Changes apply only to the organization the request is scoped to.
    if not can_access_org(context.principal, org_id, context.organization_id):
        raise tenant_error(TenantError.NOT_A_MEMBER)
    if not can_modify_org(context.principal, org_id, context.organization_id):
        raise await audited_forbidden(
            request=request,
            db=db,
            portal=Portal.DASHBOARD,
            principal=context.principal,
            capability="settings:manage",
            organization_id=org_id,
        )
    changes = payload.model_dump(exclude_unset=True)
    org = await org_service.update_organization(db, context.tenant.organization, **changes)
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=context.principal,
        action="organization.updated",
        resource_type="organization",
        resource_id=org.id,
        organization_id=org.id,
        details=changes,
        request=request,
    )
    await db.commit()
    return organization_payload(org)


@router.post("/organizations/current")
async def select_current_organization(
    payload: SelectOrganizationRequest,
    response: Response,
    principal: Principal = Depends(get_dashboard_principal),
    db: AsyncSession = Depends(get_db),
) -> OrganizationMembershipResponse:
    # Only store the preference after confirming membership, so the cookie never names a foreign org.
    result = await resolve_org(db, principal, payload.organization_id)
    if isinstance(result, TenantError):
        raise tenant_error(result)
    set_preference_cookie(response, get_settings().current_org_cookie, result.organization.id)
    return _membership_payload(result.organization, result.membership)


@router.get("/organization")
async def get_current_organization(
    context: OrgContext = Depends(get_org_context),
) -> CurrentOrganizationResponse:
    role = context.tenant.role
    return CurrentOrganizationResponse(
        organization=organization_payload(context.tenant.organization),
        role=role,
        capabilities=sorted(ORG_ROLE_CAPABILITIES.get(role, frozenset())),
    )


@router.get("/organization/members")
async def list_organization_members(
    context: OrgContext = Depends(require_org_capability("team:read")),
    db: AsyncSession = Depends(get_db),
) -> list[MemberResponse]:
    rows = await orgs_repo.list_members(db, context.organization_id)
    return [
        MemberResponse(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=membership.role,
            joined_at=as_utc(membership.joined_at).isoformat(),
        )
        for membership, user in rows
    ]


@router.patch("/organization/members/{user_id}")
async def update_organization_member(
    user_id: str,
    payload: UpdateMemberRequest,
    request: Request,
    context: OrgContext = Depends(require_org_capability("team:manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await change_role(
        db,
        actor=context.principal,
        org_id=context.organization_id,
        user_id=user_id,
        new_role=payload.role,
    )
    if isinstance(result, MembershipError):
        raise _membership_error(result)
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=context.principal,
        action="member.role_changed",
        resource_type="membership",
        resource_id=result.id,
        organization_id=context.organization_id,
        details={"user_id": user_id, "role": result.role},
        request=request,
    )
    await db.commit()
    return {"user_id": user_id, "role": result.role}


@router.delete("/organization/members/{user_id}")
async def delete_organization_member(
    user_id: str,
    request: Request,
    context: OrgContext = Depends(require_org_capability("team:manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await remove_member(
        db, actor=context.principal, org_id=context.organization_id, user_id=user_id
    )
    if isinstance(result, MembershipError):
        raise _membership_error(result)
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=context.principal,
        action="member.removed",
        resource_type="membership",
        resource_id=result.id,
        organization_id=context.organization_id,
        details={"user_id": user_id, "role": result.role},
        request=request,
    )
    await db.commit()
    return {"success": True}


@router.post("/organization/invitations", status_code=status.HTTP_201_CREATED)
async def invite_member(
    payload: CreateInvitationRequest,
    request: Request,
    context: OrgContext = Depends(require_org_capability("team:manage")),
    db: AsyncSession = Depends(get_db),
) -> InvitationResponse:
    result = await create_invitation(
        db,
        actor=context.principal,
        org_id=context.organization_id,
        email=payload.email,
        role=payload.role,
    )
    if isinstance(result, MembershipError):
        raise _membership_error(result)
    invitation = result.invitation
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=context.principal,
        action="invitation.created",
        resource_type="invitation",
        resource_id=invitation.id,
        organization_id=context.organization_id,
        details={"email": invitation.email, "role": invitation.role},
        request=request,
    )
    await db.commit()
    return InvitationResponse(
        id=invitation.id,
        organization_id=invitation.organization_id,
        email=invitation.email,
        role=invitation.role,
        expires_at=as_utc(invitation.expires_at).isoformat(),
        token=result.token,
    )


@router.post("/invitations/accept")
async def accept_organization_invitation(
    payload: AcceptInvitationRequest,
    request: Request,
    principal: Principal = Depends(get_dashboard_principal),
    db: AsyncSession = Depends(get_db),
) -> OrganizationMembershipResponse:
    result = await accept_invitation(db, principal=principal, token=payload.token)
    if isinstance(result, MembershipError):
        if result == MembershipError.NOT_FOUND:
            raise not_found_error("Invitation not found")
        raise _membership_error(result)
    org = await orgs_repo.get_organization(db, result.organization_id)
    await audit.record(
        session=db,
        portal=Portal.DASHBOARD,
        actor=principal,
        action="invitation.accepted",
        resource_type="membership",
        resource_id=result.id,
        organization_id=org.id,
        details={"role": result.role},
        request=request,
    )
    await db.commit()
    return _membership_payload(org, result)
