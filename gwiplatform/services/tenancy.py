from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import Membership, Organization
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services.auth.principals import Principal, PrincipalKind


logger = logging.getLogger(__name__)


class TenantError(str, Enum):
    NOT_A_MEMBER = "NOT_A_MEMBER"
    NO_ORGANIZATION = "NO_ORGANIZATION"


@dataclass(frozen=True)
class TenantContext:
    organization: Organization
    membership: Membership

    @property
    def organization_id(self) -> str:
        return self.organization.id

    @property
    def role(self) -> str:
        return self.membership.role


async def resolve_org(
    session: AsyncSession,
    principal: Principal,
    requested_org_id: str | None,
    hint_org_id: str | None = None,
) -> TenantContext | TenantError:
    """Pick the organization a dashboard request operates on.

    An explicit ``requested_org_id`` must name a live membership or the
    request fails. Without one, ``hint_org_id`` (the last selection) is
    honoured when still valid; otherwise the earliest membership wins,
    ordered by ``joined_at`` then organization id.
    """
    if principal.kind != PrincipalKind.END_USER:
        return TenantError.NOT_A_MEMBER

    if requested_org_id:
        row = await orgs_repo.get_live_membership(
            session, user_id=principal.id, org_id=requested_org_id
        )
        if row is None:
            logger.info(
                "tenant_not_a_member user_id=%s org_id=%s", principal.id, requested_org_id
            )
            return TenantError.NOT_A_MEMBER
        return TenantContext(organization=row[0], membership=row[1])

    if hint_org_id:
        row = await orgs_repo.get_live_membership(
            session, user_id=principal.id, org_id=hint_org_id
        )
        if row is not None:
            return TenantContext(organization=row[0], membership=row[1])
        # Stale selection (left or archived org); fall through to the default.

    memberships = await orgs_repo.list_live_memberships(session, user_id=principal.id)
    if not memberships:
        return TenantError.NO_ORGANIZATION
    organization, membership = memberships[0]
    return TenantContext(organization=organization, membership=membership)


async def list_organizations(
    session: AsyncSession, user_id: str
) -> list[tuple[Organization, Membership]]:
    return await orgs_repo.list_live_memberships(session, user_id=user_id)
