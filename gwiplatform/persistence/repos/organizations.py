from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import Membership, Organization, User


async def get_organization(session: AsyncSession, org_id: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == org_id))
    return result.scalar_one_or_none()


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    return result.scalar_one_or_none()


async def get_live_membership(
    session: AsyncSession, *, user_id: str, org_id: str
) -> tuple[Organization, Membership] | None:
    # Archived organizations are invisible to tenant resolution.
    result = await session.execute(
        select(Organization, Membership)
        .join(Membership, Membership.organization_id == Organization.id)
        .where(
            Membership.user_id == user_id,
            Membership.organization_id == org_id,
            Organization.archived_at.is_(None),
        )
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def list_live_memberships(
    session: AsyncSession, *, user_id: str
) -> list[tuple[Organization, Membership]]:
    # Deterministic order: earliest joined first, organization id breaks ties.
    result = await session.execute(
        select(Organization, Membership)
        .join(Membership, Membership.organization_id == Organization.id)
        .where(Membership.user_id == user_id, Organization.archived_at.is_(None))
        .order_by(Membership.joined_at.asc(), Organization.id.asc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def get_membership(
    session: AsyncSession, *, user_id: str, org_id: str
) -> Membership | None:
    result = await session.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            Membership.organization_id == org_id,
        )
    )
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, org_id: str) -> list[tuple[Membership, User]]:
    result = await session.execute(
        select(Membership, User)
        .join(User, User.id == Membership.user_id)
        .where(Membership.organization_id == org_id)
        .order_by(Membership.joined_at.asc(), Membership.user_id.asc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_children(session: AsyncSession, org_id: str) -> list[Organization]:
    result = await session.execute(
        select(Organization)
        .where(Organization.parent_id == org_id)
        .order_by(Organization.created_at, Organization.id)
    )
    return list(result.scalars().all())


def _search_filters(
    *, search: str | None, plan_tier: str | None, include_archived: bool
) -> list:
    filters = []
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(
            or_(func.lower(Organization.name).like(pattern), Organization.slug.like(pattern))
        )
    if plan_tier:
        filters.append(Organization.plan_tier == plan_tier)
    if not include_archived:
        filters.append(Organization.archived_at.is_(None))
    return filters


async def search_organizations(
    session: AsyncSession,
    *,
    search: str | None = None,
    plan_tier: str | None = None,
    include_archived: bool = False,
    limit: int = 20,
    offset: int = 0,
) -> list[Organization]:
    filters = _search_filters(search=search, plan_tier=plan_tier, include_archived=include_archived)
    result = await session.execute(
        select(Organization)
        .where(*filters)
        .order_by(Organization.created_at.asc(), Organization.id.asc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def count_organizations(
    session: AsyncSession,
    *,
    search: str | None = None,
    plan_tier: str | None = None,
    include_archived: bool = False,
) -> int:
    filters = _search_filters(search=search, plan_tier=plan_tier, include_archived=include_archived)
    result = await session.execute(select(func.count()).select_from(Organization).where(*filters))
    return int(result.scalar_one())
