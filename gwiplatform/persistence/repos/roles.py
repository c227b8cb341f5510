from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import AdminRole, SuperAdmin


async def get_role(session: AsyncSession, role_id: str) -> AdminRole | None:
    result = await session.execute(select(AdminRole).where(AdminRole.id == role_id))
    return result.scalar_one_or_none()


async def get_role_by_name(session: AsyncSession, name: str) -> AdminRole | None:
    result = await session.execute(select(AdminRole).where(AdminRole.name == name))
    return result.scalar_one_or_none()


async def list_roles(session: AsyncSession, *, include_inactive: bool = True) -> list[AdminRole]:
    query = select(AdminRole).order_by(AdminRole.name)
    if not include_inactive:
        query = query.where(AdminRole.is_active.is_(True))
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_child_roles(session: AsyncSession, role_id: str) -> list[AdminRole]:
    result = await session.execute(
        select(AdminRole).where(AdminRole.parent_role_id == role_id).order_by(AdminRole.name)
    )
    return list(result.scalars().all())


async def count_assigned_admins(session: AsyncSession, role_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(SuperAdmin).where(SuperAdmin.admin_role_id == role_id)
    )
    return int(result.scalar_one())
