from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import AuditLogEntry


def _filtered(
    stmt: Select,
    *,
    portal: str | None,
    organization_id: str | None,
    actor_id: str | None,
    action: str | None,
    resource_type: str | None,
    resource_id: str | None,
    occurred_from: datetime | None,
    occurred_to: datetime | None,
) -> Select:
    if portal:
        stmt = stmt.where(AuditLogEntry.portal == portal)
    if organization_id:
        stmt = stmt.where(AuditLogEntry.organization_id == organization_id)
    if actor_id:
        stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if resource_type:
        stmt = stmt.where(AuditLogEntry.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditLogEntry.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.occurred_at <= occurred_to)
    return stmt


async def list_entries(
    session: AsyncSession,
    *,
    portal: str | None = None,
    organization_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    stmt = _filtered(
        select(AuditLogEntry),
        portal=portal,
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    stmt = stmt.order_by(AuditLogEntry.occurred_at.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_entries(
    session: AsyncSession,
    *,
    portal: str | None = None,
    organization_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
) -> int:
    stmt = _filtered(
        select(func.count(AuditLogEntry.id)),
        portal=portal,
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_entry(session: AsyncSession, entry_id: int) -> AuditLogEntry | None:
    result = await session.execute(select(AuditLogEntry).where(AuditLogEntry.id == entry_id))
    return result.scalar_one_or_none()
