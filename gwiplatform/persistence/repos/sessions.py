from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import PortalSession


async def get_by_token_hash(
    session: AsyncSession, *, portal: str, token_hash: str
) -> PortalSession | None:
    # Portal is part of the lookup key so one portal's token never resolves in another.
    result = await session.execute(
        select(PortalSession).where(
            PortalSession.portal == portal,
            PortalSession.token_hash == token_hash,
        )
    )
    return result.scalar_one_or_none()


async def revoke(
    session: AsyncSession, *, portal: str, token_hash: str, revoked_at: datetime
) -> bool:
    result = await session.execute(
        update(PortalSession)
        .where(
            PortalSession.portal == portal,
            PortalSession.token_hash == token_hash,
            PortalSession.revoked_at.is_(None),
        )
        .values(revoked_at=revoked_at)
    )
    return (result.rowcount or 0) > 0


async def revoke_for_principal(
    session: AsyncSession, *, principal_id: str, revoked_at: datetime
) -> int:
    # Ban/deactivate flows revoke every live session across all portals.
    result = await session.execute(
        update(PortalSession)
        .where(PortalSession.principal_id == principal_id, PortalSession.revoked_at.is_(None))
        .values(revoked_at=revoked_at)
    )
    return int(result.rowcount or 0)


async def delete_expired(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        delete(PortalSession).where(
            or_(PortalSession.expires_at <= now, PortalSession.revoked_at.is_not(None))
        )
    )
    return int(result.rowcount or 0)
