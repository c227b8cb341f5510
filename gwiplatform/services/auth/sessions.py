from __future__ import annotations

from datetime import datetime
from enum import Enum
import hashlib
import logging
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import as_utc, utc_now
from gwiplatform.domain.models import PortalSession, SuperAdmin, User
from gwiplatform.persistence.repos import sessions as sessions_repo
from gwiplatform.services.auth.principals import (
    PORTAL_PRINCIPAL_KIND,
    Portal,
    Principal,
    PrincipalKind,
    session_ttl,
)
from gwiplatform.services.authz.roles import admin_role_grants


logger = logging.getLogger(__name__)


class AuthError(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    PRINCIPAL_INACTIVE = "PRINCIPAL_INACTIVE"


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str, str]:
    # 256 bits of randomness; the prefix is kept for operational tracing only.
    raw_token = secrets.token_hex(32)
    return raw_token, raw_token[:8], hash_session_token(raw_token)


async def create_session(
    session: AsyncSession,
    *,
    portal: Portal,
    principal_id: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> tuple[str, PortalSession]:
    # Persist only the hash; the raw token goes back to the caller once.
    raw_token, token_prefix, token_hash = generate_session_token()
    issued_at = now or utc_now()
    row = PortalSession(
        portal=portal.value,
        token_hash=token_hash,
        token_prefix=token_prefix,
        principal_kind=PORTAL_PRINCIPAL_KIND[portal].value,
        principal_id=principal_id,
        created_at=issued_at,
        expires_at=issued_at + session_ttl(portal),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(row)
    await session.flush()
    return raw_token, row


async def _load_principal(
    session: AsyncSession, *, portal: Portal, principal_id: str
) -> Principal | None:
    kind = PORTAL_PRINCIPAL_KIND[portal]
    if kind == PrincipalKind.END_USER:
        result = await session.execute(select(User).where(User.id == principal_id))
        user = result.scalar_one_or_none()
        if user is None or not user.is_active:
            return None
        return Principal(
            id=user.id,
            kind=kind,
            portal=portal,
            email=user.email,
            name=user.name,
        )
    result = await session.execute(select(SuperAdmin).where(SuperAdmin.id == principal_id))
    admin = result.scalar_one_or_none()
    if admin is None or not admin.is_active:
        return None
    # Managed roles govern the admin portal only; the GWI portal keeps its built-in table.
    role_permissions = (
        await admin_role_grants(session, admin) if kind == PrincipalKind.SUPER_ADMIN else None
    )
    return Principal(
        id=admin.id,
        kind=kind,
        portal=portal,
        role=admin.role,
        permissions=frozenset(admin.permissions_json or []),
        role_permissions=role_permissions,
        email=admin.email,
        name=admin.name,
    )


async def resolve(
    session: AsyncSession,
    portal: Portal,
    token: str | None,
    now: datetime | None = None,
) -> Principal | AuthError:
    """Resolve a portal session token into the principal it authenticates.

    Lookup is keyed by ``(portal, sha256(token))`` so a token issued by one
    portal never authenticates another. Role and permissions always come
    from the principal row as it stands now; nothing is cached and nothing
    is written, so expiry is fixed at issuance (no sliding window).
    """
    if not token:
        return AuthError.UNAUTHENTICATED
    row = await sessions_repo.get_by_token_hash(
        session, portal=portal.value, token_hash=hash_session_token(token)
    )
    if row is None or row.revoked_at is not None:
        return AuthError.UNAUTHENTICATED
    current = now or utc_now()
    if current >= as_utc(row.expires_at):
        # Expired rows stay until the sweep removes them.
        return AuthError.SESSION_EXPIRED
    principal = await _load_principal(session, portal=portal, principal_id=row.principal_id)
    if principal is None:
        logger.info(
            "session_principal_inactive portal=%s principal_id=%s",
            portal.value,
            row.principal_id,
        )
        return AuthError.PRINCIPAL_INACTIVE
    return principal


async def revoke_session(
    session: AsyncSession, *, portal: Portal, token: str | None, now: datetime | None = None
) -> bool:
    # Logout is idempotent; unknown tokens simply revoke nothing.
    if not token:
        return False
    return await sessions_repo.revoke(
        session,
        portal=portal.value,
        token_hash=hash_session_token(token),
        revoked_at=now or utc_now(),
    )


async def revoke_principal_sessions(
    session: AsyncSession, *, principal_id: str, now: datetime | None = None
) -> int:
    return await sessions_repo.revoke_for_principal(
        session, principal_id=principal_id, revoked_at=now or utc_now()
    )


async def sweep_expired_sessions(session: AsyncSession, now: datetime | None = None) -> int:
    # Remove expired and revoked sessions; callers own the commit.
    deleted = await sessions_repo.delete_expired(session, now=now or utc_now())
    logger.info("session_sweep_completed deleted=%s", deleted)
    return deleted
