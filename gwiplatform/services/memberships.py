from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import hashlib
import logging
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import as_utc, utc_now
from gwiplatform.core.config import get_settings
from gwiplatform.domain.models import Invitation, Membership
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services.auth.principals import Principal
from gwiplatform.services.authz.permissions import can_manage_role, normalize_org_role


logger = logging.getLogger(__name__)


class MembershipError(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_MEMBER = "ALREADY_MEMBER"
    INVITATION_EXPIRED = "INVITATION_EXPIRED"
    INVITATION_USED = "INVITATION_USED"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    ORGANIZATION_UNAVAILABLE = "ORGANIZATION_UNAVAILABLE"


@dataclass(frozen=True)
class IssuedInvitation:
    token: str
    invitation: Invitation


def hash_invitation_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


async def change_role(
    session: AsyncSession,
    *,
    actor: Principal,
    org_id: str,
    user_id: str,
    new_role: str,
) -> Membership | MembershipError:
    # The actor must outrank both the member's current role and the role being granted.
    role = normalize_org_role(new_role)
    membership = await orgs_repo.get_membership(session, user_id=user_id, org_id=org_id)
    if membership is None:
        return MembershipError.NOT_FOUND
    if not can_manage_role(actor.role, membership.role) or not can_manage_role(actor.role, role):
        return MembershipError.FORBIDDEN
    previous = membership.role
    membership.role = role
    await session.flush()
    logger.info(
        "membership_role_changed org_id=%s user_id=%s from=%s to=%s",
        org_id,
        user_id,
        previous,
        role,
    )
    return membership


async def remove_member(
    session: AsyncSession, *, actor: Principal, org_id: str, user_id: str
) -> Membership | MembershipError:
    membership = await orgs_repo.get_membership(session, user_id=user_id, org_id=org_id)
    if membership is None:
        return MembershipError.NOT_FOUND
    if not can_manage_role(actor.role, membership.role):
        return MembershipError.FORBIDDEN
    await session.delete(membership)
    await session.flush()
    logger.info("membership_removed org_id=%s user_id=%s", org_id, user_id)
    return membership


async def create_invitation(
    session: AsyncSession,
    *,
    actor: Principal,
    org_id: str,
    email: str,
    role: str,
    now: datetime | None = None,
) -> IssuedInvitation | MembershipError:
    # Inviters can only hand out roles below their own.
    normalized_role = normalize_org_role(role)
    if not can_manage_role(actor.role, normalized_role):
        return MembershipError.FORBIDDEN
    issued_at = now or utc_now()
    raw_token = secrets.token_hex(32)
    invitation = Invitation(
        organization_id=org_id,
        email=email.strip().lower(),
        role=normalized_role,
        token_hash=hash_invitation_token(raw_token),
        invited_by=actor.id,
        created_at=issued_at,
        expires_at=issued_at + timedelta(days=get_settings().invitation_ttl_days),
    )
    session.add(invitation)
    await session.flush()
    return IssuedInvitation(token=raw_token, invitation=invitation)


async def accept_invitation(
    session: AsyncSession,
    *,
    principal: Principal,
    token: str,
    now: datetime | None = None,
) -> Membership | MembershipError:
    """Turn a pending invitation into a membership for the signed-in user."""
    result = await session.execute(
        select(Invitation).where(Invitation.token_hash == hash_invitation_token(token))
    )
    invitation = result.scalar_one_or_none()
    if invitation is None:
        return MembershipError.NOT_FOUND
    if invitation.accepted_at is not None:
        return MembershipError.INVITATION_USED
    current = now or utc_now()
    if current >= as_utc(invitation.expires_at):
        return MembershipError.INVITATION_EXPIRED
    if (principal.email or "").strip().lower() != invitation.email:
        return MembershipError.EMAIL_MISMATCH
    org = await orgs_repo.get_organization(session, invitation.organization_id)
    if org is None or org.archived_at is not None:
        return MembershipError.ORGANIZATION_UNAVAILABLE
    existing = await orgs_repo.get_membership(
        session, user_id=principal.id, org_id=invitation.organization_id
    )
    if existing is not None:
        return MembershipError.ALREADY_MEMBER
    membership = Membership(
        user_id=principal.id,
        organization_id=invitation.organization_id,
        role=invitation.role,
        joined_at=current,
    )
    invitation.accepted_at = current
    session.add(membership)
    await session.flush()
    logger.info(
        "invitation_accepted org_id=%s user_id=%s role=%s",
        invitation.organization_id,
        principal.id,
        invitation.role,
    )
    return membership
