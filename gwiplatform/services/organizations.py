from __future__ import annotations

from datetime import datetime
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import utc_now
from gwiplatform.core.config import get_settings
from gwiplatform.core.errors import HierarchyCycleError, OrganizationConfigError
from gwiplatform.domain.models import Membership, Organization
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services import hierarchy
from gwiplatform.services.features import PLAN_TIERS


logger = logging.getLogger(__name__)

_SLUG = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_UPDATABLE_FIELDS = {"name", "plan_tier", "settings"}


def _normalize_tier(plan_tier: str) -> str:
    normalized = plan_tier.strip().upper()
    if normalized not in PLAN_TIERS:
        raise OrganizationConfigError(f"Unsupported plan tier: {plan_tier}")
    return normalized


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "org"


async def _unique_slug(session: AsyncSession, name: str) -> str:
    base = slugify(name)
    candidate = base
    counter = 1
    while await orgs_repo.get_organization_by_slug(session, candidate) is not None:
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


async def create_organization(
    session: AsyncSession,
    *,
    name: str,
    slug: str | None = None,
    plan_tier: str | None = None,
    parent_id: str | None = None,
    settings: dict[str, Any] | None = None,
    inherit_settings: bool = True,
    owner_user_id: str | None = None,
    now: datetime | None = None,
) -> Organization:
    """Create an organization, optionally as a child and with an owning member.

    Children default to the parent's plan tier and, unless ``inherit_settings``
    is false, start from the parent's settings with ``settings`` layered on top.
    The new organization must fit within the configured hierarchy depth.
    """
    if not name.strip():
        raise OrganizationConfigError("Organization name is required")
    parent: Organization | None = None
    if parent_id is not None:
        parent = await orgs_repo.get_organization(session, parent_id)
        if parent is None:
            raise LookupError(f"Organization not found: {parent_id}")
        if parent.archived_at is not None:
            raise OrganizationConfigError("Cannot create a child under an archived organization")
        ancestors = await hierarchy.get_ancestors(session, parent)
        if len(ancestors) + 1 > get_settings().hierarchy_max_depth:
            raise HierarchyCycleError("Child would exceed the maximum hierarchy depth")

    if slug is None:
        slug = await _unique_slug(session, name)
    else:
        slug = slug.strip().lower()
        if not _SLUG.match(slug):
            raise OrganizationConfigError(
                "Slugs use lower-case letters, digits and single hyphens"
            )
        if await orgs_repo.get_organization_by_slug(session, slug) is not None:
            raise OrganizationConfigError(f"Slug already in use: {slug}")

    if plan_tier is not None:
        tier = _normalize_tier(plan_tier)
    else:
        tier = parent.plan_tier if parent is not None else "STARTER"

    merged: dict[str, Any] = {}
    if parent is not None and inherit_settings:
        merged.update(parent.settings_json or {})
    merged.update(settings or {})

    created_at = now or utc_now()
    org = Organization(
        slug=slug,
        name=name.strip(),
        plan_tier=tier,
        parent_id=parent_id,
        settings_json=merged,
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(org)
    await session.flush()
    if owner_user_id is not None:
        session.add(
            Membership(
                user_id=owner_user_id,
                organization_id=org.id,
                role="OWNER",
                joined_at=created_at,
            )
        )
        await session.flush()
    logger.info(
        "organization_created org_id=%s slug=%s parent_id=%s plan_tier=%s",
        org.id,
        org.slug,
        parent_id,
        tier,
    )
    return org


async def update_organization(
    session: AsyncSession, org: Organization, **changes: Any
) -> Organization:
    # Settings merge key by key; a null value removes that key.
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise OrganizationConfigError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    if org.archived_at is not None:
        raise OrganizationConfigError("Archived organizations cannot be changed")
    if "name" in changes:
        if changes["name"] is None or not str(changes["name"]).strip():
            raise OrganizationConfigError("Organization name is required")
        org.name = str(changes["name"]).strip()
    if "plan_tier" in changes:
        if changes["plan_tier"] is None:
            raise OrganizationConfigError("plan_tier cannot be null")
        org.plan_tier = _normalize_tier(changes["plan_tier"])
    if changes.get("settings") is not None:
        merged = dict(org.settings_json or {})
        for key, value in changes["settings"].items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        org.settings_json = merged
    org.updated_at = utc_now()
    await session.flush()
    return org


async def archive_organization(
    session: AsyncSession, org: Organization, now: datetime | None = None
) -> Organization:
    if org.archived_at is not None:
        return org
    children = await orgs_repo.list_children(session, org.id)
    live_children = [child for child in children if child.archived_at is None]
    if live_children:
        raise OrganizationConfigError("Archive or move child organizations first")
    org.archived_at = now or utc_now()
    org.updated_at = org.archived_at
    await session.flush()
    logger.info("organization_archived org_id=%s", org.id)
    return org


async def restore_organization(session: AsyncSession, org: Organization) -> Organization:
    if org.archived_at is None:
        return org
    if org.parent_id is not None:
        parent = await orgs_repo.get_organization(session, org.parent_id)
        if parent is not None and parent.archived_at is not None:
            raise OrganizationConfigError("Restore the parent organization first")
    org.archived_at = None
    org.updated_at = utc_now()
    await session.flush()
    logger.info("organization_restored org_id=%s", org.id)
    return org
