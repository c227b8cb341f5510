from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import utc_now
from gwiplatform.core.config import get_settings
from gwiplatform.core.errors import HierarchyCycleError
from gwiplatform.domain.models import Organization
from gwiplatform.persistence.repos import organizations as orgs_repo


logger = logging.getLogger(__name__)


def _depth_limit(max_depth: int | None) -> int:
    return get_settings().hierarchy_max_depth if max_depth is None else max_depth


async def get_ancestors(
    session: AsyncSession, org: Organization, max_depth: int | None = None
) -> list[Organization]:
    """Return the parent chain of ``org``, nearest parent first, ending at the root.

    Raises ``HierarchyCycleError`` when the chain revisits an organization or
    is longer than the configured depth bound.
    """
    limit = _depth_limit(max_depth)
    ancestors: list[Organization] = []
    visited = {org.id}
    parent_id = org.parent_id
    while parent_id is not None:
        if parent_id in visited:
            raise HierarchyCycleError(f"Cycle detected at organization {parent_id}")
        if len(ancestors) >= limit:
            raise HierarchyCycleError(f"Hierarchy deeper than {limit} above organization {org.id}")
        parent = await orgs_repo.get_organization(session, parent_id)
        if parent is None:
            # Dangling parent reference; the chain ends here.
            break
        ancestors.append(parent)
        visited.add(parent.id)
        parent_id = parent.parent_id
    return ancestors


async def get_children(session: AsyncSession, org_id: str) -> list[Organization]:
    return await orgs_repo.list_children(session, org_id)


async def get_descendants(
    session: AsyncSession, org_id: str, max_depth: int | None = None
) -> list[Organization]:
    # Breadth-first so nearer descendants come first; revisits are skipped.
    limit = _depth_limit(max_depth)
    descendants: list[Organization] = []
    visited = {org_id}
    frontier = [org_id]
    depth = 0
    while frontier and depth < limit:
        next_frontier: list[str] = []
        for current_id in frontier:
            for child in await orgs_repo.list_children(session, current_id):
                if child.id in visited:
                    continue
                visited.add(child.id)
                descendants.append(child)
                next_frontier.append(child.id)
        frontier = next_frontier
        depth += 1
    return descendants


async def is_descendant_of(session: AsyncSession, org_id: str, ancestor_id: str) -> bool:
    org = await orgs_repo.get_organization(session, org_id)
    if org is None or org_id == ancestor_id:
        return False
    try:
        ancestors = await get_ancestors(session, org)
    except HierarchyCycleError:
        logger.warning("hierarchy_cycle_detected org_id=%s", org_id)
        return False
    return any(ancestor.id == ancestor_id for ancestor in ancestors)


async def move_organization(
    session: AsyncSession, org: Organization, new_parent_id: str | None
) -> Organization:
    # Re-parent after proving the new parent is not the org itself or one of its descendants.
    if new_parent_id is not None:
        if new_parent_id == org.id:
            raise HierarchyCycleError("An organization cannot be its own parent")
        parent = await orgs_repo.get_organization(session, new_parent_id)
        if parent is None:
            raise LookupError(f"Organization not found: {new_parent_id}")
        if await is_descendant_of(session, new_parent_id, org.id):
            raise HierarchyCycleError("Cannot move an organization under its own descendant")
        ancestors = await get_ancestors(session, parent)
        subtree_depth = await _subtree_height(session, org.id)
        if len(ancestors) + 1 + subtree_depth > _depth_limit(None):
            raise HierarchyCycleError("Move would exceed the maximum hierarchy depth")
    previous = org.parent_id
    org.parent_id = new_parent_id
    org.updated_at = utc_now()
    await session.flush()
    logger.info(
        "organization_moved org_id=%s from_parent=%s to_parent=%s", org.id, previous, new_parent_id
    )
    return org


async def _subtree_height(session: AsyncSession, org_id: str) -> int:
    height = 0
    frontier = [org_id]
    visited = {org_id}
    limit = _depth_limit(None)
    while frontier and height <= limit:
        next_frontier: list[str] = []
        for current_id in frontier:
            for child in await orgs_repo.list_children(session, current_id):
                if child.id not in visited:
                    visited.add(child.id)
                    next_frontier.append(child.id)
        if not next_frontier:
            break
        frontier = next_frontier
        height += 1
    return height


async def validate_hierarchy(session: AsyncSession, org: Organization) -> list[str]:
    # Report problems instead of raising so admin screens can list them.
    issues: list[str] = []
    if org.parent_id == org.id:
        issues.append("Organization is its own parent")
        return issues
    if org.parent_id is not None:
        parent = await orgs_repo.get_organization(session, org.parent_id)
        if parent is None:
            issues.append(f"Parent organization {org.parent_id} does not exist")
        elif parent.archived_at is not None:
            issues.append(f"Parent organization {parent.id} is archived")
    try:
        await get_ancestors(session, org)
    except HierarchyCycleError as exc:
        issues.append(str(exc))
    return issues
