"""Managed admin role definitions.

A super admin may be assigned one managed role. Its effective grants are the
role's own permission list plus those of every active ancestor reached through
``parent_role_id``; they replace the built-in table for ``SuperAdmin.role`` in
``evaluate``. Admins without an assignment keep the built-in tables.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import utc_now
from gwiplatform.core.errors import RoleConfigError
from gwiplatform.domain.models import AdminRole, SuperAdmin
from gwiplatform.persistence.repos import roles as roles_repo


logger = logging.getLogger(__name__)

# Parent chains longer than this are treated as corrupt and stop contributing grants.
MAX_ROLE_DEPTH = 10

_ROLE_NAME = re.compile(r"^[A-Z][A-Z0-9_]{1,63}$")
_PERMISSION = re.compile(r"^[a-z][a-z0-9_-]*(:([a-z0-9_-]+|\*))+$")

_UPDATABLE_FIELDS = {"display_name", "description", "permissions", "parent_role_id", "is_active"}


def normalize_role_name(name: str) -> str:
    normalized = name.strip().upper()
    if not _ROLE_NAME.match(normalized):
        raise RoleConfigError(
            "Role names use upper-case letters, digits and underscores (2-64 characters)"
        )
    return normalized


def validate_permissions(permissions: list[str]) -> list[str]:
    cleaned = sorted({permission.strip() for permission in permissions})
    invalid = [permission for permission in cleaned if not _PERMISSION.match(permission)]
    if invalid:
        raise RoleConfigError(f"Invalid permissions: {', '.join(invalid)}")
    return cleaned


async def _validate_parent(session: AsyncSession, role_id: str | None, parent_role_id: str) -> None:
    if role_id is not None and parent_role_id == role_id:
        raise RoleConfigError("A role cannot be its own parent")
    parent = await roles_repo.get_role(session, parent_role_id)
    if parent is None:
        raise LookupError(f"Role not found: {parent_role_id}")
    if role_id is None:
        return
    # Walk up from the proposed parent; meeting the role again would close a loop.
    visited: set[str] = set()
    current: AdminRole | None = parent
    while current is not None:
        if current.id == role_id or current.id in visited:
            raise RoleConfigError("This parent would create a circular role hierarchy")
        visited.add(current.id)
        if current.parent_role_id is None:
            return
        current = await roles_repo.get_role(session, current.parent_role_id)


async def create_role(
    session: AsyncSession,
    *,
    name: str,
    display_name: str,
    permissions: list[str],
    description: str | None = None,
    parent_role_id: str | None = None,
    is_system: bool = False,
) -> AdminRole:
    normalized = normalize_role_name(name)
    if await roles_repo.get_role_by_name(session, normalized) is not None:
        raise RoleConfigError(f"Role already exists: {normalized}")
    if parent_role_id is not None:
        await _validate_parent(session, None, parent_role_id)
    role = AdminRole(
        name=normalized,
        display_name=display_name,
        description=description,
        permissions_json=validate_permissions(permissions),
        parent_role_id=parent_role_id,
        is_system=is_system,
    )
    session.add(role)
    await session.flush()
    logger.info("admin_role_created role_id=%s name=%s", role.id, role.name)
    return role


async def update_role(session: AsyncSession, role: AdminRole, **changes: object) -> AdminRole:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise RoleConfigError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    for required in ("display_name", "permissions", "is_active"):
        if required in changes and changes[required] is None:
            raise RoleConfigError(f"{required} cannot be null")
    if "permissions" in changes:
        role.permissions_json = validate_permissions(list(changes.pop("permissions")))  # type: ignore[arg-type]
    if "parent_role_id" in changes and changes["parent_role_id"] is not None:
        await _validate_parent(session, role.id, str(changes["parent_role_id"]))
    for field_name, value in changes.items():
        setattr(role, field_name, value)
    role.updated_at = utc_now()
    await session.flush()
    return role


async def delete_role(session: AsyncSession, role: AdminRole) -> None:
    if role.is_system:
        raise RoleConfigError("System roles cannot be deleted")
    if await roles_repo.count_assigned_admins(session, role.id):
        raise RoleConfigError("Role is assigned to admins; reassign them first")
    for child in await roles_repo.list_child_roles(session, role.id):
        child.parent_role_id = None
    await session.delete(role)
    await session.flush()
    logger.info("admin_role_deleted role_id=%s name=%s", role.id, role.name)


async def assign_role(
    session: AsyncSession, admin: SuperAdmin, role: AdminRole | None
) -> SuperAdmin:
    # None removes the managed role and returns the admin to the built-in tables.
    if role is not None and not role.is_active:
        raise RoleConfigError("Inactive roles cannot be assigned")
    admin.admin_role_id = role.id if role is not None else None
    await session.flush()
    logger.info(
        "admin_role_assigned admin_id=%s role_id=%s",
        admin.id,
        role.id if role is not None else None,
    )
    return admin


async def get_effective_permissions(session: AsyncSession, role_id: str) -> frozenset[str]:
    """Union the grants of a role and its active ancestors.

    Inactive roles contribute nothing. A revisited role or a chain deeper than
    ``MAX_ROLE_DEPTH`` ends the walk with whatever was collected so far.
    """
    granted: set[str] = set()
    visited: set[str] = set()
    current_id: str | None = role_id
    while current_id is not None:
        if current_id in visited or len(visited) >= MAX_ROLE_DEPTH:
            logger.warning("admin_role_chain_truncated role_id=%s at=%s", role_id, current_id)
            break
        visited.add(current_id)
        role = await roles_repo.get_role(session, current_id)
        if role is None:
            break
        if role.is_active:
            granted.update(role.permissions_json or [])
        current_id = role.parent_role_id
    return frozenset(granted)


async def admin_role_grants(session: AsyncSession, admin: SuperAdmin) -> frozenset[str] | None:
    if admin.admin_role_id is None:
        return None
    return await get_effective_permissions(session, admin.admin_role_id)
