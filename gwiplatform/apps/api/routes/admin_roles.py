from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import get_db, not_found_error, require_capability
from gwiplatform.domain.models import AdminRole, SuperAdmin
from gwiplatform.persistence.repos import roles as roles_repo
from gwiplatform.services import audit
from gwiplatform.services.auth.principals import Portal, Principal
from gwiplatform.services.authz import roles as role_service


router = APIRouter(prefix="/api/admin", tags=["admin-roles"])

_read = require_capability(Portal.ADMIN, "roles:read")
_write = require_capability(Portal.ADMIN, "roles:write")
_assign = require_capability(Portal.ADMIN, "admins:write")


class AdminRoleResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None
    permissions: list[str]
    effective_permissions: list[str]
    parent_role_id: str | None
    is_system: bool
    is_active: bool


class CreateAdminRoleRequest(BaseModel):
    name: str = Field(min_length=2, max_length=64)
    display_name: str = Field(min_length=1, max_length=256)
    description: str | None = None
    permissions: list[str] = Field(default_factory=list)
    parent_role_id: str | None = None


class UpdateAdminRoleRequest(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=256)
    description: str | None = None
    permissions: list[str] | None = None
    # Explicit null detaches the role from its parent.
    parent_role_id: str | None = None
    is_active: bool | None = None


class AssignRoleRequest(BaseModel):
    # Null returns the admin to the built-in role table.
    role_id: str | None = None


class AdminRoleAssignmentResponse(BaseModel):
    admin_id: str
    role: str
    admin_role_id: str | None


async def _role_payload(db: AsyncSession, role: AdminRole) -> AdminRoleResponse:
    effective = await role_service.get_effective_permissions(db, role.id)
    return AdminRoleResponse(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        permissions=list(role.permissions_json or []),
        effective_permissions=sorted(effective),
        parent_role_id=role.parent_role_id,
        is_system=role.is_system,
        is_active=role.is_active,
    )


async def _load_role(db: AsyncSession, role_id: str) -> AdminRole:
    role = await roles_repo.get_role(db, role_id)
    if role is None:
        raise not_found_error("Role not found")
    return role


@router.get("/roles")
async def list_roles(
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> list[AdminRoleResponse]:
    return [await _role_payload(db, role) for role in await roles_repo.list_roles(db)]


@router.post("/roles", status_code=status.HTTP_201_CREATED)
async def create_role(
    payload: CreateAdminRoleRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> AdminRoleResponse:
    try:
        role = await role_service.create_role(db, **payload.model_dump())
    except LookupError as exc:
        raise not_found_error("Parent role not found") from exc
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="role.created",
        resource_type="admin_role",
        resource_id=role.id,
        details={"name": role.name, "permissions": role.permissions_json},
        request=request,
    )
    await db.commit()
    return await _role_payload(db, role)


@router.get("/roles/{role_id}")
async def get_role(
    role_id: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> AdminRoleResponse:
    return await _role_payload(db, await _load_role(db, role_id))


@router.patch("/roles/{role_id}")
async def update_role(
    role_id: str,
    payload: UpdateAdminRoleRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> AdminRoleResponse:
    role = await _load_role(db, role_id)
    changes = payload.model_dump(exclude_unset=True)
    previous_permissions = list(role.permissions_json or [])
    try:
        role = await role_service.update_role(db, role, **changes)
    except LookupError as exc:
        raise not_found_error("Parent role not found") from exc
    details = dict(changes)
    if "permissions" in changes:
        details["previous_permissions"] = previous_permissions
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="role.updated",
        resource_type="admin_role",
        resource_id=role.id,
        details=details,
        request=request,
    )
    await db.commit()
    return await _role_payload(db, role)


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: str,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await _load_role(db, role_id)
    name = role.name
    await role_service.delete_role(db, role)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="role.deleted",
        resource_type="admin_role",
        resource_id=role_id,
        details={"name": name},
        request=request,
    )
    await db.commit()
    return {"success": True}


@router.put("/admins/{admin_id}/role")
async def assign_admin_role(
    admin_id: str,
    payload: AssignRoleRequest,
    request: Request,
    principal: Principal = Depends(_assign),
    db: AsyncSession = Depends(get_db),
) -> AdminRoleAssignmentResponse:
    admin = await db.get(SuperAdmin, admin_id)
    if admin is None:
        raise not_found_error("Admin not found")
    role = await _load_role(db, payload.role_id) if payload.role_id is not None else None
    previous_role_id = admin.admin_role_id
    admin = await role_service.assign_role(db, admin, role)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="role.assigned" if role is not None else "role.unassigned",
        resource_type="super_admin",
        resource_id=admin.id,
        details={"previous_role_id": previous_role_id, "role_id": admin.admin_role_id},
        request=request,
    )
    await db.commit()
    return AdminRoleAssignmentResponse(
        admin_id=admin.id, role=admin.role, admin_role_id=admin.admin_role_id
    )
