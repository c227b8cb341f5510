from __future__ import annotations

import pytest

from gwiplatform.core.errors import RoleConfigError
from gwiplatform.domain.models import SuperAdmin
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.persistence.repos import roles as roles_repo
from gwiplatform.services.auth.principals import Portal, PrincipalKind
from gwiplatform.services.auth.sessions import resolve
from gwiplatform.services.authz.permissions import can, evaluate
from gwiplatform.services.authz.roles import (
    assign_role,
    create_role,
    delete_role,
    get_effective_permissions,
    update_role,
    validate_permissions,
)
from gwiplatform.tests.utils.factories import (
    create_admin_role,
    create_super_admin,
    issue_session,
    set_role_parent,
)


def test_managed_grants_replace_the_builtin_table() -> None:
    kind = PrincipalKind.SUPER_ADMIN
    assert evaluate(kind, "ADMIN", [], "features:write") is True
    assert evaluate(kind, "ADMIN", [], "features:write", role_permissions=["audit:read"]) is False
    assert evaluate(kind, "ANALYST", [], "features:write", role_permissions=["features:*"]) is True
    # Explicit grants on the admin still apply on top of the managed role.
    assert (
        evaluate(kind, "ANALYST", ["features:write"], "features:write", role_permissions=[])
        is True
    )


def test_validate_permissions_sorts_and_rejects_malformed_entries() -> None:
    assert validate_permissions(["tenants:read", " audit:read", "tenants:read"]) == [
        "audit:read",
        "tenants:read",
    ]
    assert validate_permissions(["features:*"]) == ["features:*"]
    with pytest.raises(RoleConfigError):
        validate_permissions(["Tenants:Read"])
    with pytest.raises(RoleConfigError):
        validate_permissions(["tenants"])


@pytest.mark.asyncio
async def test_create_role_validates_name_and_uniqueness() -> None:
    async with SessionLocal() as session:
        role = await create_role(
            session, name="billing_ops", display_name="Billing", permissions=["billing:read"]
        )
        assert role.name == "BILLING_OPS"
        with pytest.raises(RoleConfigError):
            await create_role(session, name="BILLING_OPS", display_name="Dup", permissions=[])
        with pytest.raises(RoleConfigError):
            await create_role(session, name="x", display_name="Short", permissions=[])
        with pytest.raises(RoleConfigError):
            await create_role(session, name="BAD-NAME", display_name="Bad", permissions=[])
        with pytest.raises(LookupError):
            await create_role(
                session,
                name="ORPHAN",
                display_name="Orphan",
                permissions=[],
                parent_role_id="missing",
            )


@pytest.mark.asyncio
async def test_effective_permissions_follow_active_parents() -> None:
    grandparent = await create_admin_role(permissions=["audit:read"])
    parent = await create_admin_role(
        permissions=["tenants:read"], parent_role_id=grandparent.id, is_active=False
    )
    child = await create_admin_role(permissions=["features:read"], parent_role_id=parent.id)
    async with SessionLocal() as session:
        effective = await get_effective_permissions(session, child.id)
    # The inactive parent contributes nothing but does not cut off its own ancestors.
    assert effective == frozenset({"features:read", "audit:read"})


@pytest.mark.asyncio
async def test_effective_permissions_stop_on_a_corrupted_cycle() -> None:
    first = await create_admin_role(permissions=["audit:read"])
    second = await create_admin_role(permissions=["tenants:read"], parent_role_id=first.id)
    await set_role_parent(first.id, second.id)
    async with SessionLocal() as session:
        effective = await get_effective_permissions(session, second.id)
    assert effective == frozenset({"audit:read", "tenants:read"})


@pytest.mark.asyncio
async def test_update_role_rejects_cycles_and_null_fields() -> None:
    parent = await create_admin_role(permissions=["audit:read"])
    child = await create_admin_role(permissions=[], parent_role_id=parent.id)
    async with SessionLocal() as session:
        stored_parent = await roles_repo.get_role(session, parent.id)
        with pytest.raises(RoleConfigError):
            await update_role(session, stored_parent, parent_role_id=child.id)
        with pytest.raises(RoleConfigError):
            await update_role(session, stored_parent, parent_role_id=parent.id)
        with pytest.raises(RoleConfigError):
            await update_role(session, stored_parent, permissions=None)
        with pytest.raises(RoleConfigError):
            await update_role(session, stored_parent, name="RENAMED")
        updated = await update_role(
            session, stored_parent, permissions=["tenants:read", "audit:read"], is_active=False
        )
    assert updated.permissions_json == ["audit:read", "tenants:read"]
    assert updated.is_active is False


@pytest.mark.asyncio
async def test_delete_role_guards_system_and_assigned_roles() -> None:
    system = await create_admin_role(permissions=[], is_system=True)
    assigned = await create_admin_role(permissions=[])
    await create_super_admin(admin_role_id=assigned.id)
    parent = await create_admin_role(permissions=[])
    child = await create_admin_role(permissions=[], parent_role_id=parent.id)
    async with SessionLocal() as session:
        with pytest.raises(RoleConfigError):
            await delete_role(session, await roles_repo.get_role(session, system.id))
        with pytest.raises(RoleConfigError):
            await delete_role(session, await roles_repo.get_role(session, assigned.id))
        await delete_role(session, await roles_repo.get_role(session, parent.id))
        await session.commit()
    async with SessionLocal() as session:
        assert await roles_repo.get_role(session, parent.id) is None
        stored_child = await roles_repo.get_role(session, child.id)
    assert stored_child.parent_role_id is None


@pytest.mark.asyncio
async def test_inactive_roles_cannot_be_assigned() -> None:
    inactive = await create_admin_role(permissions=[], is_active=False)
    admin = await create_super_admin()
    async with SessionLocal() as session:
        stored_admin = await session.get(SuperAdmin, admin.id)
        with pytest.raises(RoleConfigError):
            await assign_role(session, stored_admin, await roles_repo.get_role(session, inactive.id))


@pytest.mark.asyncio
async def test_resolved_admin_carries_managed_role_grants() -> None:
    role = await create_admin_role(permissions=["audit:read"])
    admin = await create_super_admin(
        role="ADMIN", permissions=["support:read"], admin_role_id=role.id
    )
    admin_token = await issue_session(portal=Portal.ADMIN, principal_id=admin.id)
    gwi_token = await issue_session(portal=Portal.GWI, principal_id=admin.id)
    async with SessionLocal() as session:
        admin_principal = await resolve(session, Portal.ADMIN, admin_token)
        gwi_principal = await resolve(session, Portal.GWI, gwi_token)

    assert admin_principal.role_permissions == frozenset({"audit:read"})
    assert can(admin_principal, "audit:read") is True
    assert can(admin_principal, "support:read") is True
    # The built-in ADMIN table no longer applies once a managed role is assigned.
    assert can(admin_principal, "features:write") is False
    assert gwi_principal.role_permissions is None
