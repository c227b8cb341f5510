from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from gwiplatform.apps.api.main import create_app
from gwiplatform.core.config import get_settings
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.persistence.repos import audit as audit_repo
from gwiplatform.tests.utils.auth import signed_in_admin, signed_in_user
from gwiplatform.tests.utils.factories import add_membership, create_org


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_admin_organization_lifecycle() -> None:
    admin, headers = await signed_in_admin(role="ADMIN")
    marker = uuid4().hex[:8]
    async with _client() as client:
        created = await client.post(
            "/api/admin/organizations",
            json={
                "name": f"Parent {marker}",
                "plan_tier": "enterprise",
                "settings": {"timezone": "UTC"},
            },
            headers=headers,
        )
        parent_id = created.json()["organization"]["id"]
        child = await client.post(
            "/api/admin/organizations",
            json={"name": f"Child {marker}", "parent_id": parent_id},
            headers=headers,
        )
        child_id = child.json()["organization"]["id"]
        duplicate = await client.post(
            "/api/admin/organizations",
            json={"name": "Copy", "slug": created.json()["organization"]["slug"]},
            headers=headers,
        )
        orphan = await client.post(
            "/api/admin/organizations",
            json={"name": "Orphan", "parent_id": "missing-org"},
            headers=headers,
        )
        updated = await client.patch(
            f"/api/admin/organizations/{child_id}",
            json={"plan_tier": "professional", "settings": {"timezone": None, "locale": "fr"}},
            headers=headers,
        )
        blocked = await client.post(
            f"/api/admin/organizations/{parent_id}/archive", headers=headers
        )
        archived_child = await client.post(
            f"/api/admin/organizations/{child_id}/archive", headers=headers
        )
        live_only = await client.get(
            "/api/admin/organizations", params={"search": marker}, headers=headers
        )
        with_archived = await client.get(
            "/api/admin/organizations",
            params={"search": marker, "include_archived": "true"},
            headers=headers,
        )
        by_tier = await client.get(
            "/api/admin/organizations",
            params={"search": marker, "include_archived": "true", "plan_tier": "professional"},
            headers=headers,
        )
        restored = await client.post(
            f"/api/admin/organizations/{child_id}/restore", headers=headers
        )
        fetched = await client.get(f"/api/admin/organizations/{child_id}", headers=headers)

    assert created.status_code == 201
    assert created.json()["organization"]["slug"] == f"parent-{marker}"
    assert created.json()["organization"]["plan_tier"] == "ENTERPRISE"
    assert child.status_code == 201
    assert child.json()["organization"]["parent_id"] == parent_id
    assert child.json()["organization"]["plan_tier"] == "ENTERPRISE"
    assert child.json()["organization"]["settings"] == {"timezone": "UTC"}
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "VALIDATION_ERROR"
    assert orphan.status_code == 404
    assert updated.json()["organization"]["plan_tier"] == "PROFESSIONAL"
    assert updated.json()["organization"]["settings"] == {"locale": "fr"}
    assert blocked.status_code == 400
    assert archived_child.status_code == 200
    assert archived_child.json()["archived_at"] is not None
    assert [item["organization"]["id"] for item in live_only.json()["items"]] == [parent_id]
    assert live_only.json()["total"] == 1
    assert with_archived.json()["total"] == 2
    assert [item["organization"]["id"] for item in by_tier.json()["items"]] == [child_id]
    assert restored.json()["archived_at"] is None
    assert fetched.json()["organization"]["settings"] == {"locale": "fr"}

    async with SessionLocal() as session:
        created_rows = await audit_repo.list_entries(
            session, actor_id=admin.id, action="organization.created"
        )
        updated_rows = await audit_repo.list_entries(
            session, actor_id=admin.id, action="organization.updated", resource_id=child_id
        )
        archived_rows = await audit_repo.list_entries(
            session, actor_id=admin.id, action="organization.archived"
        )
    assert {row.resource_id for row in created_rows} == {parent_id, child_id}
    assert updated_rows[0].details_json["previous_plan_tier"] == "ENTERPRISE"
    assert [row.resource_id for row in archived_rows] == [child_id]


@pytest.mark.asyncio
async def test_archived_organization_leaves_the_dashboard() -> None:
    _admin, admin_headers = await signed_in_admin(role="ADMIN")
    user, user_headers = await signed_in_user()
    org = await create_org()
    await add_membership(user_id=user.id, org_id=org.id, role="OWNER")
    async with _client() as client:
        before = await client.get("/api/organization", headers=user_headers)
        await client.post(f"/api/admin/organizations/{org.id}/archive", headers=admin_headers)
        after = await client.get("/api/organization", headers=user_headers)
    assert before.json()["organization"]["id"] == org.id
    assert after.status_code == 404
    assert after.json()["code"] == "NO_ORGANIZATION"


@pytest.mark.asyncio
async def test_child_creation_respects_depth_bound(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HIERARCHY_MAX_DEPTH", "1")
    get_settings.cache_clear()
    _admin, headers = await signed_in_admin(role="ADMIN")
    root = await create_org()
    middle = await create_org(parent_id=root.id)
    async with _client() as client:
        allowed = await client.post(
            "/api/admin/organizations",
            json={"name": "Second level", "parent_id": root.id},
            headers=headers,
        )
        too_deep = await client.post(
            "/api/admin/organizations",
            json={"name": "Third level", "parent_id": middle.id},
            headers=headers,
        )
    assert allowed.status_code == 201
    assert too_deep.status_code == 400
    assert too_deep.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_organization_writes_require_tenant_capabilities() -> None:
    analyst, analyst_headers = await signed_in_admin(role="ANALYST")
    _support, support_headers = await signed_in_admin(role="SUPPORT")
    _suspender, suspender_headers = await signed_in_admin(
        role="SUPPORT", permissions=["tenants:suspend"]
    )
    org = await create_org()
    async with _client() as client:
        listed = await client.get("/api/admin/organizations", headers=analyst_headers)
        create_denied = await client.post(
            "/api/admin/organizations", json={"name": "Nope"}, headers=analyst_headers
        )
        archive_denied = await client.post(
            f"/api/admin/organizations/{org.id}/archive", headers=support_headers
        )
        update_denied = await client.patch(
            f"/api/admin/organizations/{org.id}",
            json={"plan_tier": "ENTERPRISE"},
            headers=suspender_headers,
        )
        archived = await client.post(
            f"/api/admin/organizations/{org.id}/archive", headers=suspender_headers
        )

    assert listed.status_code == 200
    assert create_denied.status_code == 403
    assert archive_denied.status_code == 403
    assert update_denied.status_code == 403
    # Suspension alone is enough to archive.
    assert archived.status_code == 200

    async with SessionLocal() as session:
        denials = await audit_repo.list_entries(
            session, actor_id=analyst.id, action="authz.forbidden"
        )
        archive_denials = await audit_repo.list_entries(
            session, action="authz.forbidden", resource_id="tenants:write,tenants:suspend"
        )
    assert [row.resource_id for row in denials] == ["tenants:write"]
    assert len(archive_denials) == 1
