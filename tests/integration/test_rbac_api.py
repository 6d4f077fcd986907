"""Integration tests for role and permission routes"""

import pytest
from fastapi import status

from gatehouse.services.role_service import RoleService
from gatehouse.templates import SUPER_ADMIN_ROLE


def bearer(session):
    return {"Authorization": f"Bearer {session['access_token']}"}


def _role_id(client, session, slug):
    roles = client.get("/api/v1/roles", headers=bearer(session)).json()["roles"]
    return next(r["id"] for r in roles if r["slug"] == slug)


def _make_super_admin(db, cache, session):
    roles = RoleService(db, cache)
    roles.assign_role(session["user"]["id"], roles.get_role_by_slug(None, SUPER_ADMIN_ROLE.slug).id)


@pytest.mark.integration
def test_viewer_is_denied_management(client, viewer):
    response = client.post("/api/v1/roles", json={"name": "Auditor"}, headers=bearer(viewer))

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {"detail": "Insufficient permissions"}


@pytest.mark.integration
def test_admin_creates_and_assigns_custom_role(client, founder, viewer):
    created = client.post(
        "/api/v1/roles",
        json={"name": "Auditor", "permissions": ["roles.view", "users.view"]},
        headers=bearer(founder),
    )
    assert created.status_code == status.HTTP_201_CREATED
    role = created.json()
    assert role["slug"] == "auditor"
    assert role["organization_id"] == founder["organization"]["id"]

    assigned = client.post(
        "/api/v1/roles/assignments",
        json={"user_id": viewer["user"]["id"], "role_id": role["id"], "reason": "Quarterly audit"},
        headers=bearer(founder),
    )
    assert assigned.status_code == status.HTTP_201_CREATED
    assert assigned.json()["assigned_by"] == founder["user"]["id"]

    # Effective immediately
    listing = client.get("/api/v1/roles", headers=bearer(viewer))
    assert listing.status_code == status.HTTP_200_OK

    duplicate = client.post(
        "/api/v1/roles/assignments",
        json={"user_id": viewer["user"]["id"], "role_id": role["id"]},
        headers=bearer(founder),
    )
    assert duplicate.status_code == status.HTTP_409_CONFLICT

    revoked = client.delete(f"/api/v1/roles/assignments/{assigned.json()['id']}", headers=bearer(founder))
    assert revoked.status_code == status.HTTP_200_OK
    assert client.get("/api/v1/roles", headers=bearer(viewer)).status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.integration
def test_role_permission_update_reaches_holders(client, founder, viewer):
    viewer_role = _role_id(client, founder, "viewer")

    before = client.post("/api/v1/permissions/check", json={"permissions": ["roles.view"]}, headers=bearer(viewer))
    assert before.json()["allowed"] is False

    client.patch(
        f"/api/v1/roles/{viewer_role}",
        json={"permissions": ["users.view", "content.view", "roles.view"]},
        headers=bearer(founder),
    )

    after = client.post("/api/v1/permissions/check", json={"permissions": ["roles.view"]}, headers=bearer(viewer))
    assert after.json()["allowed"] is True


@pytest.mark.integration
def test_system_roles_cannot_be_changed(client, founder):
    super_admin_id = _role_id(client, founder, SUPER_ADMIN_ROLE.slug)

    response = client.patch(f"/api/v1/roles/{super_admin_id}", json={"name": "Root"}, headers=bearer(founder))
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {"detail": "Cannot modify system roles"}


@pytest.mark.integration
def test_admin_cannot_grant_super_admin(client, founder, viewer):
    super_admin_id = _role_id(client, founder, SUPER_ADMIN_ROLE.slug)

    response = client.post(
        "/api/v1/roles/assignments",
        json={"user_id": viewer["user"]["id"], "role_id": super_admin_id},
        headers=bearer(founder),
    )
    assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.integration
def test_other_organizations_are_invisible(client, founder, register_organization):
    globex = register_organization(name="Globex", email="founder@globex.com")
    globex_editor = _role_id(client, globex, "editor")

    assert client.get(f"/api/v1/roles/{globex_editor}", headers=bearer(founder)).status_code == 404
    assigned = client.post(
        "/api/v1/roles/assignments",
        json={"user_id": globex["user"]["id"], "role_id": _role_id(client, founder, "editor")},
        headers=bearer(founder),
    )
    assert assigned.status_code == status.HTTP_404_NOT_FOUND

    created = client.post(
        "/api/v1/roles",
        json={"name": "Spy", "organization_id": globex["organization"]["id"]},
        headers=bearer(founder),
    )
    assert created.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.integration
def test_super_admin_crosses_tenants(client, db, cache, founder, register_organization):
    globex = register_organization(name="Globex", email="founder@globex.com")
    _make_super_admin(db, cache, founder)

    on_globex = client.get("/api/v1/auth/me", headers={**bearer(founder), "Host": "globex.gatehouse.test"})
    assert on_globex.status_code == status.HTTP_200_OK

    created = client.post(
        "/api/v1/roles",
        json={"name": "Auditor", "organization_id": globex["organization"]["id"]},
        headers=bearer(founder),
    )
    assert created.status_code == status.HTTP_201_CREATED
    assert created.json()["organization_id"] == globex["organization"]["id"]


@pytest.mark.integration
def test_permission_catalog(client, founder, viewer):
    listing = client.get("/api/v1/permissions", headers=bearer(founder))
    assert listing.status_code == status.HTTP_200_OK
    assert any(p["slug"] == "roles.assign" for p in listing.json()["permissions"])

    by_module = client.get("/api/v1/permissions", params={"module": "roles"}, headers=bearer(founder))
    assert {p["slug"].split(".")[0] for p in by_module.json()["permissions"]} == {"roles"}

    assert client.get("/api/v1/permissions", headers=bearer(viewer)).status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.integration
def test_only_super_admin_extends_catalog(client, db, cache, founder):
    payload = {"slug": "reports.export", "name": "Export Reports"}

    assert client.post("/api/v1/permissions", json=payload, headers=bearer(founder)).status_code == 403

    _make_super_admin(db, cache, founder)
    response = client.post("/api/v1/permissions", json=payload, headers=bearer(founder))
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["module"] == "reports"


@pytest.mark.integration
def test_permission_check_modes(client, founder, viewer):
    def check(session, **body):
        return client.post("/api/v1/permissions/check", json=body, headers=bearer(session))

    both = ["users.view", "roles.assign"]
    assert check(viewer, permissions=both, mode="all").json()["allowed"] is False
    assert check(viewer, permissions=both, mode="any").json()["allowed"] is True
    assert check(viewer, permissions=both, mode="some").status_code == status.HTTP_400_BAD_REQUEST

    on_behalf = check(founder, permissions=["roles.assign"], user_id=viewer["user"]["id"])
    assert on_behalf.json() == {"user_id": viewer["user"]["id"], "allowed": False}


@pytest.mark.integration
def test_my_permissions_with_details(client, viewer):
    response = client.get("/api/v1/permissions/me", params={"details": True}, headers=bearer(viewer))

    assert response.status_code == status.HTTP_200_OK
    slugs = sorted(p["slug"] for p in response.json()["permissions"])
    assert slugs == ["content.view", "users.view"]


@pytest.mark.integration
def test_user_roles_listing(client, founder, viewer):
    response = client.get(f"/api/v1/roles/users/{viewer['user']['id']}", headers=bearer(founder))

    assert response.status_code == status.HTTP_200_OK
    assert [a["role_slug"] for a in response.json()] == ["viewer"]


@pytest.mark.integration
def test_role_holders_stay_inside_organization(client, founder, viewer, register_organization, register_member):
    globex = register_organization(name="Globex", email="founder@globex.com")
    register_member(globex["organization"]["slug"], "viewer@globex.com")

    response = client.get(f"/api/v1/roles/{_role_id(client, founder, 'viewer')}/users", headers=bearer(founder))

    assert response.status_code == status.HTTP_200_OK
    assert [a["user_id"] for a in response.json()] == [viewer["user"]["id"]]
