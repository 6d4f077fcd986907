"""Unit tests for RoleService and permission resolution"""

from datetime import datetime, timedelta

import pytest

from gatehouse.database.models import Role, UserRole
from gatehouse.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from gatehouse.services.organization_service import OrganizationService
from gatehouse.services.permission_service import PermissionService
from gatehouse.services.role_service import RoleService
from gatehouse.services.user_service import UserService

PASSWORD = "correct-horse-battery"


@pytest.fixture
def member(db, organization):
    return UserService.create_user(db, organization.id, email="member@example.com", password=PASSWORD)


@pytest.fixture
def roles(db, cache):
    return RoleService(db, cache)


@pytest.fixture
def permissions(db, cache, roles):
    return PermissionService(db, cache, roles)


@pytest.mark.unit
def test_organization_gets_default_roles(db, organization, roles):
    org_roles, total = roles.list_roles(organization.id, include_system=False)
    slugs = {r.slug for r in org_roles}

    assert slugs == {"admin", "editor", "contributor", "viewer"}
    assert total == 4
    assert roles.get_role_by_slug(organization.id, "viewer").is_default is True


@pytest.mark.unit
def test_create_role_slug_conflict(db, organization, roles):
    roles.create_role("Reviewer", organization_id=organization.id, permissions=["content.view"])

    with pytest.raises(ConflictError):
        roles.create_role("Reviewer", organization_id=organization.id)


@pytest.mark.unit
def test_same_slug_in_two_organizations(db, organization, roles):
    other = OrganizationService.create_organization(db, name="Globex")
    first = roles.create_role("Reviewer", organization_id=organization.id)
    second = roles.create_role("Reviewer", organization_id=other.id)
    assert first.slug == second.slug == "reviewer"


@pytest.mark.unit
def test_system_roles_are_immutable(db, roles):
    super_admin = roles.get_role_by_slug(None, "super-admin")

    with pytest.raises(ForbiddenError):
        roles.update_role(super_admin.id, name="Renamed")
    with pytest.raises(ForbiddenError):
        roles.delete_role(super_admin.id)


@pytest.mark.unit
def test_assign_and_resolve_permissions(db, organization, member, roles, permissions):
    editor = roles.get_role_by_slug(organization.id, "editor")
    viewer = roles.get_role_by_slug(organization.id, "viewer")

    roles.assign_role(member.id, viewer.id)
    roles.assign_role(member.id, editor.id)

    effective = permissions.get_user_permissions(member.id)
    assert "content.publish" in effective
    assert "users.view" in effective
    assert effective == sorted(set(editor.permissions) | set(viewer.permissions))


@pytest.mark.unit
def test_duplicate_assignment_conflicts(db, organization, member, roles):
    viewer = roles.get_role_by_slug(organization.id, "viewer")
    roles.assign_role(member.id, viewer.id)

    with pytest.raises(ConflictError):
        roles.assign_role(member.id, viewer.id)


@pytest.mark.unit
def test_assign_role_from_other_organization(db, member, roles):
    other = OrganizationService.create_organization(db, name="Globex")
    foreign = roles.get_role_by_slug(other.id, "viewer")

    with pytest.raises(InvalidInputError):
        roles.assign_role(member.id, foreign.id)


@pytest.mark.unit
def test_assign_unassignable_and_missing(db, organization, member, roles):
    locked = roles.create_role("Locked", organization_id=organization.id, is_assignable=False)

    with pytest.raises(InvalidInputError):
        roles.assign_role(member.id, locked.id)
    with pytest.raises(NotFoundError):
        roles.assign_role(member.id, "missing-role")
    with pytest.raises(NotFoundError):
        roles.assign_role("missing-user", locked.id)


@pytest.mark.unit
def test_only_super_admin_grants_super_admin(db, organization, member, roles):
    admin = UserService.create_user(db, organization.id, email="admin@example.com", password=PASSWORD)
    roles.assign_role(admin.id, roles.get_role_by_slug(organization.id, "admin").id)
    super_admin = roles.get_role_by_slug(None, "super-admin")

    with pytest.raises(ForbiddenError):
        roles.assign_role(member.id, super_admin.id, assigned_by=admin.id)

    roles.assign_role(admin.id, super_admin.id)
    roles.assign_role(member.id, super_admin.id, assigned_by=admin.id)
    assert roles.is_super_admin(member.id) is True


@pytest.mark.unit
def test_expired_and_inactive_assignments_grant_nothing(db, organization, member, roles, permissions):
    editor = roles.get_role_by_slug(organization.id, "editor")
    viewer = roles.get_role_by_slug(organization.id, "viewer")
    roles.assign_role(member.id, editor.id, expires_at=datetime.utcnow() - timedelta(minutes=1))
    roles.assign_role(member.id, viewer.id, is_active=False)

    assert permissions.get_user_permissions(member.id) == []
    assert permissions.has_permission(member.id, "content.view") is False


@pytest.mark.unit
def test_revoke_role_invalidates_cache(db, organization, member, roles, permissions, cache):
    viewer = roles.get_role_by_slug(organization.id, "viewer")
    assignment = roles.assign_role(member.id, viewer.id)

    assert permissions.has_permission(member.id, "content.view") is True
    assert cache.get(member.id, "content.view") is True

    removed = roles.revoke_role(assignment.id)

    assert removed["role_id"] == viewer.id
    assert cache.get(member.id, "content.view") is None
    assert permissions.has_permission(member.id, "content.view") is False
    assert db.query(UserRole).filter(UserRole.id == assignment.id).first() is None


@pytest.mark.unit
def test_role_permission_change_reaches_holders(db, organization, member, roles, permissions):
    reviewer = roles.create_role("Reviewer", organization_id=organization.id, permissions=["content.view"])
    roles.assign_role(member.id, reviewer.id)
    assert permissions.has_permission(member.id, "content.publish") is False

    roles.update_role(reviewer.id, permissions=["content.view", "content.publish"])

    assert permissions.has_permission(member.id, "content.publish") is True


@pytest.mark.unit
def test_deleted_role_stops_granting(db, organization, member, roles, permissions):
    reviewer = roles.create_role("Reviewer", organization_id=organization.id, permissions=["content.view"])
    roles.assign_role(member.id, reviewer.id)
    assert permissions.has_permission(member.id, "content.view") is True

    roles.delete_role(reviewer.id)
    assert permissions.has_permission(member.id, "content.view") is False
    assert db.query(Role).filter(Role.id == reviewer.id).first().is_deleted

    roles.restore_role(reviewer.id)
    assert permissions.has_permission(member.id, "content.view") is True


@pytest.mark.unit
def test_update_role_rejects_unknown_fields(db, organization, roles):
    reviewer = roles.create_role("Reviewer", organization_id=organization.id)
    with pytest.raises(InvalidInputError):
        roles.update_role(reviewer.id, slug="other")
