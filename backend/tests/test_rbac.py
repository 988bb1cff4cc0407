# tests/test_rbac.py — Authorization engine tests
from dataclasses import FrozenInstanceError

import pytest

from errors import NotFound, PermissionDenied, ValidationFailure
from models import ProjectRole, WorkspaceRole
from rbac import (
    AuthorizationEngine, PROJECT_PERMISSIONS, PROJECT_ROLE_HIERARCHY, PROJECT_WRITE_PERMISSIONS,
    ProjectPermission, Scope, WORKSPACE_PERMISSION_MIN_ROLE, WORKSPACE_PERMISSIONS,
    WORKSPACE_ROLE_HIERARCHY, WorkspacePermission,
)


# ============================================================
# TABLES
# ============================================================

@pytest.mark.parametrize("role", list(WorkspaceRole))
@pytest.mark.parametrize("permission", list(WorkspacePermission))
def test_workspace_table_agrees_with_hierarchy(role, permission):
    """Every workspace permission is held by exactly the roles at or above its minimum"""
    min_role = WORKSPACE_PERMISSION_MIN_ROLE[permission]
    expected = WORKSPACE_ROLE_HIERARCHY[role] >= WORKSPACE_ROLE_HIERARCHY[min_role]
    assert WORKSPACE_PERMISSIONS[role].allows(permission) is expected


def test_admin_cannot_manage_settings():
    assert not WORKSPACE_PERMISSIONS[WorkspaceRole.ADMIN].can_manage_settings
    assert WORKSPACE_PERMISSIONS[WorkspaceRole.OWNER].can_manage_settings


def test_project_table_rows():
    assert all(PROJECT_PERMISSIONS[ProjectRole.LEAD].allows(p) for p in ProjectPermission)
    developer = PROJECT_PERMISSIONS[ProjectRole.DEVELOPER]
    assert developer.can_manage_tasks and developer.can_create_tasks and developer.can_assign_tasks
    assert not developer.can_delete_tasks
    assert not developer.can_edit_project
    viewer = PROJECT_PERMISSIONS[ProjectRole.VIEWER]
    assert viewer.can_view_project
    assert not any(viewer.allows(p) for p in PROJECT_WRITE_PERMISSIONS)


def test_hierarchies_are_total_orders():
    assert sorted(WORKSPACE_ROLE_HIERARCHY.values()) == [1, 2, 3, 4]
    assert sorted(PROJECT_ROLE_HIERARCHY.values()) == [1, 2, 3]


def test_permission_tables_are_immutable():
    with pytest.raises(TypeError):
        WORKSPACE_PERMISSIONS[WorkspaceRole.VIEWER] = WORKSPACE_PERMISSIONS[WorkspaceRole.OWNER]
    with pytest.raises(FrozenInstanceError):
        WORKSPACE_PERMISSIONS[WorkspaceRole.VIEWER].can_manage_members = True


def test_permissions_for():
    engine = AuthorizationEngine()
    assert engine.permissions_for(WorkspaceRole.MEMBER).to_dict() == {
        "can_manage_members": False,
        "can_create_projects": True,
        "can_delete_projects": False,
        "can_manage_settings": False,
        "can_view_workspace": True,
    }
    assert engine.permissions_for(ProjectRole.DEVELOPER).can_assign_tasks
    assert engine.workspace_permissions_for("admin").can_delete_projects
    with pytest.raises(ValidationFailure):
        engine.project_permissions_for("owner")


# ============================================================
# DECISIONS AGAINST THE STORE
# ============================================================

async def _read(services, fn):
    return await services.store.read(fn)


@pytest.mark.asyncio
@pytest.mark.parametrize("role", list(WorkspaceRole))
async def test_has_workspace_role_matches_table(services, owner, teammate, workspace, role):
    """has_workspace_role(min_role) and the permission table agree for every permission"""
    if role is not WorkspaceRole.OWNER:
        await services.workspaces.add_member(workspace.id, teammate.id, role, owner.id)
    user = owner if role is WorkspaceRole.OWNER else teammate
    engine = services.engine

    for permission, min_role in WORKSPACE_PERMISSION_MIN_ROLE.items():
        by_role = await _read(services, lambda tx: engine.has_workspace_role(tx, workspace.id, user.id, min_role))
        by_table = await _read(services, lambda tx: engine.authorize(tx, user.id, Scope.workspace(workspace.id), permission))
        assert by_role is by_table, (role, permission)


@pytest.mark.asyncio
@pytest.mark.parametrize("role", [WorkspaceRole.ADMIN, WorkspaceRole.OWNER])
async def test_workspace_elevation_grants_all_project_permissions(services, owner, teammate, workspace, role):
    """Owner/admin get every project permission without a project membership"""
    engine = services.engine
    if role is WorkspaceRole.ADMIN:
        await services.workspaces.add_member(workspace.id, teammate.id, role, owner.id)
        user = teammate
        project = await services.projects.create_project(
            {"workspace_id": workspace.id, "name": "Ops", "key": "OPS"}, owner.id,
        )
    else:
        # owner, but the project belongs to someone else and has no owner membership
        await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.ADMIN, owner.id)
        project = await services.projects.create_project(
            {"workspace_id": workspace.id, "name": "Ops", "key": "OPS"}, teammate.id,
        )
        user = owner

    assert await _read(services, lambda tx: engine.get_project_role(tx, project.id, user.id)) is None
    for permission in ProjectPermission:
        allowed = await _read(
            services, lambda tx: engine.can_perform_project_action(tx, project.id, user.id, permission),
        )
        assert allowed, permission
    assert await _read(
        services, lambda tx: engine.authorize(tx, user.id, Scope.project(project.id), ProjectRole.LEAD),
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("role", [WorkspaceRole.MEMBER, WorkspaceRole.VIEWER])
async def test_plain_workspace_members_only_see_projects(services, owner, teammate, workspace, project, role):
    engine = services.engine
    await services.workspaces.add_member(workspace.id, teammate.id, role, owner.id)

    assert await _read(services, lambda tx: engine.can_access_project(tx, project.id, teammate.id))
    assert await _read(
        services,
        lambda tx: engine.can_perform_project_action(tx, project.id, teammate.id, ProjectPermission.VIEW_PROJECT),
    )
    for permission in PROJECT_WRITE_PERMISSIONS:
        allowed = await _read(
            services, lambda tx: engine.can_perform_project_action(tx, project.id, teammate.id, permission),
        )
        assert not allowed, permission
    assert not await _read(
        services, lambda tx: engine.authorize(tx, teammate.id, Scope.project(project.id), ProjectRole.VIEWER),
    )


@pytest.mark.asyncio
async def test_direct_project_grant_wins(services, owner, teammate, workspace, project):
    engine = services.engine
    await services.workspaces.add_member(workspace.id, teammate.id, WorkspaceRole.VIEWER, owner.id)
    await services.projects.add_member(project.id, teammate.id, ProjectRole.DEVELOPER, owner.id)

    def can(permission):
        return _read(services, lambda tx: engine.can_perform_project_action(tx, project.id, teammate.id, permission))

    assert await can(ProjectPermission.CREATE_TASKS)
    assert await can(ProjectPermission.MANAGE_TASKS)
    assert not await can(ProjectPermission.DELETE_TASKS)
    assert not await can(ProjectPermission.EDIT_PROJECT)
    assert await _read(services, lambda tx: engine.has_project_role(tx, project.id, teammate.id, ProjectRole.DEVELOPER))
    assert not await _read(services, lambda tx: engine.has_project_role(tx, project.id, teammate.id, ProjectRole.LEAD))


@pytest.mark.asyncio
async def test_outsider_is_denied_everything(services, outsider, workspace, project):
    engine = services.engine
    assert not await _read(services, lambda tx: engine.can_access_project(tx, project.id, outsider.id))
    assert not await _read(
        services, lambda tx: engine.authorize(tx, outsider.id, Scope.workspace(workspace.id), WorkspaceRole.VIEWER),
    )
    with pytest.raises(PermissionDenied) as exc:
        await _read(services, lambda tx: engine.require(tx, outsider.id, Scope.project(project.id), ProjectPermission.VIEW_PROJECT))
    assert str(exc.value) == PermissionDenied.MESSAGE


@pytest.mark.asyncio
async def test_missing_scope_is_not_found(services, owner):
    engine = services.engine
    with pytest.raises(NotFound):
        await _read(services, lambda tx: engine.authorize(tx, owner.id, Scope.workspace("missing"), WorkspaceRole.VIEWER))
    with pytest.raises(NotFound):
        await _read(services, lambda tx: engine.authorize(tx, owner.id, Scope.project("missing"), ProjectPermission.VIEW_PROJECT))


@pytest.mark.asyncio
async def test_mismatched_requirement_rejected(services, owner, workspace):
    with pytest.raises(ValidationFailure):
        await _read(
            services,
            lambda tx: services.engine.authorize(tx, owner.id, Scope.workspace(workspace.id), ProjectPermission.VIEW_PROJECT),
        )
