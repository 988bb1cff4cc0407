# rbac.py — Two-level role-based authorization (workspace + project)
# Features:
# - Totally ordered role hierarchies per scope type, never compared across types
# - Explicit, immutable permission tables per role (not derived from the hierarchy)
# - Project decisions reconcile a direct project grant with workspace owner/admin elevation
# - Uniform PermissionDenied regardless of the reason

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from types import MappingProxyType
from typing import Optional, Union

from errors import NotFound, PermissionDenied, ValidationFailure
from models import Project, ProjectRole, Workspace, WorkspaceRole

logger = logging.getLogger("workhub.rbac")


# ============================================================
# ROLE HIERARCHY & PERMISSIONS
# ============================================================

WORKSPACE_ROLE_HIERARCHY = MappingProxyType({
    WorkspaceRole.OWNER: 4,
    WorkspaceRole.ADMIN: 3,
    WorkspaceRole.MEMBER: 2,
    WorkspaceRole.VIEWER: 1,
})

PROJECT_ROLE_HIERARCHY = MappingProxyType({
    ProjectRole.LEAD: 3,
    ProjectRole.DEVELOPER: 2,
    ProjectRole.VIEWER: 1,
})

# Workspace roles that receive every project permission without a project membership
ELEVATED_WORKSPACE_ROLES = frozenset({WorkspaceRole.OWNER, WorkspaceRole.ADMIN})


class WorkspacePermission(str, Enum):
    MANAGE_MEMBERS = "can_manage_members"
    CREATE_PROJECTS = "can_create_projects"
    DELETE_PROJECTS = "can_delete_projects"
    MANAGE_SETTINGS = "can_manage_settings"
    VIEW_WORKSPACE = "can_view_workspace"


class ProjectPermission(str, Enum):
    MANAGE_TASKS = "can_manage_tasks"
    CREATE_TASKS = "can_create_tasks"
    DELETE_TASKS = "can_delete_tasks"
    ASSIGN_TASKS = "can_assign_tasks"
    VIEW_PROJECT = "can_view_project"
    EDIT_PROJECT = "can_edit_project"


PROJECT_WRITE_PERMISSIONS = frozenset(p for p in ProjectPermission if p is not ProjectPermission.VIEW_PROJECT)


class PermissionSet:
    """Frozen mapping of permission name -> granted"""

    def allows(self, permission: Union[WorkspacePermission, ProjectPermission]) -> bool:
        return bool(getattr(self, permission.value))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class WorkspacePermissions(PermissionSet):
    can_manage_members: bool
    can_create_projects: bool
    can_delete_projects: bool
    can_manage_settings: bool
    can_view_workspace: bool


@dataclass(frozen=True)
class ProjectPermissions(PermissionSet):
    can_manage_tasks: bool
    can_create_tasks: bool
    can_delete_tasks: bool
    can_assign_tasks: bool
    can_view_project: bool
    can_edit_project: bool


WORKSPACE_PERMISSIONS = MappingProxyType({
    WorkspaceRole.OWNER: WorkspacePermissions(
        can_manage_members=True, can_create_projects=True, can_delete_projects=True,
        can_manage_settings=True, can_view_workspace=True,
    ),
    WorkspaceRole.ADMIN: WorkspacePermissions(
        can_manage_members=True, can_create_projects=True, can_delete_projects=True,
        can_manage_settings=False, can_view_workspace=True,
    ),
    WorkspaceRole.MEMBER: WorkspacePermissions(
        can_manage_members=False, can_create_projects=True, can_delete_projects=False,
        can_manage_settings=False, can_view_workspace=True,
    ),
    WorkspaceRole.VIEWER: WorkspacePermissions(
        can_manage_members=False, can_create_projects=False, can_delete_projects=False,
        can_manage_settings=False, can_view_workspace=True,
    ),
})

PROJECT_PERMISSIONS = MappingProxyType({
    ProjectRole.LEAD: ProjectPermissions(
        can_manage_tasks=True, can_create_tasks=True, can_delete_tasks=True,
        can_assign_tasks=True, can_view_project=True, can_edit_project=True,
    ),
    ProjectRole.DEVELOPER: ProjectPermissions(
        can_manage_tasks=True, can_create_tasks=True, can_delete_tasks=False,
        can_assign_tasks=True, can_view_project=True, can_edit_project=False,
    ),
    ProjectRole.VIEWER: ProjectPermissions(
        can_manage_tasks=False, can_create_tasks=False, can_delete_tasks=False,
        can_assign_tasks=False, can_view_project=True, can_edit_project=False,
    ),
})

# Lowest workspace role holding each permission; the table above must agree with it
WORKSPACE_PERMISSION_MIN_ROLE = MappingProxyType({
    WorkspacePermission.MANAGE_MEMBERS: WorkspaceRole.ADMIN,
    WorkspacePermission.CREATE_PROJECTS: WorkspaceRole.MEMBER,
    WorkspacePermission.DELETE_PROJECTS: WorkspaceRole.ADMIN,
    WorkspacePermission.MANAGE_SETTINGS: WorkspaceRole.OWNER,
    WorkspacePermission.VIEW_WORKSPACE: WorkspaceRole.VIEWER,
})


# ============================================================
# SCOPES
# ============================================================

class ScopeKind(str, Enum):
    WORKSPACE = "workspace"
    PROJECT = "project"


@dataclass(frozen=True)
class Scope:
    kind: ScopeKind
    id: str

    @classmethod
    def workspace(cls, workspace_id: str) -> "Scope":
        return cls(ScopeKind.WORKSPACE, workspace_id)

    @classmethod
    def project(cls, project_id: str) -> "Scope":
        return cls(ScopeKind.PROJECT, project_id)


Requirement = Union[WorkspaceRole, ProjectRole, WorkspacePermission, ProjectPermission]


# ============================================================
# ENGINE
# ============================================================

class AuthorizationEngine:
    """Permission decisions for one actor at one scope.

    Every lookup runs through the StoreTransaction passed in, so a decision and
    the mutation it guards see the same snapshot.
    """

    # --- permission tables ---

    @staticmethod
    def workspace_permissions_for(role) -> WorkspacePermissions:
        try:
            return WORKSPACE_PERMISSIONS[WorkspaceRole(role)]
        except ValueError:
            raise ValidationFailure(f"Invalid workspace role: {role}")

    @staticmethod
    def project_permissions_for(role) -> ProjectPermissions:
        try:
            return PROJECT_PERMISSIONS[ProjectRole(role)]
        except ValueError:
            raise ValidationFailure(f"Invalid project role: {role}")

    def permissions_for(self, role: Union[WorkspaceRole, ProjectRole]) -> PermissionSet:
        if isinstance(role, WorkspaceRole):
            return self.workspace_permissions_for(role)
        if isinstance(role, ProjectRole):
            return self.project_permissions_for(role)
        raise ValidationFailure(f"Unknown role type: {role!r}")

    # --- workspace scope ---

    async def get_workspace_role(self, tx, workspace_id: str, user_id: str) -> Optional[WorkspaceRole]:
        member = await tx.get_workspace_membership(workspace_id, user_id)
        return WorkspaceRole(member.role) if member else None

    async def has_workspace_role(self, tx, workspace_id: str, user_id: str, min_role: WorkspaceRole) -> bool:
        role = await self.get_workspace_role(tx, workspace_id, user_id)
        if role is None:
            return False
        return WORKSPACE_ROLE_HIERARCHY[role] >= WORKSPACE_ROLE_HIERARCHY[min_role]

    # --- project scope ---

    async def get_project_role(self, tx, project_id: str, user_id: str) -> Optional[ProjectRole]:
        member = await tx.get_project_membership(project_id, user_id)
        return ProjectRole(member.role) if member else None

    async def has_project_role(self, tx, project_id: str, user_id: str, min_role: ProjectRole) -> bool:
        """Direct project membership only; see authorize() for elevation"""
        role = await self.get_project_role(tx, project_id, user_id)
        if role is None:
            return False
        return PROJECT_ROLE_HIERARCHY[role] >= PROJECT_ROLE_HIERARCHY[min_role]

    async def can_access_project(self, tx, project_id: str, user_id: str, project: Project = None) -> bool:
        project = project or await tx.get_project(project_id)
        if project is None:
            return False
        if await self.get_workspace_role(tx, project.workspace_id, user_id) is not None:
            return True
        return await self.get_project_role(tx, project.id, user_id) is not None

    async def can_perform_project_action(
        self, tx, project_id: str, user_id: str, permission: ProjectPermission, project: Project = None,
    ) -> bool:
        # 1. a direct project grant wins
        project_role = await self.get_project_role(tx, project_id, user_id)
        if project_role is not None and PROJECT_PERMISSIONS[project_role].allows(permission):
            return True

        # 2. otherwise only the owning workspace's owner/admin elevation counts
        project = project or await tx.get_project(project_id)
        if project is None:
            return False
        workspace_role = await self.get_workspace_role(tx, project.workspace_id, user_id)
        if workspace_role is None:
            return False
        if workspace_role in ELEVATED_WORKSPACE_ROLES:
            return True

        # any workspace member may see the project, never write to it
        return permission is ProjectPermission.VIEW_PROJECT

    # --- generic contract ---

    async def authorize(self, tx, actor_id: str, scope: Scope, requirement: Requirement) -> bool:
        """True when actor meets requirement at scope. Raises NotFound for a missing scope."""
        if scope.kind is ScopeKind.WORKSPACE:
            workspace = await tx.get_workspace(scope.id)
            if workspace is None:
                raise NotFound("Workspace", scope.id)
            role = await self.get_workspace_role(tx, workspace.id, actor_id)
            if role is None:
                return False
            if isinstance(requirement, WorkspaceRole):
                return WORKSPACE_ROLE_HIERARCHY[role] >= WORKSPACE_ROLE_HIERARCHY[requirement]
            if isinstance(requirement, WorkspacePermission):
                return WORKSPACE_PERMISSIONS[role].allows(requirement)
            raise ValidationFailure(f"{requirement!r} does not apply to a workspace scope")

        project = await tx.get_project(scope.id)
        if project is None:
            raise NotFound("Project", scope.id)
        if isinstance(requirement, ProjectPermission):
            return await self.can_perform_project_action(tx, project.id, actor_id, requirement, project=project)
        if isinstance(requirement, ProjectRole):
            if await self.has_project_role(tx, project.id, actor_id, requirement):
                return True
            workspace_role = await self.get_workspace_role(tx, project.workspace_id, actor_id)
            return workspace_role in ELEVATED_WORKSPACE_ROLES
        raise ValidationFailure(f"{requirement!r} does not apply to a project scope")

    async def require(self, tx, actor_id: str, scope: Scope, requirement: Requirement) -> None:
        if not await self.authorize(tx, actor_id, scope, requirement):
            logger.info(f"Denied {requirement.value} on {scope.kind.value}:{scope.id} for actor {actor_id}")
            raise PermissionDenied()

    async def require_workspace(self, tx, actor_id: str, workspace_id: str, requirement: Requirement) -> Workspace:
        """Check requirement on a workspace and return it"""
        await self.require(tx, actor_id, Scope.workspace(workspace_id), requirement)
        return await tx.get_workspace(workspace_id)

    async def require_project(self, tx, actor_id: str, project_id: str, requirement: Requirement) -> Project:
        """Check requirement on a project and return it"""
        await self.require(tx, actor_id, Scope.project(project_id), requirement)
        return await tx.get_project(project_id)

    async def require_project_access(self, tx, actor_id: str, project_id: str) -> Project:
        project = await tx.get_project(project_id)
        if project is None:
            raise NotFound("Project", project_id)
        if not await self.can_access_project(tx, project.id, actor_id, project=project):
            logger.info(f"Denied access to project:{project_id} for actor {actor_id}")
            raise PermissionDenied()
        return project
