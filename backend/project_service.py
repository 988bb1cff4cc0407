# project_service.py — Projects inside a workspace and their memberships
import logging
from typing import Any, Dict, List, Optional, Union

import events
from errors import ConflictError, ValidationFailure
from memberships import MembershipService
from models import (
    ActivityAction, EntityType, Project, ProjectMember, ProjectRole, ProjectStatus,
    ProjectTaskCounter, as_utc, diff_fields, new_uuid, utcnow,
)
from rbac import ProjectPermission, Scope, WorkspacePermission
from schemas import ProjectCreate, ProjectOut, ProjectUpdate, parse, to_payload
from store import StoreTransaction

logger = logging.getLogger("workhub.projects")


def _check_dates(start, end) -> None:
    if start is not None and end is not None and as_utc(end) < as_utc(start):
        raise ValidationFailure("end_date must not be before start_date")


class ProjectService(MembershipService):
    scope_label = "Project"
    role_enum = ProjectRole
    manage_requirement = ProjectPermission.EDIT_PROJECT
    view_requirement = ProjectPermission.VIEW_PROJECT

    # --- membership hooks ---

    def _scope(self, scope_id: str) -> Scope:
        return Scope.project(scope_id)

    async def _load_scope(self, tx: StoreTransaction, scope_id: str):
        return await tx.get_project(scope_id)

    async def _get_membership(self, tx: StoreTransaction, scope_id: str, user_id: str):
        return await tx.get_project_membership(scope_id, user_id)

    async def _list_memberships(self, tx: StoreTransaction, scope_id: str):
        return await tx.list_project_members(scope_id)

    def _new_membership(self, scope, user_id: str, role, invited_by: Optional[str]):
        return ProjectMember(
            id=new_uuid(), project_id=scope.id, user_id=user_id, role=role,
            invited_by=invited_by, joined_at=utcnow(),
        )

    def _audit_ids(self, scope) -> Dict[str, Optional[str]]:
        return {"workspace_id": scope.workspace_id, "project_id": scope.id}

    async def _check_candidate(self, tx: StoreTransaction, scope, user_id: str) -> None:
        if await tx.get_workspace_membership(scope.workspace_id, user_id) is None:
            raise ValidationFailure("User must be a member of the project's workspace", {"user_id": user_id})

    # --- projects ---

    async def create_project(self, data: Union[ProjectCreate, Dict[str, Any]], actor_id: str) -> Project:
        data = parse(ProjectCreate, data)
        _check_dates(data.start_date, data.end_date)

        async def _run(tx: StoreTransaction) -> Project:
            workspace = await self.engine.require_workspace(
                tx, actor_id, data.workspace_id, WorkspacePermission.CREATE_PROJECTS,
            )
            if await tx.get_project_by_key(workspace.id, data.key) is not None:
                raise ConflictError("Project key already exists in this workspace", {"key": data.key})

            now = utcnow()
            project = Project(
                id=new_uuid(),
                workspace_id=workspace.id,
                name=data.name,
                key=data.key,
                description=data.description,
                owner_id=actor_id,
                status=ProjectStatus.ACTIVE,
                start_date=data.start_date,
                end_date=data.end_date,
                created_at=now,
                updated_at=now,
            )
            tx.add(project)
            await tx.flush()
            tx.add(
                self._new_membership(project, actor_id, ProjectRole.LEAD, None),
                ProjectTaskCounter(project_id=project.id, last_number=0),
            )
            await tx.flush()

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.PROJECT_CREATED,
                entity_type=EntityType.PROJECT,
                workspace_id=workspace.id,
                project_id=project.id,
                metadata={"name": project.name, "key": project.key},
            )
            return project

        project = await self.store.with_transaction(_run)
        logger.info(f"Project {project.key} created in workspace {project.workspace_id} by {actor_id}")
        return project

    async def list_workspace_projects(self, workspace_id: str, actor_id: str) -> List[Project]:
        async def _run(tx: StoreTransaction):
            await self.engine.require_workspace(tx, actor_id, workspace_id, WorkspacePermission.VIEW_WORKSPACE)
            return await tx.list_projects(workspace_id)

        return await self.store.read(_run)

    async def get_project(self, project_id: str, actor_id: str) -> Project:
        async def _run(tx: StoreTransaction):
            return await self.engine.require_project_access(tx, actor_id, project_id)

        return await self.store.read(_run)

    async def update_project(
        self, project_id: str, patch: Union[ProjectUpdate, Dict[str, Any]], actor_id: str,
    ) -> Project:
        patch = parse(ProjectUpdate, patch)
        requested = patch.model_dump(exclude_unset=True)

        async def _run(tx: StoreTransaction) -> Project:
            project = await self.engine.require_project(tx, actor_id, project_id, ProjectPermission.EDIT_PROJECT)
            changes = diff_fields(project, requested)
            if not changes:
                return project
            _check_dates(changes.get("start_date", project.start_date), changes.get("end_date", project.end_date))
            if "key" in changes and await tx.get_project_by_key(project.workspace_id, changes["key"]) is not None:
                raise ConflictError("Project key already exists in this workspace", {"key": changes["key"]})

            for name, value in changes.items():
                setattr(project, name, value)
            project.updated_at = utcnow()
            await tx.flush()

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.PROJECT_UPDATED,
                entity_type=EntityType.PROJECT,
                workspace_id=project.workspace_id,
                project_id=project.id,
                metadata={"changed_fields": list(changes)},
            )
            tx.emit(events.project_updated(to_payload(ProjectOut, project), actor_id))
            return project

        return await self.store.with_transaction(_run)

    async def delete_project(self, project_id: str, actor_id: str) -> None:
        """Remove a project with its tasks and memberships; its audit trail stays"""

        async def _run(tx: StoreTransaction) -> None:
            project = await self._require_scope(tx, project_id)
            await self.engine.require_workspace(
                tx, actor_id, project.workspace_id, WorkspacePermission.DELETE_PROJECTS,
            )
            removed = await tx.delete_project_rows(project.id)
            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.PROJECT_DELETED,
                entity_type=EntityType.PROJECT,
                workspace_id=project.workspace_id,
                project_id=project.id,
                metadata={"name": project.name, "key": project.key, "tasks_removed": removed},
            )

        await self.store.with_transaction(_run)
        logger.info(f"Project {project_id} deleted by {actor_id}")
