# activity.py — Append-only audit trail and activity feeds
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import NotFound
from models import ActivityAction, ActivityLog, EntityType, Project, Task, WorkspaceRole, new_uuid, utcnow
from rbac import AuthorizationEngine, Scope

# Task fields audited one row per change, in this order within a transaction
AUDITED_TASK_FIELDS = (
    ("status", ActivityAction.TASK_STATUS_CHANGED),
    ("assignee_id", ActivityAction.TASK_ASSIGNEE_CHANGED),
    ("priority", ActivityAction.TASK_PRIORITY_CHANGED),
)

MAX_FEED_LIMIT = 200


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ActivityRecorder:
    """Writes audit rows into the caller's transaction; never commits on its own"""

    def record(
        self,
        tx,
        *,
        actor_id: str,
        action: ActivityAction,
        entity_type: EntityType,
        workspace_id: Optional[str] = None,
        project_id: Optional[str] = None,
        task_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            id=new_uuid(),
            workspace_id=workspace_id,
            project_id=project_id,
            task_id=task_id,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            details={k: _plain(v) for k, v in (metadata or {}).items()},
            sequence=tx.next_sequence(),
            created_at=utcnow(),
        )
        tx.add(entry)
        return entry

    @staticmethod
    def snapshot_task(task: Task) -> Dict[str, Any]:
        return {name: _plain(getattr(task, name)) for name, _ in AUDITED_TASK_FIELDS}

    def record_task_changes(
        self, tx, project: Project, task: Task, before: Dict[str, Any], actor_id: str,
    ) -> List[ActivityLog]:
        """Diff audited fields against the snapshot taken before the change"""
        after = self.snapshot_task(task)
        entries = []
        for name, action in AUDITED_TASK_FIELDS:
            if before[name] == after[name]:
                continue
            entries.append(self.record(
                tx,
                actor_id=actor_id,
                action=action,
                entity_type=EntityType.TASK,
                workspace_id=project.workspace_id,
                project_id=project.id,
                task_id=task.id,
                metadata={"task_number": task.task_number, "from": before[name], "to": after[name]},
            ))
        return entries


class ActivityFeed:
    """Read side of the audit trail, filtered by what the actor may see"""

    def __init__(self, store, engine: AuthorizationEngine = None):
        self.store = store
        self.engine = engine or AuthorizationEngine()

    @staticmethod
    def _page(limit: int, offset: int) -> Dict[str, int]:
        return {"limit": max(1, min(limit, MAX_FEED_LIMIT)), "offset": max(0, offset)}

    async def workspace_activity(self, workspace_id: str, actor_id: str, limit: int = 50, offset: int = 0):
        async def _run(tx):
            await self.engine.require(tx, actor_id, Scope.workspace(workspace_id), WorkspaceRole.VIEWER)
            return await tx.list_activity(workspace_id=workspace_id, **self._page(limit, offset))

        return await self.store.read(_run)

    async def project_activity(self, project_id: str, actor_id: str, limit: int = 50, offset: int = 0):
        async def _run(tx):
            await self.engine.require_project_access(tx, actor_id, project_id)
            return await tx.list_activity(project_id=project_id, **self._page(limit, offset))

        return await self.store.read(_run)

    async def task_activity(self, task_id: str, actor_id: str, limit: int = 50, offset: int = 0):
        async def _run(tx):
            task = await tx.get_task(task_id)
            if task is None:
                raise NotFound("Task", task_id)
            await self.engine.require_project_access(tx, actor_id, task.project_id)
            return await tx.list_activity(task_id=task_id, **self._page(limit, offset))

        return await self.store.read(_run)

    async def user_activity(self, actor_id: str, limit: int = 50, offset: int = 0):
        async def _run(tx):
            return await tx.list_activity(actor_id=actor_id, **self._page(limit, offset))

        return await self.store.read(_run)
