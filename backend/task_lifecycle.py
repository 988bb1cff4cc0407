# task_lifecycle.py — Task state machine, numbering and bulk transitions
#
# Any status may move to any other; what matters are the side effects:
# completed_at follows the done state, status/assignee/priority changes are
# audited one row per field, and events are queued for after the commit.
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import events
from activity import ActivityRecorder
from errors import InvariantViolation, NotFound, ValidationFailure
from models import (
    ActivityAction, EntityType, Project, Task, TaskPriority, TaskStatus, diff_fields, new_uuid, utcnow,
)
from rbac import AuthorizationEngine, ProjectPermission, Scope
from schemas import TaskAssign, TaskCreate, TaskOut, TaskStatusChange, TaskUpdate, coerce_enum, parse, to_payload
from store import Store, StoreTransaction, TaskWithRelations

logger = logging.getLogger("workhub.tasks")

# Owned by the system; a patch naming any of these is rejected outright
READ_ONLY_TASK_FIELDS = frozenset({
    "id", "project_id", "task_number", "reporter_id", "completed_at", "created_at", "updated_at",
})

MAX_PARENT_DEPTH = 50


def sync_completed_at(task: Task, previous_status: Optional[TaskStatus]) -> None:
    """Set completed_at on entering done, clear it on leaving"""
    if task.status == TaskStatus.DONE:
        if previous_status != TaskStatus.DONE or task.completed_at is None:
            task.completed_at = utcnow()
    else:
        task.completed_at = None


class TaskLifecycle:
    def __init__(
        self,
        store: Store,
        engine: Optional[AuthorizationEngine] = None,
        recorder: Optional[ActivityRecorder] = None,
    ):
        self.store = store
        self.engine = engine or AuthorizationEngine()
        self.recorder = recorder or ActivityRecorder()

    # ------------------------------------------------------------
    # Validation helpers (run inside the caller's transaction)
    # ------------------------------------------------------------

    async def _check_assignee(self, tx: StoreTransaction, project: Project, assignee_id: str) -> None:
        if await tx.get_user(assignee_id) is None:
            raise ValidationFailure("Assignee does not exist", {"assignee_id": assignee_id})
        if not await self.engine.can_access_project(tx, project.id, assignee_id, project=project):
            raise ValidationFailure("Assignee cannot access this project", {"assignee_id": assignee_id})

    async def _check_parent(
        self, tx: StoreTransaction, project: Project, parent_id: str, task_id: Optional[str] = None,
    ) -> None:
        parent = await tx.get_task(parent_id)
        if parent is None or parent.project_id != project.id:
            raise ValidationFailure("Parent task must exist in the same project", {"parent_task_id": parent_id})
        if task_id is None:
            return
        # walk up from the new parent; meeting the task itself means a cycle
        node, depth = parent, 0
        while node is not None and depth < MAX_PARENT_DEPTH:
            if node.id == task_id:
                raise ValidationFailure("A task cannot be its own ancestor", {"parent_task_id": parent_id})
            node = await tx.get_task(node.parent_task_id) if node.parent_task_id else None
            depth += 1

    @staticmethod
    def _reject_read_only(patch: Any) -> None:
        if isinstance(patch, dict):
            blocked = sorted(READ_ONLY_TASK_FIELDS.intersection(patch))
            if blocked:
                raise ValidationFailure(f"Fields cannot be modified: {', '.join(blocked)}", {"fields": blocked})

    # ------------------------------------------------------------
    # Create
    # ------------------------------------------------------------

    async def create_task(self, data: Union[TaskCreate, Dict[str, Any]], actor_id: str) -> Task:
        data = parse(TaskCreate, data)

        async def _run(tx: StoreTransaction) -> Task:
            project = await self.engine.require_project(
                tx, actor_id, data.project_id, ProjectPermission.CREATE_TASKS,
            )
            if data.parent_task_id:
                await self._check_parent(tx, project, data.parent_task_id)
            if data.assignee_id:
                await self.engine.require(tx, actor_id, Scope.project(project.id), ProjectPermission.ASSIGN_TASKS)
                await self._check_assignee(tx, project, data.assignee_id)

            number = await tx.allocate_task_number(project.id)
            now = utcnow()
            task = Task(
                id=new_uuid(),
                project_id=project.id,
                task_number=number,
                title=data.title,
                description=data.description,
                status=data.status,
                priority=data.priority,
                assignee_id=data.assignee_id,
                reporter_id=actor_id,
                parent_task_id=data.parent_task_id,
                estimated_hours=data.estimated_hours,
                due_date=data.due_date,
                completed_at=now if data.status == TaskStatus.DONE else None,
                created_at=now,
                updated_at=now,
            )
            tx.add(task)
            await tx.flush()

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.TASK_CREATED,
                entity_type=EntityType.TASK,
                workspace_id=project.workspace_id,
                project_id=project.id,
                task_id=task.id,
                metadata={"task_number": number, "title": task.title},
            )
            payload = to_payload(TaskOut, task)
            tx.emit(events.task_created(payload, actor_id))
            if task.assignee_id:
                tx.emit(events.task_assigned(payload, task.assignee_id, actor_id))
            return task

        task = await self.store.with_transaction(_run)
        logger.info(f"Task {task.task_number} created in project {task.project_id} by {actor_id}")
        return task

    # ------------------------------------------------------------
    # Read
    # ------------------------------------------------------------

    async def get_task(self, task_id: str, actor_id: str) -> TaskWithRelations:
        async def _run(tx: StoreTransaction) -> TaskWithRelations:
            detail = await tx.get_task_with_relations(task_id)
            if detail is None:
                raise NotFound("Task", task_id)
            await self.engine.require_project_access(tx, actor_id, detail.task.project_id)
            return detail

        return await self.store.read(_run)

    async def list_project_tasks(
        self,
        project_id: str,
        actor_id: str,
        status=None,
        priority=None,
        assignee_id: Optional[str] = None,
    ) -> List[Task]:
        status = coerce_enum(TaskStatus, status, "status")
        priority = coerce_enum(TaskPriority, priority, "priority")

        async def _run(tx: StoreTransaction) -> List[Task]:
            await self.engine.require_project_access(tx, actor_id, project_id)
            return await tx.list_tasks(project_id=project_id, assignee_id=assignee_id, status=status, priority=priority)

        return await self.store.read(_run)

    async def list_user_tasks(self, actor_id: str, status=None, priority=None) -> List[Task]:
        """Tasks assigned to the actor in projects the actor can still see"""
        status = coerce_enum(TaskStatus, status, "status")
        priority = coerce_enum(TaskPriority, priority, "priority")

        async def _run(tx: StoreTransaction) -> List[Task]:
            tasks = await tx.list_tasks(assignee_id=actor_id, status=status, priority=priority)
            visible: Dict[str, bool] = {}
            for project_id in {t.project_id for t in tasks}:
                visible[project_id] = await self.engine.can_access_project(tx, project_id, actor_id)
            return [t for t in tasks if visible[t.project_id]]

        return await self.store.read(_run)

    # ------------------------------------------------------------
    # Update
    # ------------------------------------------------------------

    async def _apply_changes(
        self,
        tx: StoreTransaction,
        project: Project,
        task: Task,
        changes: Dict[str, Any],
        actor_id: str,
    ) -> Task:
        """Apply a non-empty diff to a locked task, audit it and queue its events"""
        if "assignee_id" in changes and changes["assignee_id"] is not None:
            await self._check_assignee(tx, project, changes["assignee_id"])
        if "parent_task_id" in changes and changes["parent_task_id"] is not None:
            await self._check_parent(tx, project, changes["parent_task_id"], task_id=task.id)

        before = self.recorder.snapshot_task(task)
        previous_status = task.status
        for name, value in changes.items():
            setattr(task, name, value)
        sync_completed_at(task, previous_status)
        task.updated_at = utcnow()
        await tx.flush()

        self.recorder.record_task_changes(tx, project, task, before, actor_id)
        payload = to_payload(TaskOut, task)
        tx.emit(events.task_updated(payload, list(changes), actor_id))
        if "assignee_id" in changes and task.assignee_id:
            tx.emit(events.task_assigned(payload, task.assignee_id, actor_id))
        return task

    async def update_task(self, task_id: str, patch: Union[TaskUpdate, Dict[str, Any]], actor_id: str) -> Task:
        self._reject_read_only(patch)
        patch = parse(TaskUpdate, patch)
        requested = patch.model_dump(exclude_unset=True)

        async def _run(tx: StoreTransaction) -> Task:
            task = await tx.get_task(task_id, for_update=True)
            if task is None:
                raise NotFound("Task", task_id)
            project = await self.engine.require_project(
                tx, actor_id, task.project_id, ProjectPermission.MANAGE_TASKS,
            )
            changes = diff_fields(task, requested)
            if not changes:
                return task
            if "assignee_id" in changes:
                await self.engine.require(tx, actor_id, Scope.project(project.id), ProjectPermission.ASSIGN_TASKS)
            return await self._apply_changes(tx, project, task, changes, actor_id)

        return await self.store.with_transaction(_run)

    async def assign_task(self, task_id: str, assignee_id: Optional[str], actor_id: str) -> Task:
        data = parse(TaskAssign, {"assignee_id": assignee_id})

        async def _run(tx: StoreTransaction) -> Task:
            task = await tx.get_task(task_id, for_update=True)
            if task is None:
                raise NotFound("Task", task_id)
            project = await self.engine.require_project(
                tx, actor_id, task.project_id, ProjectPermission.ASSIGN_TASKS,
            )
            if task.assignee_id == data.assignee_id:
                return task
            return await self._apply_changes(tx, project, task, {"assignee_id": data.assignee_id}, actor_id)

        return await self.store.with_transaction(_run)

    async def bulk_update_status(
        self,
        updates: Iterable[Union[TaskStatusChange, Dict[str, Any]]],
        actor_id: str,
    ) -> List[Task]:
        """Move many tasks at once. Missing or forbidden items are skipped, not errors."""
        items = [parse(TaskStatusChange, u) for u in updates]

        async def _run(tx: StoreTransaction) -> List[Task]:
            allowed: Dict[str, bool] = {}
            projects: Dict[str, Project] = {}
            touched: Dict[str, List[Task]] = {}
            result: List[Task] = []

            for item in items:
                task = await tx.get_task(item.task_id, for_update=True)
                if task is None:
                    continue
                if task.project_id not in allowed:
                    allowed[task.project_id] = await self.engine.can_perform_project_action(
                        tx, task.project_id, actor_id, ProjectPermission.MANAGE_TASKS,
                    )
                if not allowed[task.project_id]:
                    continue

                if task.status != item.status:
                    if task.project_id not in projects:
                        projects[task.project_id] = await tx.get_project(task.project_id)
                    project = projects[task.project_id]
                    before = self.recorder.snapshot_task(task)
                    previous_status = task.status
                    task.status = item.status
                    sync_completed_at(task, previous_status)
                    task.updated_at = utcnow()
                    self.recorder.record_task_changes(tx, project, task, before, actor_id)

                result.append(task)
                touched.setdefault(task.project_id, []).append(task)

            await tx.flush()
            for project_id, tasks in touched.items():
                payloads = [to_payload(TaskOut, t) for t in tasks]
                tx.emit(events.tasks_bulk_updated(project_id, payloads, actor_id))
            return result

        result = await self.store.with_transaction(_run)
        skipped = len(items) - len(result)
        if skipped:
            logger.info(f"Bulk status update by {actor_id}: {len(result)} applied, {skipped} skipped")
        return result

    # ------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------

    async def delete_task(self, task_id: str, actor_id: str) -> None:
        async def _run(tx: StoreTransaction) -> None:
            task = await tx.get_task(task_id, for_update=True)
            if task is None:
                raise NotFound("Task", task_id)
            project = await self.engine.require_project(
                tx, actor_id, task.project_id, ProjectPermission.DELETE_TASKS,
            )
            subtasks = await tx.count_subtasks(task.id)
            if subtasks:
                raise InvariantViolation(
                    "Task has subtasks; delete or re-parent them first",
                    {"task_id": task.id, "subtasks": subtasks},
                )

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.TASK_DELETED,
                entity_type=EntityType.TASK,
                workspace_id=project.workspace_id,
                project_id=project.id,
                task_id=task.id,
                metadata={"task_number": task.task_number, "title": task.title},
            )
            await tx.delete_task_comments(task.id)
            await tx.delete(task)
            await tx.flush()
            tx.emit(events.task_deleted(task.id, project.id, actor_id))

        await self.store.with_transaction(_run)
        logger.info(f"Task {task_id} deleted by {actor_id}")
