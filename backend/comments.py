# comments.py — Discussion threads on tasks
#
# Anyone who can see a task's project may comment on it. Only the author edits
# a comment; the author or anyone who manages tasks in the project deletes it.
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import events
from activity import ActivityRecorder
from errors import NotFound, PermissionDenied
from models import ActivityAction, EntityType, Project, Task, TaskComment, User, new_uuid, utcnow
from rbac import AuthorizationEngine, ProjectPermission
from schemas import CommentBody, CommentOut, parse, to_payload
from store import Store, StoreTransaction

logger = logging.getLogger("workhub.comments")

# stored in the audit row so the feed reads without joining comments
AUDIT_EXCERPT_LENGTH = 200


class CommentService:
    def __init__(
        self,
        store: Store,
        engine: Optional[AuthorizationEngine] = None,
        recorder: Optional[ActivityRecorder] = None,
    ):
        self.store = store
        self.engine = engine or AuthorizationEngine()
        self.recorder = recorder or ActivityRecorder()

    async def _visible_task(self, tx: StoreTransaction, task_id: str, actor_id: str) -> Tuple[Task, Project]:
        task = await tx.get_task(task_id)
        if task is None:
            raise NotFound("Task", task_id)
        project = await self.engine.require_project_access(tx, actor_id, task.project_id)
        return task, project

    async def _comment_in_context(
        self, tx: StoreTransaction, comment_id: str, actor_id: str,
    ) -> Tuple[TaskComment, Task, Project]:
        comment = await tx.get_comment(comment_id, for_update=True)
        if comment is None:
            raise NotFound("Comment", comment_id)
        task, project = await self._visible_task(tx, comment.task_id, actor_id)
        return comment, task, project

    def _record(self, tx, action: ActivityAction, comment: TaskComment, task: Task, project: Project, actor_id: str):
        self.recorder.record(
            tx,
            actor_id=actor_id,
            action=action,
            entity_type=EntityType.COMMENT,
            workspace_id=project.workspace_id,
            project_id=project.id,
            task_id=task.id,
            metadata={
                "comment_id": comment.id,
                "task_number": task.task_number,
                "excerpt": comment.content[:AUDIT_EXCERPT_LENGTH],
            },
        )

    async def create_comment(self, task_id: str, data: Union[CommentBody, Dict[str, Any]], actor_id: str) -> TaskComment:
        data = parse(CommentBody, data)

        async def _run(tx: StoreTransaction) -> TaskComment:
            task, project = await self._visible_task(tx, task_id, actor_id)
            now = utcnow()
            comment = TaskComment(
                id=new_uuid(),
                task_id=task.id,
                author_id=actor_id,
                content=data.content,
                created_at=now,
                updated_at=now,
            )
            tx.add(comment)
            await tx.flush()

            self._record(tx, ActivityAction.COMMENT_ADDED, comment, task, project, actor_id)
            tx.emit(events.comment_added(to_payload(CommentOut, comment), project.id, actor_id))
            return comment

        comment = await self.store.with_transaction(_run)
        logger.info(f"Comment {comment.id} added to task {task_id} by {actor_id}")
        return comment

    async def list_task_comments(self, task_id: str, actor_id: str) -> List[Tuple[TaskComment, User]]:
        async def _run(tx: StoreTransaction):
            await self._visible_task(tx, task_id, actor_id)
            return await tx.list_task_comments(task_id)

        return await self.store.read(_run)

    async def update_comment(
        self, comment_id: str, data: Union[CommentBody, Dict[str, Any]], actor_id: str,
    ) -> TaskComment:
        data = parse(CommentBody, data)

        async def _run(tx: StoreTransaction) -> TaskComment:
            comment, task, project = await self._comment_in_context(tx, comment_id, actor_id)
            if comment.author_id != actor_id:
                raise PermissionDenied()
            if comment.content == data.content:
                return comment

            comment.content = data.content
            comment.updated_at = utcnow()
            await tx.flush()
            self._record(tx, ActivityAction.COMMENT_UPDATED, comment, task, project, actor_id)
            tx.emit(events.comment_updated(to_payload(CommentOut, comment), project.id, actor_id))
            return comment

        return await self.store.with_transaction(_run)

    async def delete_comment(self, comment_id: str, actor_id: str) -> None:
        async def _run(tx: StoreTransaction) -> None:
            comment, task, project = await self._comment_in_context(tx, comment_id, actor_id)
            if comment.author_id != actor_id and not await self.engine.can_perform_project_action(
                tx, project.id, actor_id, ProjectPermission.MANAGE_TASKS, project=project,
            ):
                raise PermissionDenied()

            self._record(tx, ActivityAction.COMMENT_DELETED, comment, task, project, actor_id)
            await tx.delete(comment)
            await tx.flush()
            tx.emit(events.comment_deleted(comment.id, task.id, project.id, actor_id))

        await self.store.with_transaction(_run)
        logger.info(f"Comment {comment_id} deleted by {actor_id}")
