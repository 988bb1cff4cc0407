# store.py — Transactional access to workspaces, projects, tasks, memberships and activity
#
# Every read goes through an explicit method here; models carry no lazy relationships.
# Store.with_transaction() owns commit/rollback, bounded retry of transient failures,
# and hands queued domain events to the fan-out only after a successful commit.
import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import select, func, delete, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import ConflictError, DomainError, StorageUnavailable
from events import DomainEvent, EventFanout, NullFanout
from models import (
    ActivityLog, Invitation, InvitationStatus, Project, ProjectMember, ProjectTaskCounter,
    Task, TaskComment, User, Workspace, WorkspaceMember, WorkspaceRole,
)
from telemetry import span

logger = logging.getLogger("workhub.store")

STORE_MAX_ATTEMPTS = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
STORE_RETRY_BACKOFF = float(os.getenv("STORE_RETRY_BACKOFF", "0.05"))

# PostgreSQL serialization_failure / deadlock_detected
_TRANSIENT_SQLSTATES = {"40001", "40P01"}

T = TypeVar("T")


@dataclass
class TaskWithRelations:
    task: Task
    project: Project
    parent: Optional[Task] = None
    subtasks: List[Task] = field(default_factory=list)
    assignee: Optional[User] = None
    reporter: Optional[User] = None


class StoreTransaction:
    """Read/write access bound to one open transaction"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.events: List[DomainEvent] = []
        self._sequence = 0

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    def add(self, *instances) -> None:
        self.session.add_all(instances)

    async def delete(self, instance) -> None:
        await self.session.delete(instance)

    async def flush(self) -> None:
        await self.session.flush()

    def emit(self, event: DomainEvent) -> None:
        """Queue an event for publication once this transaction commits"""
        self.events.append(event)

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    async def _scalar(self, stmt):
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _all(self, stmt) -> list:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------
    # Users
    # ------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._scalar(select(User).where(User.id == user_id))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._scalar(select(User).where(func.lower(User.email) == email.lower()))

    # ------------------------------------------------------------
    # Workspaces & workspace membership
    # ------------------------------------------------------------

    async def get_workspace(self, workspace_id: str) -> Optional[Workspace]:
        return await self._scalar(select(Workspace).where(Workspace.id == workspace_id))

    async def get_workspace_by_slug(self, slug: str) -> Optional[Workspace]:
        return await self._scalar(select(Workspace).where(Workspace.slug == slug))

    async def list_workspaces_for_user(self, user_id: str) -> List[Tuple[Workspace, WorkspaceRole]]:
        stmt = (
            select(Workspace, WorkspaceMember.role)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .where(WorkspaceMember.user_id == user_id)
            .order_by(Workspace.created_at)
        )
        result = await self.session.execute(stmt)
        return [(ws, role) for ws, role in result.all()]

    async def get_workspace_membership(self, workspace_id: str, user_id: str) -> Optional[WorkspaceMember]:
        return await self._scalar(
            select(WorkspaceMember).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user_id,
            )
        )

    async def list_workspace_members(self, workspace_id: str) -> List[Tuple[WorkspaceMember, User]]:
        stmt = (
            select(WorkspaceMember, User)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == workspace_id)
            .order_by(WorkspaceMember.joined_at)
        )
        result = await self.session.execute(stmt)
        return [(m, u) for m, u in result.all()]

    # ------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------

    async def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        return await self._scalar(select(Invitation).where(Invitation.id == invitation_id))

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        return await self._scalar(select(Invitation).where(Invitation.token == token))

    async def list_invitations(self, workspace_id: str, status: Optional[InvitationStatus] = None) -> List[Invitation]:
        stmt = select(Invitation).where(Invitation.workspace_id == workspace_id)
        if status is not None:
            stmt = stmt.where(Invitation.status == status)
        return await self._all(stmt.order_by(Invitation.created_at))

    # ------------------------------------------------------------
    # Projects & project membership
    # ------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._scalar(select(Project).where(Project.id == project_id))

    async def get_project_by_key(self, workspace_id: str, key: str) -> Optional[Project]:
        return await self._scalar(
            select(Project).where(Project.workspace_id == workspace_id, Project.key == key)
        )

    async def list_projects(self, workspace_id: str, owner_id: Optional[str] = None) -> List[Project]:
        stmt = select(Project).where(Project.workspace_id == workspace_id)
        if owner_id is not None:
            stmt = stmt.where(Project.owner_id == owner_id)
        return await self._all(stmt.order_by(Project.created_at))

    async def get_project_membership(self, project_id: str, user_id: str) -> Optional[ProjectMember]:
        return await self._scalar(
            select(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )

    async def list_project_members(self, project_id: str) -> List[Tuple[ProjectMember, User]]:
        stmt = (
            select(ProjectMember, User)
            .join(User, User.id == ProjectMember.user_id)
            .where(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.joined_at)
        )
        result = await self.session.execute(stmt)
        return [(m, u) for m, u in result.all()]

    async def delete_project_memberships_in_workspace(self, workspace_id: str, user_id: str) -> int:
        """Drop a user's project memberships across one workspace. Returns rows removed."""
        project_ids = select(Project.id).where(Project.workspace_id == workspace_id).scalar_subquery()
        result = await self.session.execute(
            delete(ProjectMember).where(
                ProjectMember.user_id == user_id,
                ProjectMember.project_id.in_(project_ids),
            )
        )
        return result.rowcount or 0

    async def delete_project_rows(self, project_id: str) -> int:
        """Remove a project with its tasks, memberships and counter. Returns tasks removed."""
        await self.session.execute(
            update(Task).where(Task.project_id == project_id).values(parent_task_id=None)
        )
        task_ids = select(Task.id).where(Task.project_id == project_id).scalar_subquery()
        await self.session.execute(delete(TaskComment).where(TaskComment.task_id.in_(task_ids)))
        result = await self.session.execute(delete(Task).where(Task.project_id == project_id))
        await self.session.execute(delete(ProjectMember).where(ProjectMember.project_id == project_id))
        await self.session.execute(delete(ProjectTaskCounter).where(ProjectTaskCounter.project_id == project_id))
        await self.session.execute(delete(Project).where(Project.id == project_id))
        return result.rowcount or 0

    # ------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------

    async def get_task(self, task_id: str, for_update: bool = False) -> Optional[Task]:
        stmt = select(Task).where(Task.id == task_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._scalar(stmt)

    async def get_task_with_relations(self, task_id: str) -> Optional[TaskWithRelations]:
        task = await self.get_task(task_id)
        if task is None:
            return None
        project = await self.get_project(task.project_id)
        parent = await self.get_task(task.parent_task_id) if task.parent_task_id else None
        subtasks = await self._all(
            select(Task).where(Task.parent_task_id == task.id).order_by(Task.task_number)
        )
        assignee = await self.get_user(task.assignee_id) if task.assignee_id else None
        reporter = await self.get_user(task.reporter_id)
        return TaskWithRelations(
            task=task, project=project, parent=parent, subtasks=subtasks,
            assignee=assignee, reporter=reporter,
        )

    async def list_tasks(
        self,
        project_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        status=None,
        priority=None,
    ) -> List[Task]:
        stmt = select(Task)
        if project_id is not None:
            stmt = stmt.where(Task.project_id == project_id)
        if assignee_id is not None:
            stmt = stmt.where(Task.assignee_id == assignee_id)
        if status is not None:
            stmt = stmt.where(Task.status == status)
        if priority is not None:
            stmt = stmt.where(Task.priority == priority)
        return await self._all(stmt.order_by(Task.project_id, Task.task_number))

    async def count_subtasks(self, task_id: str) -> int:
        result = await self.session.execute(
            select(func.count(Task.id)).where(Task.parent_task_id == task_id)
        )
        return result.scalar() or 0

    # ------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------

    async def get_comment(self, comment_id: str, for_update: bool = False) -> Optional[TaskComment]:
        stmt = select(TaskComment).where(TaskComment.id == comment_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._scalar(stmt)

    async def list_task_comments(self, task_id: str) -> List[Tuple[TaskComment, User]]:
        """Comments on a task with their authors, newest first"""
        stmt = (
            select(TaskComment, User)
            .join(User, User.id == TaskComment.author_id)
            .where(TaskComment.task_id == task_id)
            .order_by(TaskComment.created_at.desc(), TaskComment.id)
        )
        result = await self.session.execute(stmt)
        return [(c, u) for c, u in result.all()]

    async def delete_task_comments(self, task_id: str) -> int:
        result = await self.session.execute(delete(TaskComment).where(TaskComment.task_id == task_id))
        return result.rowcount or 0

    async def allocate_task_number(self, project_id: str) -> int:
        """Reserve the next task number for a project inside the current transaction"""
        stmt = (
            select(ProjectTaskCounter)
            .where(ProjectTaskCounter.project_id == project_id)
            .with_for_update()
        )
        counter = await self._scalar(stmt)
        if counter is None:
            current = await self.session.execute(
                select(func.max(Task.task_number)).where(Task.project_id == project_id)
            )
            counter = ProjectTaskCounter(project_id=project_id, last_number=current.scalar() or 0)
            self.session.add(counter)
        counter.last_number += 1
        await self.session.flush()
        return counter.last_number

    # ------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------

    async def list_activity(
        self,
        workspace_id: Optional[str] = None,
        project_id: Optional[str] = None,
        task_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ActivityLog]:
        stmt = select(ActivityLog)
        if workspace_id is not None:
            stmt = stmt.where(ActivityLog.workspace_id == workspace_id)
        if project_id is not None:
            stmt = stmt.where(ActivityLog.project_id == project_id)
        if task_id is not None:
            stmt = stmt.where(ActivityLog.task_id == task_id)
        if actor_id is not None:
            stmt = stmt.where(ActivityLog.actor_id == actor_id)
        stmt = (
            stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.sequence.desc())
            .offset(offset)
            .limit(limit)
        )
        return await self._all(stmt)


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return True
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _TRANSIENT_SQLSTATES


def _is_task_number_race(exc: IntegrityError) -> bool:
    # SQLite names the columns, PostgreSQL names the constraint
    message = str(exc.orig)
    return "uq_task_project_number" in message or "tasks.task_number" in message


class Store:
    """Runs units of work in one transaction and publishes their events after commit"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        fanout: Optional[EventFanout] = None,
        max_attempts: int = STORE_MAX_ATTEMPTS,
        retry_backoff: float = STORE_RETRY_BACKOFF,
    ):
        self._session_factory = session_factory
        self.fanout = fanout or NullFanout()
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff

    async def with_transaction(self, fn: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        """Run fn in a transaction: commit on success, roll back on any error.

        Transient storage failures re-run fn from scratch, up to max_attempts.
        Domain errors propagate on the first occurrence.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with span("store.transaction", attempt=attempt):
                    async with self._session_factory() as session:
                        async with session.begin():
                            tx = StoreTransaction(session)
                            result = await fn(tx)
            except DomainError:
                raise
            except IntegrityError as e:
                # A unique-key race lost to a concurrent writer; re-running
                # re-reads the winner and fails with a domain error if it must.
                if attempt >= self.max_attempts:
                    logger.warning(f"Integrity conflict persisted after {attempt} attempts: {e.orig}")
                    if _is_task_number_race(e):
                        raise StorageUnavailable(attempts=attempt) from e
                    raise ConflictError("The change conflicts with existing data") from e
                logger.warning(f"Integrity conflict on attempt {attempt}, retrying: {e.orig}")
            except DBAPIError as e:
                if not _is_transient(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"Storage unavailable after {attempt} attempts: {e.orig}")
                    raise StorageUnavailable(attempts=attempt) from e
                logger.warning(f"Transient storage failure on attempt {attempt}, retrying: {e.orig}")
            else:
                if tx.events:
                    await self.fanout.publish_many(tx.events)
                return result
            await asyncio.sleep(self.retry_backoff * attempt)

    async def read(self, fn: Callable[[StoreTransaction], Awaitable[Any]]) -> Any:
        """Alias of with_transaction for read-only units of work"""
        return await self.with_transaction(fn)
