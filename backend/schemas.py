# schemas.py — Pydantic request/response models shared by services, events and routers
import re
from datetime import datetime
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator

from errors import ValidationFailure
from models import (
    ActivityAction, EntityType, InvitationStatus, ProjectRole, ProjectStatus, TaskPriority, TaskStatus,
    WorkspaceRole, WorkspaceStatus,
)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
PROJECT_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9]{0,9}$")

M = TypeVar("M", bound=BaseModel)


def parse(model: Type[M], data: Any) -> M:
    """Coerce a dict (or an instance) into model, raising ValidationFailure on bad input"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        errors = [
            {"loc": list(err.get("loc", [])), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
            for err in e.errors()
        ]
        raise ValidationFailure(f"Invalid {model.__name__}", {"errors": errors})


def coerce_enum(enum_cls, value, name: str):
    """Turn a raw filter value into enum_cls, raising ValidationFailure when it is not one"""
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailure(f"Invalid {name}: {value}")


def to_payload(schema: Type[BaseModel], obj: Any) -> dict:
    """Serialize an ORM row into a JSON-safe dict via its output schema"""
    return schema.model_validate(obj).model_dump(mode="json")


# ============================================================
# WORKSPACES
# ============================================================

class WorkspaceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: str) -> str:
        v = v.strip().lower()
        if not SLUG_PATTERN.match(v):
            raise ValueError("Slug may contain lowercase letters, digits and single hyphens")
        return v


class WorkspaceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = None
    status: Optional[WorkspaceStatus] = None

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return WorkspaceCreate.validate_slug(v)


class WorkspaceMemberAdd(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    role: WorkspaceRole = WorkspaceRole.MEMBER


class WorkspaceRoleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: WorkspaceRole


class InvitationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    role: WorkspaceRole = WorkspaceRole.MEMBER


# ============================================================
# PROJECTS
# ============================================================

class ProjectCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workspace_id: str
    name: str = Field(..., min_length=1, max_length=100)
    key: str = Field(..., min_length=1, max_length=10)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        v = v.strip().upper()
        if not PROJECT_KEY_PATTERN.match(v):
            raise ValueError("Key must start with a letter and contain only letters and digits")
        return v


class ProjectUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    key: Optional[str] = Field(None, min_length=1, max_length=10)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return ProjectCreate.validate_key(v)


class ProjectMemberAdd(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    role: ProjectRole = ProjectRole.DEVELOPER


class ProjectRoleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: ProjectRole


# ============================================================
# TASKS
# ============================================================

class TaskCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    estimated_hours: Optional[int] = Field(None, ge=0)
    due_date: Optional[datetime] = None


class TaskUpdate(BaseModel):
    """Partial update; only fields explicitly present are applied"""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    estimated_hours: Optional[int] = Field(None, ge=0)
    actual_hours: Optional[int] = Field(None, ge=0)
    due_date: Optional[datetime] = None

    @field_validator("title", "status", "priority")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class TaskAssign(BaseModel):
    model_config = ConfigDict(extra="forbid")

    assignee_id: Optional[str] = None


class TaskStatusChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str
    status: TaskStatus


class BulkStatusUpdate(BaseModel):
    updates: List[TaskStatusChange] = Field(..., max_length=500)


# ============================================================
# COMMENTS
# ============================================================

class CommentBody(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    content: str = Field(..., min_length=1, max_length=2000)


# ============================================================
# OUTPUT MODELS
# ============================================================

class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserOut(_Out):
    id: str
    email: str
    display_name: Optional[str] = None


class WorkspaceOut(_Out):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    owner_id: str
    status: WorkspaceStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkspaceMembershipOut(_Out):
    workspace: WorkspaceOut
    role: WorkspaceRole


class MemberOut(_Out):
    user_id: str
    role: str
    invited_by: Optional[str] = None
    joined_at: Optional[datetime] = None
    user: Optional[UserOut] = None

    @classmethod
    def build(cls, member, user=None) -> "MemberOut":
        return cls(
            user_id=member.user_id,
            role=getattr(member.role, "value", member.role),
            invited_by=member.invited_by,
            joined_at=member.joined_at,
            user=UserOut.model_validate(user) if user is not None else None,
        )


class InvitationOut(_Out):
    id: str
    workspace_id: str
    email: str
    role: WorkspaceRole
    token: str
    status: InvitationStatus
    invited_by: str
    expires_at: datetime
    created_at: Optional[datetime] = None


class ProjectOut(_Out):
    id: str
    workspace_id: str
    name: str
    key: str
    description: Optional[str] = None
    owner_id: str
    status: ProjectStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskOut(_Out):
    id: str
    project_id: str
    task_number: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assignee_id: Optional[str] = None
    reporter_id: str
    parent_task_id: Optional[str] = None
    estimated_hours: Optional[int] = None
    actual_hours: Optional[int] = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskDetailOut(_Out):
    task: TaskOut
    project: ProjectOut
    parent: Optional[TaskOut] = None
    subtasks: List[TaskOut] = []
    assignee: Optional[UserOut] = None
    reporter: Optional[UserOut] = None


class CommentOut(_Out):
    id: str
    task_id: str
    author_id: str
    content: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    author: Optional[UserOut] = None

    @classmethod
    def build(cls, comment, author=None) -> "CommentOut":
        out = cls.model_validate(comment)
        if author is not None:
            out.author = UserOut.model_validate(author)
        return out


class ActivityOut(_Out):
    id: str
    workspace_id: Optional[str] = None
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    actor_id: str
    action: ActivityAction
    entity_type: EntityType
    details: dict = Field(default_factory=dict, serialization_alias="metadata")
    sequence: int
    created_at: Optional[datetime] = None
