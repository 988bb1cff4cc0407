# routers/tasks.py — Task lifecycle endpoints
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from auth import get_current_user, CurrentUser
from dependencies import Services, get_services
from schemas import BulkStatusUpdate, TaskAssign, TaskCreate, TaskDetailOut, TaskOut, TaskUpdate

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.create_task(body, user.id)


@router.get("", response_model=List[TaskOut])
async def list_project_tasks(
    project_id: str = Query(...),
    status_filter: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = None,
    assignee_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.list_project_tasks(
        project_id, user.id, status=status_filter, priority=priority, assignee_id=assignee_id,
    )


@router.get("/mine", response_model=List[TaskOut])
async def list_my_tasks(
    status_filter: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.list_user_tasks(user.id, status=status_filter, priority=priority)


@router.post("/bulk-status", response_model=List[TaskOut])
async def bulk_update_status(
    body: BulkStatusUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Apply many status changes at once; tasks the caller cannot manage are skipped"""
    return await services.tasks.bulk_update_status(body.updates, user.id)


@router.get("/{task_id}", response_model=TaskDetailOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.get_task(task_id, user.id)


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.update_task(task_id, body, user.id)


@router.put("/{task_id}/assignee", response_model=TaskOut)
async def assign_task(
    task_id: str,
    body: TaskAssign,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.tasks.assign_task(task_id, body.assignee_id, user.id)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.tasks.delete_task(task_id, user.id)
