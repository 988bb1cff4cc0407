# routers/activity.py — Read-only activity feeds
from typing import List

from fastapi import APIRouter, Depends, Query

from activity import MAX_FEED_LIMIT
from auth import get_current_user, CurrentUser
from dependencies import Services, get_services
from schemas import ActivityOut

router = APIRouter(prefix="/api/v1/activity", tags=["Activity"])


@router.get("/me", response_model=List[ActivityOut])
async def my_activity(
    limit: int = Query(50, ge=1, le=MAX_FEED_LIMIT),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.activity.user_activity(user.id, limit, offset)


@router.get("/workspaces/{workspace_id}", response_model=List[ActivityOut])
async def workspace_activity(
    workspace_id: str,
    limit: int = Query(50, ge=1, le=MAX_FEED_LIMIT),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.activity.workspace_activity(workspace_id, user.id, limit, offset)


@router.get("/projects/{project_id}", response_model=List[ActivityOut])
async def project_activity(
    project_id: str,
    limit: int = Query(50, ge=1, le=MAX_FEED_LIMIT),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.activity.project_activity(project_id, user.id, limit, offset)


@router.get("/tasks/{task_id}", response_model=List[ActivityOut])
async def task_activity(
    task_id: str,
    limit: int = Query(50, ge=1, le=MAX_FEED_LIMIT),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.activity.task_activity(task_id, user.id, limit, offset)
