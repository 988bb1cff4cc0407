# routers/projects.py — Projects and project membership
from typing import List

from fastapi import APIRouter, Depends, Query, status

from auth import get_current_user, CurrentUser
from dependencies import Services, get_services
from schemas import (
    MemberOut, ProjectCreate, ProjectMemberAdd, ProjectOut, ProjectRoleUpdate, ProjectUpdate,
)

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


@router.post("", response_model=ProjectOut, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.projects.create_project(body, user.id)


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.projects.list_workspace_projects(workspace_id, user.id)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.projects.get_project(project_id, user.id)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.projects.update_project(project_id, body, user.id)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.projects.delete_project(project_id, user.id)


# --- members ---

@router.get("/{project_id}/members", response_model=List[MemberOut])
async def list_members(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    rows = await services.projects.list_members(project_id, user.id)
    return [MemberOut.build(member, member_user) for member, member_user in rows]


@router.post("/{project_id}/members", response_model=MemberOut, status_code=status.HTTP_201_CREATED)
async def add_member(
    project_id: str,
    body: ProjectMemberAdd,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    member = await services.projects.add_member(project_id, body.user_id, body.role, user.id)
    return MemberOut.build(member)


@router.patch("/{project_id}/members/{user_id}", response_model=MemberOut)
async def update_member_role(
    project_id: str,
    user_id: str,
    body: ProjectRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    member = await services.projects.update_member_role(project_id, user_id, body.role, user.id)
    return MemberOut.build(member)


@router.delete("/{project_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    project_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.projects.remove_member(project_id, user_id, user.id)
