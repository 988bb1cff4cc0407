# routers/workspaces.py — Workspaces, their members and invitations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from auth import get_current_user, CurrentUser
from dependencies import Services, get_services
from schemas import (
    InvitationCreate, InvitationOut, MemberOut, WorkspaceCreate, WorkspaceMemberAdd,
    WorkspaceMembershipOut, WorkspaceOut, WorkspaceRoleUpdate, WorkspaceUpdate,
)

router = APIRouter(prefix="/api/v1/workspaces", tags=["Workspaces"])
invitations_router = APIRouter(prefix="/api/v1/invitations", tags=["Workspaces"])


class InviteResponse(BaseModel):
    kind: str
    membership: Optional[MemberOut] = None
    invitation: Optional[InvitationOut] = None


# ============================================================
# WORKSPACES
# ============================================================

@router.post("", response_model=WorkspaceOut, status_code=status.HTTP_201_CREATED)
async def create_workspace(
    body: WorkspaceCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.workspaces.create_workspace(body, user.id)


@router.get("", response_model=List[WorkspaceMembershipOut])
async def list_workspaces(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    rows = await services.workspaces.list_user_workspaces(user.id)
    return [
        WorkspaceMembershipOut(workspace=WorkspaceOut.model_validate(ws), role=role)
        for ws, role in rows
    ]


@router.get("/{workspace_id}", response_model=WorkspaceOut)
async def get_workspace(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.workspaces.get_workspace(workspace_id, user.id)


@router.patch("/{workspace_id}", response_model=WorkspaceOut)
async def update_workspace(
    workspace_id: str,
    body: WorkspaceUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.workspaces.update_workspace(workspace_id, body, user.id)


# ============================================================
# MEMBERS
# ============================================================

@router.get("/{workspace_id}/members", response_model=List[MemberOut])
async def list_members(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    rows = await services.workspaces.list_members(workspace_id, user.id)
    return [MemberOut.build(member, member_user) for member, member_user in rows]


@router.post("/{workspace_id}/members", response_model=MemberOut, status_code=status.HTTP_201_CREATED)
async def add_member(
    workspace_id: str,
    body: WorkspaceMemberAdd,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    member = await services.workspaces.add_member(workspace_id, body.user_id, body.role, user.id)
    return MemberOut.build(member)


@router.patch("/{workspace_id}/members/{user_id}", response_model=MemberOut)
async def update_member_role(
    workspace_id: str,
    user_id: str,
    body: WorkspaceRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    member = await services.workspaces.update_member_role(workspace_id, user_id, body.role, user.id)
    return MemberOut.build(member)


@router.delete("/{workspace_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    workspace_id: str,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.workspaces.remove_member(workspace_id, user_id, user.id)


# ============================================================
# INVITATIONS
# ============================================================

@router.post("/{workspace_id}/invitations", response_model=InviteResponse, status_code=status.HTTP_201_CREATED)
async def invite_member(
    workspace_id: str,
    body: InvitationCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    outcome = await services.workspaces.invite_member(workspace_id, body.email, body.role, user.id)
    return InviteResponse(
        kind=outcome.kind,
        membership=MemberOut.build(outcome.membership) if outcome.membership else None,
        invitation=InvitationOut.model_validate(outcome.invitation) if outcome.invitation else None,
    )


@router.get("/{workspace_id}/invitations", response_model=List[InvitationOut])
async def list_invitations(
    workspace_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.workspaces.list_invitations(workspace_id, user.id, status_filter)


@router.delete("/{workspace_id}/invitations/{invitation_id}", response_model=InvitationOut)
async def revoke_invitation(
    workspace_id: str,
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.workspaces.revoke_invitation(workspace_id, invitation_id, user.id)


@invitations_router.post("/{token}/accept", response_model=MemberOut)
async def accept_invitation(
    token: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    member = await services.workspaces.accept_invitation(token, user.id)
    return MemberOut.build(member)
