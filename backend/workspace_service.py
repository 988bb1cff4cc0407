# workspace_service.py — Workspace lifecycle, membership and invitations
import os
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

import events
from errors import ConflictError, InvariantViolation, NotFound, PermissionDenied
from memberships import MembershipService
from models import (
    ActivityAction, EntityType, Invitation, InvitationStatus, Workspace, WorkspaceMember,
    WorkspaceRole, WorkspaceStatus, as_utc, diff_fields, new_uuid, utcnow,
)
from rbac import Scope, WorkspacePermission
from schemas import InvitationCreate, WorkspaceCreate, WorkspaceOut, WorkspaceUpdate, coerce_enum, parse, to_payload
from store import StoreTransaction

logger = logging.getLogger("workhub.workspaces")

INVITATION_TTL_HOURS = int(os.getenv("INVITATION_TTL_HOURS", "168"))


@dataclass
class InviteOutcome:
    """Either a membership (the email belonged to a known user) or a pending invitation"""
    membership: Optional[WorkspaceMember] = None
    invitation: Optional[Invitation] = None

    @property
    def kind(self) -> str:
        return "member_added" if self.membership is not None else "invitation_created"


class WorkspaceService(MembershipService):
    scope_label = "Workspace"
    role_enum = WorkspaceRole
    manage_requirement = WorkspacePermission.MANAGE_MEMBERS
    view_requirement = WorkspacePermission.VIEW_WORKSPACE
    reserved_role = WorkspaceRole.OWNER

    # --- membership hooks ---

    def _scope(self, scope_id: str) -> Scope:
        return Scope.workspace(scope_id)

    async def _load_scope(self, tx: StoreTransaction, scope_id: str):
        return await tx.get_workspace(scope_id)

    async def _get_membership(self, tx: StoreTransaction, scope_id: str, user_id: str):
        return await tx.get_workspace_membership(scope_id, user_id)

    async def _list_memberships(self, tx: StoreTransaction, scope_id: str):
        return await tx.list_workspace_members(scope_id)

    def _new_membership(self, scope, user_id: str, role, invited_by: Optional[str]):
        return WorkspaceMember(
            id=new_uuid(), workspace_id=scope.id, user_id=user_id, role=role,
            invited_by=invited_by, joined_at=utcnow(),
        )

    def _audit_ids(self, scope) -> Dict[str, Optional[str]]:
        return {"workspace_id": scope.id}

    async def _check_removal(self, tx: StoreTransaction, scope, user_id: str) -> None:
        # a project owner's lead membership is frozen, so they cannot leave around it
        owned = await tx.list_projects(scope.id, owner_id=user_id)
        if owned:
            raise InvariantViolation(
                "User still owns projects in this workspace; delete them first",
                {"user_id": user_id, "project_ids": [p.id for p in owned]},
            )

    async def _after_remove(self, tx: StoreTransaction, scope, user_id: str) -> Dict[str, Any]:
        # leaving a workspace also drops project access granted inside it
        removed = await tx.delete_project_memberships_in_workspace(scope.id, user_id)
        return {"project_memberships_removed": removed} if removed else {}

    # --- workspaces ---

    async def create_workspace(self, data: Union[WorkspaceCreate, Dict[str, Any]], actor_id: str) -> Workspace:
        data = parse(WorkspaceCreate, data)

        async def _run(tx: StoreTransaction) -> Workspace:
            await self._require_user(tx, actor_id)
            if await tx.get_workspace_by_slug(data.slug) is not None:
                raise ConflictError("Workspace slug already exists", {"slug": data.slug})

            now = utcnow()
            workspace = Workspace(
                id=new_uuid(),
                name=data.name,
                slug=data.slug,
                description=data.description,
                owner_id=actor_id,
                status=WorkspaceStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
            tx.add(workspace)
            await tx.flush()
            tx.add(self._new_membership(workspace, actor_id, WorkspaceRole.OWNER, None))
            await tx.flush()

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.WORKSPACE_CREATED,
                entity_type=EntityType.WORKSPACE,
                workspace_id=workspace.id,
                metadata={"name": workspace.name, "slug": workspace.slug},
            )
            return workspace

        workspace = await self.store.with_transaction(_run)
        logger.info(f"Workspace {workspace.slug} created by {actor_id}")
        return workspace

    async def list_user_workspaces(self, actor_id: str) -> List[Tuple[Workspace, WorkspaceRole]]:
        async def _run(tx: StoreTransaction):
            return await tx.list_workspaces_for_user(actor_id)

        return await self.store.read(_run)

    async def get_workspace(self, workspace_id: str, actor_id: str) -> Workspace:
        async def _run(tx: StoreTransaction):
            return await self.engine.require_workspace(tx, actor_id, workspace_id, WorkspacePermission.VIEW_WORKSPACE)

        return await self.store.read(_run)

    async def update_workspace(
        self, workspace_id: str, patch: Union[WorkspaceUpdate, Dict[str, Any]], actor_id: str,
    ) -> Workspace:
        patch = parse(WorkspaceUpdate, patch)
        requested = patch.model_dump(exclude_unset=True)

        async def _run(tx: StoreTransaction) -> Workspace:
            workspace = await self.engine.require_workspace(tx, actor_id, workspace_id, WorkspaceRole.ADMIN)
            changes = diff_fields(workspace, requested)
            if not changes:
                return workspace
            if "slug" in changes and await tx.get_workspace_by_slug(changes["slug"]) is not None:
                raise ConflictError("Workspace slug already exists", {"slug": changes["slug"]})

            for name, value in changes.items():
                setattr(workspace, name, value)
            workspace.updated_at = utcnow()
            await tx.flush()

            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.WORKSPACE_UPDATED,
                entity_type=EntityType.WORKSPACE,
                workspace_id=workspace.id,
                metadata={"changed_fields": list(changes)},
            )
            tx.emit(events.workspace_updated(to_payload(WorkspaceOut, workspace), actor_id))
            return workspace

        return await self.store.with_transaction(_run)

    # --- invitations ---

    async def invite_member(self, workspace_id: str, email: str, role, actor_id: str) -> InviteOutcome:
        """Add a known user straight away; otherwise leave a pending invitation for the email"""
        data = parse(InvitationCreate, {"email": email, "role": role})
        self._guard_reserved_role(data.role)

        async def _run(tx: StoreTransaction) -> InviteOutcome:
            workspace = await self._require_scope(tx, workspace_id)
            await self.engine.require(tx, actor_id, self._scope(workspace_id), self.manage_requirement)

            user = await tx.get_user_by_email(data.email)
            if user is not None:
                member = await self._insert_membership(
                    tx, workspace, user.id, data.role, actor_id, email=data.email,
                )
                return InviteOutcome(membership=member)

            # re-inviting issues a fresh token; earlier pending ones stay usable
            now = utcnow()
            invitation = Invitation(
                id=new_uuid(),
                workspace_id=workspace.id,
                email=data.email.lower(),
                role=data.role,
                token=secrets.token_urlsafe(32),
                status=InvitationStatus.PENDING,
                invited_by=actor_id,
                expires_at=now + timedelta(hours=INVITATION_TTL_HOURS),
                created_at=now,
            )
            tx.add(invitation)
            await tx.flush()
            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.INVITATION_CREATED,
                entity_type=EntityType.INVITATION,
                workspace_id=workspace.id,
                metadata={"invitation_id": invitation.id, "email": invitation.email, "role": data.role},
            )
            return InviteOutcome(invitation=invitation)

        outcome = await self.store.with_transaction(_run)
        logger.info(f"Workspace {workspace_id}: invite for {data.email} by {actor_id} -> {outcome.kind}")
        return outcome

    async def accept_invitation(self, token: str, actor_id: str) -> WorkspaceMember:
        async def _run(tx: StoreTransaction) -> WorkspaceMember:
            invitation = await tx.get_invitation_by_token(token)
            if invitation is None:
                raise NotFound("Invitation")
            if invitation.status != InvitationStatus.PENDING:
                raise InvariantViolation(f"Invitation is {InvitationStatus(invitation.status).value}")
            if as_utc(invitation.expires_at) <= utcnow():
                raise InvariantViolation("Invitation has expired")

            user = await self._require_user(tx, actor_id)
            if user.email.lower() != invitation.email.lower():
                raise PermissionDenied()

            workspace = await self._require_scope(tx, invitation.workspace_id)
            member = await tx.get_workspace_membership(workspace.id, actor_id)
            if member is None:
                member = self._new_membership(workspace, actor_id, invitation.role, invitation.invited_by)
                tx.add(member)

            invitation.status = InvitationStatus.ACCEPTED
            invitation.accepted_at = utcnow()
            await tx.flush()
            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.INVITATION_ACCEPTED,
                entity_type=EntityType.INVITATION,
                workspace_id=workspace.id,
                metadata={"invitation_id": invitation.id, "role": member.role},
            )
            return member

        return await self.store.with_transaction(_run)

    async def list_invitations(self, workspace_id: str, actor_id: str, status=None) -> List[Invitation]:
        status = coerce_enum(InvitationStatus, status, "status")

        async def _run(tx: StoreTransaction):
            await self._require_scope(tx, workspace_id)
            await self.engine.require(tx, actor_id, self._scope(workspace_id), self.manage_requirement)
            return await tx.list_invitations(workspace_id, status)

        return await self.store.read(_run)

    async def revoke_invitation(self, workspace_id: str, invitation_id: str, actor_id: str) -> Invitation:
        async def _run(tx: StoreTransaction) -> Invitation:
            await self._require_scope(tx, workspace_id)
            await self.engine.require(tx, actor_id, self._scope(workspace_id), self.manage_requirement)
            invitation = await tx.get_invitation(invitation_id)
            if invitation is None or invitation.workspace_id != workspace_id:
                raise NotFound("Invitation", invitation_id)
            if invitation.status != InvitationStatus.PENDING:
                raise InvariantViolation(f"Invitation is {InvitationStatus(invitation.status).value}")

            invitation.status = InvitationStatus.REVOKED
            await tx.flush()
            self.recorder.record(
                tx,
                actor_id=actor_id,
                action=ActivityAction.INVITATION_REVOKED,
                entity_type=EntityType.INVITATION,
                workspace_id=workspace_id,
                metadata={"invitation_id": invitation.id, "email": invitation.email},
            )
            return invitation

        return await self.store.with_transaction(_run)
