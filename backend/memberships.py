# memberships.py — Shared membership mutation for workspaces and projects
#
# Both scopes follow the same shape: the scope owner's membership is frozen,
# checked against the immutable owner_id before any permission lookup; every
# change is audited in the same transaction as the row it touches.
import logging
from typing import Any, Dict, List, Optional, Tuple

from activity import ActivityRecorder
from errors import ConflictError, InvariantViolation, NotFound, ValidationFailure
from models import ActivityAction, EntityType, User
from rbac import AuthorizationEngine, Requirement, Scope
from store import Store, StoreTransaction

logger = logging.getLogger("workhub.memberships")


class MembershipService:
    """Base for services that own a scope with members.

    Subclasses set the class attributes and implement the scope hooks below.
    """

    scope_label = "Scope"
    role_enum = None
    manage_requirement: Requirement = None
    view_requirement: Requirement = None
    reserved_role = None  # role nobody may be given through membership mutation

    def __init__(
        self,
        store: Store,
        engine: Optional[AuthorizationEngine] = None,
        recorder: Optional[ActivityRecorder] = None,
    ):
        self.store = store
        self.engine = engine or AuthorizationEngine()
        self.recorder = recorder or ActivityRecorder()

    # --- hooks ---

    def _scope(self, scope_id: str) -> Scope:
        raise NotImplementedError

    async def _load_scope(self, tx: StoreTransaction, scope_id: str):
        raise NotImplementedError

    async def _get_membership(self, tx: StoreTransaction, scope_id: str, user_id: str):
        raise NotImplementedError

    async def _list_memberships(self, tx: StoreTransaction, scope_id: str) -> List[Tuple[Any, User]]:
        raise NotImplementedError

    def _new_membership(self, scope, user_id: str, role, invited_by: Optional[str]):
        raise NotImplementedError

    def _audit_ids(self, scope) -> Dict[str, Optional[str]]:
        raise NotImplementedError

    async def _check_candidate(self, tx: StoreTransaction, scope, user_id: str) -> None:
        """Extra eligibility rules for a new member; none by default"""

    async def _check_removal(self, tx: StoreTransaction, scope, user_id: str) -> None:
        """Extra conditions before a member may leave; none by default"""

    async def _after_remove(self, tx: StoreTransaction, scope, user_id: str) -> Dict[str, Any]:
        return {}

    # --- shared helpers ---

    def _coerce_role(self, role):
        try:
            return self.role_enum(role)
        except ValueError:
            raise ValidationFailure(f"Invalid {self.scope_label.lower()} role: {role}")

    async def _require_scope(self, tx: StoreTransaction, scope_id: str):
        scope = await self._load_scope(tx, scope_id)
        if scope is None:
            raise NotFound(self.scope_label, scope_id)
        return scope

    def _guard_owner(self, scope, user_id: str) -> None:
        if user_id == scope.owner_id:
            raise InvariantViolation(f"The {self.scope_label.lower()} owner's membership cannot be changed")

    def _guard_reserved_role(self, role) -> None:
        if self.reserved_role is not None and role == self.reserved_role:
            raise InvariantViolation(f"The {role.value} role cannot be assigned")

    @staticmethod
    async def _require_user(tx: StoreTransaction, user_id: str) -> User:
        user = await tx.get_user(user_id)
        if user is None:
            raise NotFound("User", user_id)
        return user

    def _record(self, tx: StoreTransaction, scope, actor_id: str, action: ActivityAction, **metadata):
        return self.recorder.record(
            tx,
            actor_id=actor_id,
            action=action,
            entity_type=EntityType.MEMBERSHIP,
            metadata={"scope": self.scope_label.lower(), **metadata},
            **self._audit_ids(scope),
        )

    async def _insert_membership(
        self, tx: StoreTransaction, scope, user_id: str, role, actor_id: str,
        invited_by: Optional[str] = None, **metadata,
    ):
        """Insert a membership row and its audit entry; caller has checked permissions"""
        if await self._get_membership(tx, scope.id, user_id) is not None:
            raise ConflictError(f"User is already a member of this {self.scope_label.lower()}", {"user_id": user_id})
        member = self._new_membership(scope, user_id, role, invited_by or actor_id)
        tx.add(member)
        await tx.flush()
        self._record(tx, scope, actor_id, ActivityAction.MEMBER_ADDED, user_id=user_id, role=role, **metadata)
        return member

    # --- operations ---

    async def add_member(self, scope_id: str, user_id: str, role, actor_id: str):
        role = self._coerce_role(role)
        self._guard_reserved_role(role)

        async def _run(tx: StoreTransaction):
            scope = await self._require_scope(tx, scope_id)
            await self.engine.require(tx, actor_id, self._scope(scope_id), self.manage_requirement)
            await self._require_user(tx, user_id)
            await self._check_candidate(tx, scope, user_id)
            return await self._insert_membership(tx, scope, user_id, role, actor_id)

        member = await self.store.with_transaction(_run)
        logger.info(f"{self.scope_label} {scope_id}: {user_id} added as {role.value} by {actor_id}")
        return member

    async def update_member_role(self, scope_id: str, user_id: str, role, actor_id: str):
        role = self._coerce_role(role)

        async def _run(tx: StoreTransaction):
            scope = await self._require_scope(tx, scope_id)
            # owner first: no actor, not even the owner, gets past this
            self._guard_owner(scope, user_id)
            self._guard_reserved_role(role)
            await self.engine.require(tx, actor_id, self._scope(scope_id), self.manage_requirement)

            member = await self._get_membership(tx, scope.id, user_id)
            if member is None:
                raise NotFound("Membership", user_id)
            previous = self.role_enum(member.role)
            if previous == role:
                return member
            member.role = role
            await tx.flush()
            self._record(tx, scope, actor_id, ActivityAction.MEMBER_ROLE_CHANGED, user_id=user_id, **{"from": previous, "to": role})
            return member

        return await self.store.with_transaction(_run)

    async def remove_member(self, scope_id: str, user_id: str, actor_id: str) -> None:
        """Remove a member. Members may always remove themselves."""

        async def _run(tx: StoreTransaction):
            scope = await self._require_scope(tx, scope_id)
            self._guard_owner(scope, user_id)
            if user_id != actor_id:
                await self.engine.require(tx, actor_id, self._scope(scope_id), self.manage_requirement)

            member = await self._get_membership(tx, scope.id, user_id)
            if member is None:
                raise NotFound("Membership", user_id)
            await self._check_removal(tx, scope, user_id)
            role = self.role_enum(member.role)
            await tx.delete(member)
            extra = await self._after_remove(tx, scope, user_id)
            await tx.flush()
            self._record(tx, scope, actor_id, ActivityAction.MEMBER_REMOVED, user_id=user_id, role=role, **extra)

        await self.store.with_transaction(_run)
        logger.info(f"{self.scope_label} {scope_id}: {user_id} removed by {actor_id}")

    async def list_members(self, scope_id: str, actor_id: str) -> List[Tuple[Any, User]]:
        async def _run(tx: StoreTransaction):
            await self._require_scope(tx, scope_id)
            await self.engine.require(tx, actor_id, self._scope(scope_id), self.view_requirement)
            return await self._list_memberships(tx, scope_id)

        return await self.store.read(_run)

