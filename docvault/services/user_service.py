"""Organization membership: invitations, role changes and removal."""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import List, Optional, Tuple

from ..errors import Conflict, Forbidden, InvalidInput, NotFound
from ..models import ClientInfo, Role, User, UserStatus, utcnow
from ..storage.document_store import USERS, DocumentStore
from .audit_service import AuditSink
from .authorization import AuthorizationEngine
from .base import BaseService
from .role_model import Action, ResourceClass

logger = logging.getLogger(__name__)

INVITABLE_ROLES = (Role.ADMIN, Role.MANAGER, Role.MEMBER, Role.GUEST)
INVITE_TOKEN_BYTES = 32


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class UserService(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    audit: AuditSink

    def invite(
        self,
        actor: User,
        email: str,
        role: Role | str,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[User, str]:
        """Create an invited member and return it with the plaintext invite token.

        Only a digest of the token is stored; the plaintext leaves the core
        exactly once, for delivery.
        """
        self.authorizer.require(actor, ResourceClass.USERS, Action.CREATE)
        if not email or "@" not in email:
            raise InvalidInput("A valid email is required")
        role = Role.parse(role)
        if role not in INVITABLE_ROLES:
            raise InvalidInput(f"Role {role.value} cannot be assigned by invitation")
        model = self.authorizer.role_model
        if model.rank_of(role) > model.rank_of(actor.role):
            raise Forbidden()
        email = email.strip()
        if self.store.query(USERS, "org_email", (actor.org_id, email.lower())):
            raise Conflict("User already exists in this organization")

        token = secrets.token_urlsafe(INVITE_TOKEN_BYTES)
        now = utcnow()
        invited = User(
            id=str(uuid.uuid4()),
            org_id=actor.org_id,
            email=email,
            role=role,
            status=UserStatus.INVITED,
            created_at=now,
            invite_token=_digest(token),
            invite_expires_at=now + timedelta(days=self.config.auth.invite_ttl_days),
        )
        self.store.insert(USERS, invited)
        self.audit.record(
            actor.org_id,
            actor.id,
            "user.invited",
            "user",
            invited.id,
            {"email": email, "role": role.value, "invitedBy": actor.email},
            client,
        )
        self.emit_event("user_invited", org_id=actor.org_id, user_id=invited.id)
        return invited, token

    def accept_invite(self, token: str, subject: str, client: Optional[ClientInfo] = None) -> User:
        if not token or not subject:
            raise InvalidInput("Invite token and identity subject are required")
        matches = self.store.query(USERS, "invite_token", _digest(token))
        invited = matches[0] if matches else None
        now = utcnow()
        if (
            invited is None
            or invited.status != UserStatus.INVITED
            or invited.invite_expires_at is None
            or invited.invite_expires_at <= now
        ):
            raise NotFound()
        if self.store.query(USERS, "subject", subject):
            raise Conflict("This identity is already registered")
        active = replace(
            invited,
            status=UserStatus.ACTIVE,
            subject=subject,
            invite_token=None,
            invite_expires_at=None,
            last_login_at=now,
        )
        self.store.update(
            USERS,
            active,
            condition=lambda current: current.status == UserStatus.INVITED and current.invite_token == invited.invite_token,
        )
        self.audit.record(active.org_id, active.id, "user.invite.accepted", "user", active.id, {"email": active.email}, client)
        return active

    def list_users(self, actor: User) -> List[User]:
        self.authorizer.require(actor, ResourceClass.USERS, Action.READ)
        users = self.store.query(USERS, "org_id", actor.org_id)
        users.sort(key=lambda user: user.created_at)
        return users

    def change_role(
        self,
        actor: User,
        target_id: str,
        role: Role | str,
        client: Optional[ClientInfo] = None,
    ) -> User:
        self.authorizer.require(actor, ResourceClass.USERS, Action.UPDATE)
        target = self._load_member(actor.org_id, target_id)
        new_role = Role.parse(role)
        if not self.authorizer.can_act_on_actor(actor, target):
            raise Forbidden()
        model = self.authorizer.role_model
        if actor.role is not Role.OWNER and model.rank_of(new_role) >= model.rank_of(actor.role):
            raise Forbidden()
        if new_role is target.role:
            return target
        updated = replace(target, role=new_role)
        self.store.update(USERS, updated)
        self.audit.record(
            actor.org_id,
            actor.id,
            "user.role.updated",
            "user",
            target.id,
            {"newRole": new_role.value, "previousRole": target.role.value, "targetUser": target.email},
            client,
        )
        return updated

    def remove_user(self, actor: User, target_id: str, client: Optional[ClientInfo] = None) -> User:
        self.authorizer.require(actor, ResourceClass.USERS, Action.DELETE)
        target = self._load_member(actor.org_id, target_id)
        if not self.authorizer.can_act_on_actor(actor, target):
            raise Forbidden()
        if target.status == UserStatus.SUSPENDED:
            return target
        suspended = replace(target, status=UserStatus.SUSPENDED, invite_token=None, invite_expires_at=None)
        self.store.update(USERS, suspended)
        self.audit.record(
            actor.org_id,
            actor.id,
            "user.removed",
            "user",
            target.id,
            {"targetUser": target.email},
            client,
        )
        logger.info("Suspended user %s in org %s", target.id, actor.org_id)
        return suspended

    def _load_member(self, org_id: str, user_id: str) -> User:
        user = self.store.get(USERS, user_id)
        if user is None or user.org_id != org_id:
            raise NotFound()
        return user
