"""Role and share based authorization decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Optional, Protocol

from ..errors import Forbidden
from ..models import Role, Share, SharePermission, User
from .role_model import ROLE_MODEL, Action, ResourceClass, RoleModel

logger = logging.getLogger(__name__)

SHARE_PERMISSION_FOR_ACTION = MappingProxyType({
    Action.READ: SharePermission.READ,
    Action.CREATE: SharePermission.WRITE,
    Action.UPDATE: SharePermission.WRITE,
    Action.DELETE: SharePermission.DELETE,
    Action.RESHARE: SharePermission.RESHARE,
})


class ShareLookup(Protocol):
    def active_shares_for(self, file_id: str, actor: User, *, link_token: Optional[str] = None) -> List[Share]:
        ...


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    source: str  # "role", "share" or "none"
    share_id: Optional[str] = None


class AuthorizationEngine:
    """Decides whether an actor may perform an action; never mutates anything."""

    def __init__(self, shares: Optional[ShareLookup] = None, role_model: RoleModel = ROLE_MODEL) -> None:
        self.shares = shares
        self.role_model = role_model

    def decide(
        self,
        actor: User,
        resource_class: ResourceClass | str,
        action: Action | str,
        resource_id: Optional[str] = None,
        *,
        link_token: Optional[str] = None,
    ) -> AuthorizationDecision:
        resource_class = ResourceClass.parse(resource_class)
        action = Action.parse(action)
        if self.role_model.grants(actor.role, resource_class, action):
            return AuthorizationDecision(True, "role")
        if resource_id is None or self.shares is None:
            return AuthorizationDecision(False, "none")
        needed = SHARE_PERMISSION_FOR_ACTION[action]
        for share in self.shares.active_shares_for(resource_id, actor, link_token=link_token):
            if needed in share.permissions:
                return AuthorizationDecision(True, "share", share.id)
        return AuthorizationDecision(False, "none")

    def authorize(
        self,
        actor: User,
        resource_class: ResourceClass | str,
        action: Action | str,
        resource_id: Optional[str] = None,
        *,
        link_token: Optional[str] = None,
    ) -> bool:
        return self.decide(actor, resource_class, action, resource_id, link_token=link_token).allowed

    def require(
        self,
        actor: User,
        resource_class: ResourceClass | str,
        action: Action | str,
        resource_id: Optional[str] = None,
        *,
        link_token: Optional[str] = None,
    ) -> AuthorizationDecision:
        decision = self.decide(actor, resource_class, action, resource_id, link_token=link_token)
        if not decision.allowed:
            logger.info(
                "Denied %s:%s on %s for actor %s (%s)",
                resource_class,
                action,
                resource_id or "-",
                actor.id,
                actor.role.value,
            )
            raise Forbidden()
        return decision

    def can_act_on_actor(self, manager: User, target: User) -> bool:
        if self.role_model.rank_of(manager.role) <= self.role_model.rank_of(target.role):
            return False
        if manager.role is Role.OWNER:
            return True
        if manager.role is Role.ADMIN:
            return target.role is not Role.OWNER
        return False
