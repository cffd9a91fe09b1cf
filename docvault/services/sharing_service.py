"""Share registry: explicit grants that extend role-based access."""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, List, Optional

from ..errors import Forbidden, InvalidInput, NotFound
from ..models import (
    ClientInfo,
    DownloadReference,
    Role,
    Share,
    SharePermission,
    ShareType,
    User,
    UserStatus,
    utcnow,
)
from ..storage.document_store import SHARES, USERS, DocumentStore
from .audit_service import AuditSink, token_reference
from .authorization import AuthorizationEngine
from .base import BaseService
from .metadata_service import MetadataService
from .role_model import Action, ResourceClass

logger = logging.getLogger(__name__)

LINK_TOKEN_BYTES = 32

_FILE_ACTION_FOR_PERMISSION = {
    SharePermission.READ: Action.READ,
    SharePermission.WRITE: Action.UPDATE,
    SharePermission.DELETE: Action.DELETE,
}


@dataclass
class ShareRegistry(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    audit: AuditSink
    metadata: MetadataService
    clock: Callable[[], datetime] = field(default=utcnow, repr=False)

    def create_share(
        self,
        actor: User,
        file_id: str,
        share_type: ShareType | str,
        *,
        permissions: Iterable[SharePermission | str],
        target_role: Optional[Role | str] = None,
        target_actor_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        client: Optional[ClientInfo] = None,
    ) -> Share:
        record = self.metadata.load_file(actor.org_id, file_id)
        granted = SharePermission.parse_set(permissions)
        self._require_grant_rights(actor, file_id, granted)
        try:
            share_type = ShareType(share_type)
        except ValueError as exc:
            raise InvalidInput(f"Unknown share type: {share_type!r}") from exc
        now = self.clock()
        if expires_at is not None and expires_at <= now:
            raise InvalidInput("Share expiry must be in the future")

        role = None
        token = None
        if share_type == ShareType.ROLE:
            if target_actor_id:
                raise InvalidInput("A role grant cannot target an actor")
            role = Role.parse(target_role) if target_role else None
        elif share_type == ShareType.USER:
            if target_role:
                raise InvalidInput("A user grant cannot target a role")
            if target_actor_id:
                self._load_grantee(actor.org_id, target_actor_id)
        else:
            if target_role or target_actor_id:
                raise InvalidInput("A link grant carries no target")
            token = secrets.token_urlsafe(LINK_TOKEN_BYTES)

        share = Share(
            id=str(uuid.uuid4()),
            file_id=record.id,
            org_id=record.org_id,
            type=share_type,
            permissions=granted,
            created_by=actor.id,
            created_at=now,
            target_role=role,
            target_actor_id=target_actor_id or None,
            token=token,
            expires_at=expires_at,
        )
        self.store.insert(SHARES, share)
        metadata = {
            "shareId": share.id,
            "shareType": share_type.value,
            "permissions": sorted(permission.value for permission in granted),
            "targetRole": role.value if role else None,
            "targetActorId": share.target_actor_id,
            "expiresAt": expires_at.isoformat() if expires_at else None,
        }
        if token:
            metadata["token_ref"] = token_reference(token)
        self.audit.record(actor.org_id, actor.id, "file.shared", record.type.value, record.id, metadata, client)
        self.emit_event("share_granted", file_id=record.id, share_id=share.id, share_type=share_type.value)
        return share

    def active_shares_for(self, file_id: str, actor: User, *, link_token: Optional[str] = None) -> List[Share]:
        now = self.clock()
        return [
            share
            for share in self.store.query(SHARES, "file_id", file_id)
            if share.is_active(now) and _matches(share, actor, link_token)
        ]

    def list_shares(self, actor: User, file_id: str) -> List[Share]:
        self.metadata.load_file(actor.org_id, file_id)
        self.authorizer.require(actor, ResourceClass.SHARES, Action.READ, file_id)
        shares = [share for share in self.store.query(SHARES, "file_id", file_id) if share.revoked_at is None]
        shares.sort(key=lambda share: share.created_at)
        return shares

    def revoke_share(
        self,
        actor: User,
        file_id: str,
        share_id: str,
        client: Optional[ClientInfo] = None,
    ) -> Share:
        record = self.metadata.load_file(actor.org_id, file_id)
        share = self.store.get(SHARES, share_id)
        if share is None or share.file_id != file_id or share.org_id != actor.org_id:
            raise NotFound()
        if share.created_by != actor.id:
            self.authorizer.require(actor, ResourceClass.SHARES, Action.DELETE)
        if share.revoked_at is not None:
            return share
        revoked = replace(share, revoked_at=self.clock())
        self.store.update(SHARES, revoked)
        self.audit.record(
            actor.org_id,
            actor.id,
            "share.revoked",
            record.type.value,
            record.id,
            {"shareId": share.id, "shareType": share.type.value},
            client,
        )
        logger.info("Revoked share %s on file %s", share_id, file_id)
        self.emit_event("share_revoked", file_id=file_id, share_id=share_id)
        return revoked

    def resolve_link(self, token: str) -> Share:
        if not token:
            raise NotFound()
        for share in self.store.query(SHARES, "token", token):
            if share.type == ShareType.LINK and share.is_active(self.clock()):
                return share
        raise NotFound()

    def issue_link_download(self, token: str) -> DownloadReference:
        share = self.resolve_link(token)
        if SharePermission.READ not in share.permissions:
            raise Forbidden()
        record = self.metadata.load_file(share.org_id, share.file_id)
        return self.metadata.presign_download(record)

    # Helpers -----------------------------------------------------------------

    def _require_grant_rights(self, actor: User, file_id: str, granted: FrozenSet[SharePermission]) -> None:
        held = self._held_permissions(actor, file_id)
        if not (
            self.authorizer.authorize(actor, ResourceClass.SHARES, Action.CREATE)
            or SharePermission.RESHARE in held
        ):
            raise Forbidden()
        # A granter never hands out more than it can exercise on the file itself.
        for permission in granted:
            if permission is SharePermission.RESHARE:
                allowed = permission in held or self.authorizer.authorize(actor, ResourceClass.SHARES, Action.UPDATE)
            else:
                allowed = self.authorizer.authorize(
                    actor, ResourceClass.FILES, _FILE_ACTION_FOR_PERMISSION[permission], file_id
                )
            if not allowed:
                raise Forbidden()

    def _held_permissions(self, actor: User, file_id: str) -> FrozenSet[SharePermission]:
        held = set()
        for share in self.active_shares_for(file_id, actor):
            held.update(share.permissions)
        return frozenset(held)

    def _load_grantee(self, org_id: str, actor_id: str) -> User:
        grantee = self.store.get(USERS, actor_id)
        if grantee is None or grantee.org_id != org_id or grantee.status == UserStatus.SUSPENDED:
            raise NotFound()
        return grantee


def _matches(share: Share, actor: User, link_token: Optional[str]) -> bool:
    if share.type == ShareType.LINK:
        return bool(link_token) and hmac.compare_digest((share.token or "").encode(), link_token.encode())
    if share.org_id != actor.org_id:
        return False
    if share.type == ShareType.USER:
        return share.target_actor_id == actor.id
    return share.target_role == actor.role
