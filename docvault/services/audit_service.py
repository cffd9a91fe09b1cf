"""Append-only audit trail for authorization-gated mutations."""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..errors import DependencyFailure, DocVaultError
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import AuditRecord, ClientInfo, User, utcnow
from ..storage.document_store import AUDIT_RECORDS, DocumentStore, DuplicateKey
from .authorization import AuthorizationEngine
from .base import BaseService
from .role_model import Action, ResourceClass

logger = logging.getLogger(__name__)

AUDIT_TOPIC = "audit.records"
SYSTEM_ACTOR = "system"
REDACTED_KEYS = frozenset({"token", "share_token", "link_token", "invite_token"})
_RECORD_NAMESPACE = uuid.UUID("5b0f3c8e-8d1a-4f2b-9c39-6d0a1e7f4a21")


def token_reference(token: str) -> str:
    """Opaque, non-reversible stand-in for a bearer token."""
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def redact(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key in REDACTED_KEYS and value:
            cleaned[key] = token_reference(str(value))
        elif isinstance(value, Mapping):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


@dataclass
class AuditSink(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    bus: Optional[InMemoryBus] = None

    def record(
        self,
        org_id: str,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> AuditRecord:
        entry = self._entry(str(uuid.uuid4()), org_id, actor_id, action, resource_type, resource_id, metadata, client)
        self._write(entry)
        return entry

    def record_once(
        self,
        key: str,
        org_id: str,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Optional[Mapping[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[AuditRecord]:
        """Write at most one record per ``key``.

        The record id is derived from the key, so a retried or racing caller
        finds the first write and gets ``None`` back instead of a duplicate.
        """
        entry_id = str(uuid.uuid5(_RECORD_NAMESPACE, key))
        entry = self._entry(entry_id, org_id, actor_id, action, resource_type, resource_id, metadata, client)
        try:
            self._write(entry)
        except DuplicateKey:
            logger.debug("Audit record %s for %s already written", entry_id, key)
            return None
        return entry

    def query(
        self,
        actor: User,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        self.authorizer.require(actor, ResourceClass.AUDIT, Action.READ)
        if limit is not None and limit <= 0:
            return []
        records = [
            record
            for record in self.store.query(AUDIT_RECORDS, "org_id", actor.org_id)
            if (start is None or record.timestamp >= start) and (end is None or record.timestamp <= end)
        ]
        records.sort(key=lambda record: record.timestamp)
        if limit is not None:
            records = records[-limit:]
        return records

    def recent(self, org_id: str, limit: int = 10) -> List[AuditRecord]:
        records = sorted(self.store.query(AUDIT_RECORDS, "org_id", org_id), key=lambda record: record.timestamp)
        return list(reversed(records[-limit:])) if limit > 0 else []

    @staticmethod
    def _entry(entry_id, org_id, actor_id, action, resource_type, resource_id, metadata, client) -> AuditRecord:
        return AuditRecord(
            id=entry_id,
            org_id=org_id,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=redact(metadata or {}),
            timestamp=utcnow(),
            client=client or ClientInfo(),
        )

    def _write(self, entry: AuditRecord) -> None:
        try:
            self.store.insert(AUDIT_RECORDS, entry)
        except DuplicateKey:
            raise
        except DependencyFailure:
            logger.exception("Audit write failed for %s on %s/%s", entry.action, entry.resource_type, entry.resource_id)
            raise
        except (DocVaultError, OSError, RuntimeError) as exc:
            logger.exception("Audit write failed for %s on %s/%s", entry.action, entry.resource_type, entry.resource_id)
            raise DependencyFailure(f"Audit write failed: {exc}") from exc
        self.emit_metric("audit.records", 1, action=entry.action)
        if self.bus is not None:
            self.bus.publish(MessageEnvelope(topic=AUDIT_TOPIC, payload=serialize_record(entry)))


def serialize_record(record: AuditRecord) -> Dict[str, Any]:
    payload = asdict(record)
    payload["timestamp"] = record.timestamp.isoformat()
    return payload
