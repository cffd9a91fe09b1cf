"""Multipart upload session coordinator.

Sessions move ``initiated -> parts-pending -> completed`` or end in
``aborted`` from either non-terminal state.  Every transition is a
conditional write on the session's ``revision`` so duplicate or racing
``complete`` calls resolve to a single winner; losers that find the session
completed with the same part tags report success.  Finalizing the File and
writing the completion audit record happen after the session transition and
are repeated by any later ``complete`` call until both have landed.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Dict, Mapping, Optional

from ..errors import Conflict, IncompleteUpload, InvalidInput, InvalidUploadSize, NotFound
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import (
    ClientInfo,
    FileRecord,
    FileStatus,
    Organization,
    PartReference,
    ResourceType,
    StorageAddress,
    UploadPlan,
    UploadSession,
    UploadState,
    User,
    utcnow,
)
from ..storage.document_store import FILES, UPLOAD_SESSIONS, ConditionFailed, DocumentStore
from ..storage.object_store import ObjectStorage, guarded
from .audit_service import AuditSink
from .authorization import AuthorizationEngine
from .base import BaseService
from .role_model import Action, ResourceClass
from .tenant_keys import derive_key, normalize_path

logger = logging.getLogger(__name__)


@dataclass
class UploadSessionCoordinator(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    audit: AuditSink
    objects: ObjectStorage
    bus: Optional[InMemoryBus] = None

    def initiate(
        self,
        org: Organization,
        actor: User,
        file_name: str,
        total_size: int,
        content_type: Optional[str] = None,
        parent_path: str = "/",
        client: Optional[ClientInfo] = None,
    ) -> UploadPlan:
        if org.id != actor.org_id:
            raise NotFound()
        self.authorizer.require(actor, ResourceClass.FILES, Action.CREATE)
        storage = self.config.object_storage
        part_count = self.part_count(total_size)
        path = normalize_path(parent_path)
        address = derive_key(org, file_name, path, shared_bucket=storage.shared_bucket)

        now = utcnow()
        record = FileRecord(
            id=str(uuid.uuid4()),
            org_id=org.id,
            name=file_name,
            path=path,
            type=ResourceType.FILE,
            bucket=address.bucket,
            storage_key=address.key,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            size_bytes=total_size,
            content_type=content_type or "application/octet-stream",
            status=FileStatus.PENDING,
        )
        self.store.insert(FILES, record)

        upload_id = guarded(
            "begin_multipart",
            self.objects.begin_multipart,
            address,
            content_type=record.content_type,
            kms_key_id=org.storage.kms_key_id,
        )
        session = UploadSession(
            id=str(uuid.uuid4()),
            org_id=org.id,
            file_id=record.id,
            created_by=actor.id,
            bucket=address.bucket,
            storage_key=address.key,
            total_size=total_size,
            part_size=storage.part_size,
            expected_parts=tuple(range(1, part_count + 1)),
            created_at=now,
            updated_at=now,
            upload_id=upload_id,
        )
        self.store.insert(UPLOAD_SESSIONS, session)

        expires_at = now + timedelta(seconds=storage.reference_ttl_seconds)
        parts = tuple(
            PartReference(
                part_number=number,
                url=guarded(
                    "presign_part",
                    self.objects.presign_part,
                    address,
                    upload_id,
                    number,
                    expires_in=storage.reference_ttl_seconds,
                ),
                expires_at=expires_at,
            )
            for number in session.expected_parts
        )
        self._transition(session, UploadState.PARTS_PENDING)

        self.audit.record(
            org.id,
            actor.id,
            "file.upload.initiated",
            ResourceType.FILE.value,
            record.id,
            {
                "fileName": file_name,
                "fileSize": total_size,
                "partCount": part_count,
                "sessionId": session.id,
            },
            client,
        )
        self.emit_metric("uploads.initiated", 1, org_id=org.id)
        return UploadPlan(
            session_id=session.id,
            file_id=record.id,
            bucket=address.bucket,
            storage_key=address.key,
            part_size=storage.part_size,
            parts=parts,
        )

    def complete(
        self,
        session_id: str,
        actor: User,
        reported_parts: Mapping[int | str, str],
        client: Optional[ClientInfo] = None,
    ) -> UploadSession:
        session = self._load(session_id, actor)
        self.authorizer.require(actor, ResourceClass.FILES, Action.CREATE, session.file_id)
        if session.state == UploadState.ABORTED:
            raise Conflict("Upload session was aborted")
        reported = _normalize_parts(reported_parts)
        missing = session.missing_parts(reported)
        if missing:
            raise IncompleteUpload(missing)
        tags = {number: reported[number].strip() for number in session.expected_parts}
        if session.state == UploadState.COMPLETED:
            return self._finalize(self._confirm_completed(session, tags), actor, client)

        address = StorageAddress(session.bucket, session.storage_key)
        guarded("complete_multipart", self.objects.complete_multipart, address, session.upload_id, tags)
        try:
            completed = self._transition(session, UploadState.COMPLETED, completed_parts=tags)
        except ConditionFailed:
            current = self.store.get(UPLOAD_SESSIONS, session.id)
            if current is not None and current.state == UploadState.COMPLETED:
                return self._finalize(self._confirm_completed(current, tags), actor, client)
            raise Conflict("Upload session changed state during completion")
        return self._finalize(completed, actor, client)

    def abort(self, session_id: str, actor: User, client: Optional[ClientInfo] = None) -> UploadSession:
        session = self._load(session_id, actor)
        self.authorizer.require(actor, ResourceClass.FILES, Action.CREATE, session.file_id)
        if session.state == UploadState.ABORTED:
            return session
        if session.state == UploadState.COMPLETED:
            raise Conflict("Upload session already completed")
        try:
            aborted = self._transition(session, UploadState.ABORTED)
        except ConditionFailed:
            current = self.store.get(UPLOAD_SESSIONS, session.id)
            if current is not None and current.state == UploadState.ABORTED:
                return current
            raise Conflict("Upload session already completed")

        record = self.store.get(FILES, session.file_id)
        if record is not None and not record.is_deleted:
            now = utcnow()
            self.store.update(
                FILES,
                replace(record, is_deleted=True, deleted_at=now, deleted_by=actor.id, updated_at=now),
                condition=lambda current: not current.is_deleted,
            )
        address = StorageAddress(session.bucket, session.storage_key)
        guarded("abort_multipart", self.objects.abort_multipart, address, session.upload_id)

        self.audit.record(
            session.org_id,
            actor.id,
            "file.upload.aborted",
            ResourceType.FILE.value,
            session.file_id,
            {"sessionId": session.id},
            client,
        )
        self._publish("uploads.aborted", aborted)
        return aborted

    def describe(self, session_id: str, actor: User) -> Dict[str, object]:
        session = self._load(session_id, actor)
        self.authorizer.require(actor, ResourceClass.FILES, Action.READ, session.file_id)
        return {
            "session_id": session.id,
            "file_id": session.file_id,
            "state": session.state.value,
            "bucket": session.bucket,
            "storage_key": session.storage_key,
            "total_size": session.total_size,
            "part_size": session.part_size,
            "part_count": len(session.expected_parts),
            "completed_parts": sorted(session.completed_parts),
            "missing_parts": list(session.missing_parts(session.completed_parts)),
            "updated_at": session.updated_at.isoformat(),
        }

    def part_count(self, total_size: int) -> int:
        storage = self.config.object_storage
        if total_size <= 0:
            raise InvalidUploadSize("Upload size must be greater than zero")
        count = math.ceil(total_size / storage.part_size)
        if count > storage.max_part_count:
            raise InvalidUploadSize(
                f"Upload needs {count} parts; the maximum is {storage.max_part_count}"
            )
        return count

    # Helpers -----------------------------------------------------------------

    def _load(self, session_id: str, actor: User) -> UploadSession:
        session = self.store.get(UPLOAD_SESSIONS, session_id)
        if session is None or session.org_id != actor.org_id:
            raise NotFound()
        return session

    def _transition(self, session: UploadSession, state: UploadState, **changes) -> UploadSession:
        expected_revision = session.revision
        updated = replace(session, state=state, revision=expected_revision + 1, updated_at=utcnow(), **changes)
        self.store.update(
            UPLOAD_SESSIONS,
            updated,
            condition=lambda current: current.revision == expected_revision and not current.state.is_terminal,
        )
        logger.debug("Upload session %s: %s -> %s", session.id, session.state.value, state.value)
        return updated

    def _finalize(self, session: UploadSession, actor: User, client: Optional[ClientInfo]) -> UploadSession:
        # Every caller that observes the session completed passes through here;
        # each step is a no-op once done.
        record = self.store.get(FILES, session.file_id)
        if record is not None and record.status == FileStatus.PENDING:
            finalized = replace(record, status=FileStatus.FINALIZED, size_bytes=session.total_size, updated_at=utcnow())
            try:
                self.store.update(FILES, finalized, condition=lambda current: current.status == FileStatus.PENDING)
            except ConditionFailed:
                logger.debug("File %s finalized by a concurrent completion", session.file_id)

        entry = self.audit.record_once(
            f"upload-completed:{session.id}",
            session.org_id,
            actor.id,
            "file.upload.completed",
            ResourceType.FILE.value,
            session.file_id,
            {"sessionId": session.id, "partCount": len(session.completed_parts), "fileSize": session.total_size},
            client,
        )
        if entry is not None:
            self._publish("uploads.completed", session)
            self.emit_metric("uploads.completed", 1, org_id=session.org_id)
        return session

    @staticmethod
    def _confirm_completed(session: UploadSession, tags: Dict[int, str]) -> UploadSession:
        if session.completed_parts != tags:
            raise Conflict("Upload session already completed with different parts")
        return session

    def _publish(self, topic: str, session: UploadSession) -> None:
        if self.bus is None:
            return
        payload = {
            "session_id": session.id,
            "file_id": session.file_id,
            "org_id": session.org_id,
            "state": session.state.value,
        }
        self.bus.publish(MessageEnvelope(topic=topic, payload=payload))


def _normalize_parts(reported_parts: Mapping[int | str, str]) -> Dict[int, str]:
    parts: Dict[int, str] = {}
    for number, tag in (reported_parts or {}).items():
        try:
            parts[int(number)] = str(tag or "")
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Invalid part number: {number!r}") from exc
    return parts
