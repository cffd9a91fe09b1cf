"""File and folder records with optimistic versioning."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Dict, List, Optional

from ..errors import Conflict, InvalidInput, NotFound
from ..models import (
    ClientInfo,
    DownloadReference,
    FileRecord,
    FileStatus,
    Organization,
    ResourceType,
    StorageAddress,
    User,
    utcnow,
)
from ..storage.document_store import FILES, ORGANIZATIONS, ConditionFailed, DocumentStore
from ..storage.object_store import ObjectStorage, guarded
from .audit_service import AuditSink
from .authorization import AuthorizationEngine
from .base import BaseService
from .role_model import Action, ResourceClass
from .tenant_keys import derive_key, normalize_path

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("name", "size_bytes", "content_type", "checksum")


@dataclass
class MetadataService(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    audit: AuditSink
    objects: ObjectStorage

    # Lookups -----------------------------------------------------------------

    def load_org(self, org_id: str) -> Organization:
        org = self.store.get(ORGANIZATIONS, org_id)
        if org is None or org.deleted_at is not None:
            raise NotFound()
        return org

    def load_file(self, org_id: str, file_id: str, *, include_deleted: bool = False) -> FileRecord:
        """Fetch a record owned by ``org_id``; anything else is indistinguishable from absent."""
        record = self.store.get(FILES, file_id)
        if record is None or record.org_id != org_id:
            raise NotFound()
        if record.is_deleted and not include_deleted:
            raise NotFound()
        return record

    def get_file(self, actor: User, file_id: str, *, link_token: Optional[str] = None) -> FileRecord:
        record = self.load_file(actor.org_id, file_id)
        self.authorizer.require(actor, ResourceClass.FILES, Action.READ, file_id, link_token=link_token)
        return record

    def list_files(self, actor: User, path: str = "/", *, include_deleted: bool = False) -> List[FileRecord]:
        self.authorizer.require(actor, ResourceClass.FILES, Action.READ)
        entries = [
            record
            for record in self.store.query(FILES, "org_path", (actor.org_id, normalize_path(path)))
            if record.status == FileStatus.FINALIZED and (include_deleted or not record.is_deleted)
        ]
        entries.sort(key=lambda record: (record.type != ResourceType.FOLDER, record.name.lower()))
        return entries

    # Mutations ---------------------------------------------------------------

    def create_folder(
        self,
        actor: User,
        name: str,
        parent_path: str = "/",
        client: Optional[ClientInfo] = None,
    ) -> FileRecord:
        self.authorizer.require(actor, ResourceClass.FILES, Action.CREATE)
        org = self.load_org(actor.org_id)
        path = normalize_path(parent_path)
        address = derive_key(org, name, path, shared_bucket=self.config.object_storage.shared_bucket)
        for sibling in self.store.query(FILES, "org_path", (org.id, path)):
            if sibling.type == ResourceType.FOLDER and sibling.name == name and not sibling.is_deleted:
                raise Conflict(f"Folder {name!r} already exists in {path}")
        now = utcnow()
        folder = FileRecord(
            id=str(uuid.uuid4()),
            org_id=org.id,
            name=name,
            path=path,
            type=ResourceType.FOLDER,
            bucket=address.bucket,
            storage_key=address.key,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            content_type="application/vnd.dir",
        )
        self.store.insert(FILES, folder)
        self.audit.record(
            org.id,
            actor.id,
            "folder.created",
            ResourceType.FOLDER.value,
            folder.id,
            {"name": name, "path": path},
            client,
        )
        self.emit_event("folder_created", file_id=folder.id, org_id=org.id)
        return folder

    def update_file(
        self,
        actor: User,
        file_id: str,
        expected_version: int,
        *,
        name: Optional[str] = None,
        size_bytes: Optional[int] = None,
        content_type: Optional[str] = None,
        checksum: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> FileRecord:
        record = self.load_file(actor.org_id, file_id)
        self.authorizer.require(actor, ResourceClass.FILES, Action.UPDATE, file_id)
        requested = {"name": name, "size_bytes": size_bytes, "content_type": content_type, "checksum": checksum}
        changes: Dict[str, object] = {
            field_name: value
            for field_name, value in requested.items()
            if value is not None and getattr(record, field_name) != value
        }
        if not any(value is not None for value in requested.values()):
            raise InvalidInput("No changes supplied")
        if "name" in changes and (not str(name).strip() or "/" in str(name)):
            raise InvalidInput("File name must be non-empty and must not contain '/'")
        if size_bytes is not None and size_bytes < 0:
            raise InvalidInput("size_bytes must not be negative")
        if record.version != expected_version:
            raise Conflict(f"File {file_id} is at version {record.version}, not {expected_version}")
        if not changes:
            return record
        updated = replace(record, **changes, version=record.version + 1, updated_at=utcnow())
        try:
            self.store.update(
                FILES,
                updated,
                condition=lambda current: current.version == expected_version and not current.is_deleted,
            )
        except ConditionFailed as exc:
            raise Conflict(f"File {file_id} was modified concurrently") from exc
        self.audit.record(
            actor.org_id,
            actor.id,
            "file.updated",
            record.type.value,
            file_id,
            {"version": updated.version, "fields": sorted(changes)},
            client,
        )
        return updated

    def delete_file(self, actor: User, file_id: str, client: Optional[ClientInfo] = None) -> FileRecord:
        record = self.load_file(actor.org_id, file_id)
        self.authorizer.require(actor, ResourceClass.FILES, Action.DELETE, file_id)
        now = utcnow()
        deleted = replace(record, is_deleted=True, deleted_at=now, deleted_by=actor.id, updated_at=now)
        try:
            self.store.update(FILES, deleted, condition=lambda current: not current.is_deleted)
        except ConditionFailed as exc:
            raise NotFound() from exc
        self.audit.record(
            actor.org_id,
            actor.id,
            "file.deleted",
            record.type.value,
            file_id,
            {"fileName": record.name},
            client,
        )
        logger.info("Soft-deleted %s %s in org %s", record.type.value, file_id, actor.org_id)
        self.emit_event("file_deleted", file_id=file_id, org_id=actor.org_id)
        return deleted

    # Downloads ---------------------------------------------------------------

    def issue_download(self, actor: User, file_id: str, *, link_token: Optional[str] = None) -> DownloadReference:
        record = self.load_file(actor.org_id, file_id)
        self.authorizer.require(actor, ResourceClass.FILES, Action.READ, file_id, link_token=link_token)
        return self.presign_download(record)

    def presign_download(self, record: FileRecord) -> DownloadReference:
        if record.type != ResourceType.FILE:
            raise InvalidInput("Folders cannot be downloaded")
        if record.status != FileStatus.FINALIZED:
            raise Conflict("File upload has not completed")
        ttl = self.config.object_storage.reference_ttl_seconds
        url = guarded(
            "presign",
            self.objects.presign,
            "get",
            StorageAddress(record.bucket, record.storage_key),
            expires_in=ttl,
        )
        return DownloadReference(file_id=record.id, url=url, expires_at=utcnow() + timedelta(seconds=ttl))

    # Usage -------------------------------------------------------------------

    def storage_summary(self, org_id: str) -> Dict[str, int]:
        files = [
            record
            for record in self.store.query(FILES, "org_id", org_id)
            if record.type == ResourceType.FILE and record.status == FileStatus.FINALIZED and not record.is_deleted
        ]
        return {"bytes_used": sum(record.size_bytes for record in files), "files_count": len(files)}
