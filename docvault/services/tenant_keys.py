"""Organization-scoped physical storage addresses."""

from __future__ import annotations

from ..errors import InvalidInput
from ..models import IsolationMode, Organization, StorageAddress


def normalize_path(path: str | None) -> str:
    """Logical parent path in canonical form: ``/`` or ``/a/b``."""
    segments = [segment for segment in (path or "").split("/") if segment]
    return "/" + "/".join(segments)


def derive_key(org: Organization, file_name: str, parent_path: str | None, *, shared_bucket: str) -> StorageAddress:
    if not file_name or not file_name.strip() or "/" in file_name:
        raise InvalidInput("File name must be non-empty and must not contain '/'")
    if org.storage.isolation_mode == IsolationMode.DEDICATED_BUCKET:
        bucket = org.storage.bucket or f"{shared_bucket}-org-{org.id}"
        return StorageAddress(bucket=bucket, key=file_name)
    relative = normalize_path(parent_path).strip("/")
    key = f"{org.storage.prefix}/{relative}/{file_name}" if relative else f"{org.storage.prefix}/{file_name}"
    return StorageAddress(bucket=shared_bucket, key=key)

