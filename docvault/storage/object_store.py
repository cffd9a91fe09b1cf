"""Object-storage boundary and the local signed-reference issuer.

The control plane never moves bytes itself.  It opens multipart uploads,
hands clients time-limited references for individual parts or whole objects,
and finalizes or aborts uploads.  ``LocalSignedObjectStore`` issues HMAC
signed URLs against a configurable base URL so the full session flow can run
without a cloud account; the S3 adapter lives in :mod:`.s3_store`.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, TypeVar
from urllib.parse import parse_qs, quote, urlencode, urlsplit

from ..config import ObjectStorageConfig
from ..errors import DependencyFailure
from ..models import StorageAddress

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRESIGN_OPERATIONS = {"get": "get_object", "put": "put_object", "delete": "delete_object"}


class ObjectStoreError(RuntimeError):
    """Raised by adapters when the backing store rejects or fails a call."""


class ObjectStorage(Protocol):
    def begin_multipart(
        self,
        address: StorageAddress,
        *,
        content_type: Optional[str] = None,
        kms_key_id: Optional[str] = None,
    ) -> str:
        ...

    def presign_part(self, address: StorageAddress, upload_id: str, part_number: int, *, expires_in: int) -> str:
        ...

    def presign(self, operation: str, address: StorageAddress, *, expires_in: int) -> str:
        ...

    def complete_multipart(self, address: StorageAddress, upload_id: str, parts: Mapping[int, str]) -> None:
        ...

    def abort_multipart(self, address: StorageAddress, upload_id: str) -> None:
        ...


@dataclass
class _MultipartUpload:
    address: StorageAddress
    content_type: Optional[str]
    kms_key_id: Optional[str]
    state: str = "open"
    parts: Dict[int, str] = field(default_factory=dict)


class LocalSignedObjectStore:
    """In-process multipart bookkeeping with HMAC-signed references."""

    def __init__(self, config: ObjectStorageConfig, *, clock=time.time) -> None:
        if not config.signing_secret:
            raise ValueError("DOCVAULT_SIGNING_SECRET is required for the local object store")
        self.base_url = config.base_url.rstrip("/")
        self._secret = config.signing_secret.encode()
        self._clock = clock
        self._lock = threading.Lock()
        self.uploads: Dict[str, _MultipartUpload] = {}
        self.objects: Dict[StorageAddress, Dict[int, str]] = {}

    def begin_multipart(
        self,
        address: StorageAddress,
        *,
        content_type: Optional[str] = None,
        kms_key_id: Optional[str] = None,
    ) -> str:
        upload_id = uuid.uuid4().hex
        with self._lock:
            self.uploads[upload_id] = _MultipartUpload(address, content_type, kms_key_id)
        logger.debug("Opened multipart upload %s for %s/%s", upload_id, address.bucket, address.key)
        return upload_id

    def presign_part(self, address: StorageAddress, upload_id: str, part_number: int, *, expires_in: int) -> str:
        upload = self._upload(upload_id, address)
        if upload.state != "open":
            raise ObjectStoreError(f"Multipart upload {upload_id} is {upload.state}")
        return self._sign(
            "upload_part",
            address,
            expires_in,
            uploadId=upload_id,
            partNumber=str(part_number),
        )

    def presign(self, operation: str, address: StorageAddress, *, expires_in: int) -> str:
        try:
            op_name = PRESIGN_OPERATIONS[operation]
        except KeyError as exc:
            raise ObjectStoreError(f"Unsupported presign operation: {operation}") from exc
        return self._sign(op_name, address, expires_in)

    def complete_multipart(self, address: StorageAddress, upload_id: str, parts: Mapping[int, str]) -> None:
        with self._lock:
            upload = self._upload(upload_id, address)
            if upload.state == "completed":
                if upload.parts != dict(parts):
                    raise ObjectStoreError(f"Multipart upload {upload_id} completed with different parts")
                return
            if upload.state == "aborted":
                raise ObjectStoreError(f"Multipart upload {upload_id} was aborted")
            upload.parts = dict(parts)
            upload.state = "completed"
            self.objects[address] = dict(parts)

    def abort_multipart(self, address: StorageAddress, upload_id: str) -> None:
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None or upload.state == "aborted":
                return
            if upload.state == "completed":
                raise ObjectStoreError(f"Multipart upload {upload_id} already completed")
            upload.state = "aborted"

    def verify(self, url: str) -> bool:
        """Check signature and expiry of a reference issued by this store."""
        parts = urlsplit(url)
        query = {name: values[0] for name, values in parse_qs(parts.query).items()}
        signature = query.pop("signature", "")
        try:
            expires = int(query.get("expires", "0"))
        except ValueError:
            return False
        if expires <= int(self._clock()):
            return False
        expected = self._digest(parts.path, query)
        return hmac.compare_digest(expected, signature)

    def _upload(self, upload_id: str, address: StorageAddress) -> _MultipartUpload:
        upload = self.uploads.get(upload_id)
        if upload is None or upload.address != address:
            raise ObjectStoreError(f"Unknown multipart upload {upload_id}")
        return upload

    def _sign(self, operation: str, address: StorageAddress, expires_in: int, **extra: str) -> str:
        path = f"/{address.bucket}/{quote(address.key)}"
        query = {"op": operation, **extra, "expires": str(int(self._clock()) + int(expires_in))}
        query["signature"] = self._digest(path, query)
        return f"{self.base_url}{path}?{urlencode(query)}"

    def _digest(self, path: str, query: Mapping[str, str]) -> str:
        canonical = "\n".join([path] + [f"{name}={query[name]}" for name in sorted(query)])
        return hmac.new(self._secret, canonical.encode(), hashlib.sha256).hexdigest()


def build_object_store(config: ObjectStorageConfig) -> ObjectStorage:
    backend = (config.backend or "").strip().lower()
    if backend == "local":
        return LocalSignedObjectStore(config)
    if backend == "s3":
        from .s3_store import S3ObjectStore

        return S3ObjectStore(config)
    raise ValueError(f"Unknown object storage backend: {config.backend}")


def guarded(operation: str, call: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run an adapter call, reporting any backend failure as ``DependencyFailure``."""
    try:
        return call(*args, **kwargs)
    except (RuntimeError, OSError) as exc:
        logger.exception("Object storage %s failed", operation)
        raise DependencyFailure(f"Object storage {operation} failed") from exc
