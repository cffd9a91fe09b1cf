"""S3-compatible object storage adapter built on boto3."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import ObjectStorageConfig
from ..models import StorageAddress
from .object_store import PRESIGN_OPERATIONS, ObjectStoreError

logger = logging.getLogger(__name__)

_MISSING_UPLOAD_CODES = {"NoSuchUpload", "404"}
_MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    def __init__(self, config: ObjectStorageConfig, *, client: Any = None) -> None:
        self.config = config
        self.client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            region_name=config.region,
        )

    def begin_multipart(
        self,
        address: StorageAddress,
        *,
        content_type: Optional[str] = None,
        kms_key_id: Optional[str] = None,
    ) -> str:
        params = {
            "Bucket": address.bucket,
            "Key": address.key,
            "ContentType": content_type or "application/octet-stream",
            "ServerSideEncryption": "aws:kms",
        }
        key_id = kms_key_id or self.config.kms_key_id
        if key_id:
            params["SSEKMSKeyId"] = key_id
        try:
            response = self.client.create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"create_multipart_upload failed: {exc}") from exc
        return response["UploadId"]

    def presign_part(self, address: StorageAddress, upload_id: str, part_number: int, *, expires_in: int) -> str:
        return self._presign(
            "upload_part",
            {
                "Bucket": address.bucket,
                "Key": address.key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            expires_in,
        )

    def presign(self, operation: str, address: StorageAddress, *, expires_in: int) -> str:
        try:
            client_method = PRESIGN_OPERATIONS[operation]
        except KeyError as exc:
            raise ObjectStoreError(f"Unsupported presign operation: {operation}") from exc
        return self._presign(client_method, {"Bucket": address.bucket, "Key": address.key}, expires_in)

    def complete_multipart(self, address: StorageAddress, upload_id: str, parts: Mapping[int, str]) -> None:
        manifest = [{"PartNumber": number, "ETag": parts[number]} for number in sorted(parts)]
        try:
            self.client.complete_multipart_upload(
                Bucket=address.bucket,
                Key=address.key,
                UploadId=upload_id,
                MultipartUpload={"Parts": manifest},
            )
        except ClientError as exc:
            # A completed upload is forgotten by S3; a concurrent or retried
            # completion sees NoSuchUpload while the object already exists.
            if _error_code(exc) in _MISSING_UPLOAD_CODES and self._object_exists(address):
                logger.info("Multipart upload %s already completed for %s", upload_id, address.key)
                return
            raise ObjectStoreError(f"complete_multipart_upload failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"complete_multipart_upload failed: {exc}") from exc

    def abort_multipart(self, address: StorageAddress, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=address.bucket, Key=address.key, UploadId=upload_id)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_UPLOAD_CODES:
                return
            raise ObjectStoreError(f"abort_multipart_upload failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"abort_multipart_upload failed: {exc}") from exc

    def _object_exists(self, address: StorageAddress) -> bool:
        try:
            self.client.head_object(Bucket=address.bucket, Key=address.key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_OBJECT_CODES:
                return False
            raise ObjectStoreError(f"head_object failed: {exc}") from exc
        return True

    def _presign(self, client_method: str, params: dict, expires_in: int) -> str:
        try:
            return self.client.generate_presigned_url(
                ClientMethod=client_method,
                Params=params,
                ExpiresIn=int(expires_in),
            )
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Unable to presign {client_method}: {exc}") from exc
