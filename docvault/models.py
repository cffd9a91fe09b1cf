"""Data models shared across control-plane services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .errors import InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    OWNER = "Owner"
    ADMIN = "Admin"
    MANAGER = "Manager"
    MEMBER = "Member"
    GUEST = "Guest"

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        if isinstance(value, Role):
            return value
        for role in cls:
            if role.value.lower() == str(value).strip().lower():
                return role
        raise InvalidInput(f"Unknown role: {value!r}")


class UserStatus(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"


class IsolationMode(str, Enum):
    SHARED_PREFIX = "shared-prefix"
    DEDICATED_BUCKET = "dedicated-bucket"


class EncryptionMode(str, Enum):
    SSE_KMS = "sse-kms"
    ZERO_KNOWLEDGE = "zero-knowledge"


class BillingStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class ResourceType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class FileStatus(str, Enum):
    PENDING = "pending"
    FINALIZED = "finalized"


class ShareType(str, Enum):
    ROLE = "role-grant"
    USER = "user-grant"
    LINK = "link-grant"


class SharePermission(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    RESHARE = "reshare"

    @classmethod
    def parse_set(cls, values) -> FrozenSet["SharePermission"]:
        parsed = set()
        for value in values or ():
            try:
                parsed.add(value if isinstance(value, SharePermission) else cls(str(value).strip().lower()))
            except ValueError as exc:
                raise InvalidInput(f"Unknown share permission: {value!r}") from exc
        if not parsed:
            raise InvalidInput("A share needs at least one permission")
        return frozenset(parsed)


class UploadState(str, Enum):
    INITIATED = "initiated"
    PARTS_PENDING = "parts-pending"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.COMPLETED, UploadState.ABORTED)


@dataclass
class StorageConfig:
    quota_bytes: int
    isolation_mode: IsolationMode
    prefix: str
    encryption_mode: EncryptionMode = EncryptionMode.SSE_KMS
    bucket: Optional[str] = None
    kms_key_id: Optional[str] = None


@dataclass
class BillingState:
    plan: str = "starter"
    status: BillingStatus = BillingStatus.TRIALING
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


@dataclass
class Organization:
    id: str
    name: str
    storage: StorageConfig
    billing: BillingState
    created_at: datetime
    domain: Optional[str] = None
    deleted_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    org_id: str
    email: str
    role: Role
    status: UserStatus
    created_at: datetime
    subject: Optional[str] = None
    invite_token: Optional[str] = None
    invite_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class FileRecord:
    id: str
    org_id: str
    name: str
    path: str
    type: ResourceType
    bucket: str
    storage_key: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    size_bytes: int = 0
    content_type: Optional[str] = None
    checksum: Optional[str] = None
    status: FileStatus = FileStatus.FINALIZED
    version: int = 1
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None


@dataclass
class Share:
    id: str
    file_id: str
    org_id: str
    type: ShareType
    permissions: FrozenSet[SharePermission]
    created_by: str
    created_at: datetime
    target_role: Optional[Role] = None
    target_actor_id: Optional[str] = None
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        payload = {
            ShareType.ROLE: self.target_role,
            ShareType.USER: self.target_actor_id,
            ShareType.LINK: self.token,
        }
        populated = [share_type for share_type, value in payload.items() if value]
        if populated != [self.type]:
            raise InvalidInput(f"A {self.type.value} share must carry exactly its own payload")
        if not self.permissions:
            raise InvalidInput("A share needs at least one permission")

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


@dataclass(frozen=True)
class StorageAddress:
    bucket: str
    key: str


@dataclass
class UploadSession:
    id: str
    org_id: str
    file_id: str
    created_by: str
    bucket: str
    storage_key: str
    total_size: int
    part_size: int
    expected_parts: Tuple[int, ...]
    created_at: datetime
    updated_at: datetime
    upload_id: Optional[str] = None
    completed_parts: Dict[int, str] = field(default_factory=dict)
    state: UploadState = UploadState.INITIATED
    revision: int = 0

    def missing_parts(self, reported: Dict[int, str]) -> Tuple[int, ...]:
        return tuple(
            number for number in self.expected_parts if not str(reported.get(number) or "").strip()
        )


@dataclass(frozen=True)
class PartReference:
    part_number: int
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class DownloadReference:
    file_id: str
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class UploadPlan:
    session_id: str
    file_id: str
    bucket: str
    storage_key: str
    part_size: int
    parts: Tuple[PartReference, ...]


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    id: str
    org_id: str
    actor_id: str
    action: str
    resource_type: str
    resource_id: str
    metadata: Dict[str, Any]
    timestamp: datetime
    client: ClientInfo = ClientInfo()


@dataclass
class BillingEventReceipt:
    id: str
    event_type: str
    customer_ref: str
    received_at: datetime
    org_id: Optional[str] = None


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=utcnow)
