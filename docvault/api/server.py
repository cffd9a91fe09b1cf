"""FastAPI surface mapping HTTP requests onto the docvault core."""

from __future__ import annotations

import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import DocVaultConfig
from ..errors import DependencyFailure, DocVaultError, IncompleteUpload, InvalidInput, Unauthenticated
from ..models import (
    AuditRecord,
    ClientInfo,
    DownloadReference,
    FileRecord,
    Organization,
    Share,
    UploadPlan,
    UploadSession,
    User,
)
from ..runtime import DocVaultRuntime

logger = logging.getLogger(__name__)

runtime = DocVaultRuntime.bootstrap(DocVaultConfig.from_env())

app = FastAPI(title="docvault API", version="0.1.0")

_cors_origins = [origin.strip() for origin in os.environ.get("DOCVAULT_CORS_ORIGINS", "*").split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DocVaultError)
async def _handle_docvault_error(request: Request, exc: DocVaultError) -> JSONResponse:
    if isinstance(exc, DependencyFailure):
        logger.error("Dependency failure on %s %s: %s", request.method, request.url.path, exc.detail, exc_info=exc)
    body: dict[str, Any] = {"error": exc.public_message}
    if isinstance(exc, IncompleteUpload):
        body["missing_parts"] = list(exc.missing_parts)
    return JSONResponse(status_code=exc.status_code, content=body)


# Request context ------------------------------------------------------------


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


async def get_actor(request: Request) -> User:
    """Resolve the calling actor from the bearer credential."""
    return runtime.identity.authenticate(_bearer_token(request))


async def get_subject(request: Request) -> str:
    """Verified identity subject for callers that have no actor yet (signup, invite acceptance)."""
    token = _bearer_token(request)
    if not token:
        raise Unauthenticated()
    try:
        return runtime.identity.verifier.verify(token)
    except (ValueError, TypeError) as exc:
        raise Unauthenticated() from exc


async def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# Request models -------------------------------------------------------------


class SignupRequest(BaseModel):
    org_name: str
    email: str
    domain: Optional[str] = None


class OrgUpdateRequest(BaseModel):
    name: Optional[str] = None
    quota_bytes: Optional[int] = Field(default=None, gt=0)
    encryption_mode: Optional[str] = None
    kms_key_id: Optional[str] = None
    prefix: Optional[str] = None
    bucket: Optional[str] = None
    isolation_mode: Optional[str] = None


class BillingCustomerRequest(BaseModel):
    customer_ref: str


class InviteRequest(BaseModel):
    email: str
    role: str


class InviteAcceptRequest(BaseModel):
    token: str


class RoleUpdateRequest(BaseModel):
    role: str


class FolderCreateRequest(BaseModel):
    name: str
    parent_path: str = Field(default="/")


class FileUpdateRequest(BaseModel):
    expected_version: int = Field(ge=1)
    name: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)
    content_type: Optional[str] = None
    checksum: Optional[str] = None


class UploadInitRequest(BaseModel):
    file_name: str
    size_bytes: int
    content_type: Optional[str] = None
    parent_path: str = Field(default="/")


class UploadCompleteRequest(BaseModel):
    parts: dict[int, str] = Field(default_factory=dict)


class ShareRequest(BaseModel):
    type: str
    permissions: list[str] = Field(default_factory=lambda: ["read"])
    target_role: Optional[str] = None
    target_actor_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class BillingEventRequest(BaseModel):
    id: str
    type: str
    customer: str
    subscription: Optional[str] = None
    subscription_status: Optional[str] = None
    invoice: Optional[str] = None


# Organizations --------------------------------------------------------------


@app.post("/signup", status_code=201)
async def signup(
    payload: SignupRequest,
    subject: str = Depends(get_subject),
    client: ClientInfo = Depends(get_client_info),
):
    org, owner = runtime.org_service.signup(
        payload.org_name,
        payload.email,
        subject,
        domain=payload.domain,
        client=client,
    )
    return {"org": _serialize_org(org), "user": _serialize_user(owner)}


@app.get("/org")
async def get_org(actor: User = Depends(get_actor)):
    return _serialize_org(runtime.org_service.get_org(actor))


@app.patch("/org")
async def update_org(
    payload: OrgUpdateRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    org = runtime.org_service.update_org(
        actor,
        name=payload.name,
        quota_bytes=payload.quota_bytes,
        encryption_mode=payload.encryption_mode,
        kms_key_id=payload.kms_key_id,
        prefix=payload.prefix,
        bucket=payload.bucket,
        isolation_mode=payload.isolation_mode,
        client=client,
    )
    return _serialize_org(org)


@app.get("/org/usage")
async def get_usage(actor: User = Depends(get_actor)):
    usage = runtime.org_service.usage(actor)
    usage["recent_activity"] = [_serialize_audit(record) for record in usage["recent_activity"]]
    return usage


@app.post("/org/billing:customer")
async def link_billing_customer(
    payload: BillingCustomerRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    org = runtime.org_service.link_billing_customer(actor, payload.customer_ref, client)
    return _serialize_org(org)


# Users ----------------------------------------------------------------------


@app.get("/users")
async def list_users(actor: User = Depends(get_actor)):
    return {"users": [_serialize_user(user) for user in runtime.user_service.list_users(actor)]}


@app.post("/users:invite", status_code=201)
async def invite_user(
    payload: InviteRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    invited, token = runtime.user_service.invite(actor, payload.email, payload.role, client)
    body = _serialize_user(invited)
    body["invite_token"] = token
    return body


@app.post("/invites:accept")
async def accept_invite(
    payload: InviteAcceptRequest,
    subject: str = Depends(get_subject),
    client: ClientInfo = Depends(get_client_info),
):
    return _serialize_user(runtime.user_service.accept_invite(payload.token, subject, client))


@app.patch("/users/{user_id}")
async def change_role(
    user_id: str,
    payload: RoleUpdateRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    return _serialize_user(runtime.user_service.change_role(actor, user_id, payload.role, client))


@app.delete("/users/{user_id}")
async def remove_user(
    user_id: str,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    return _serialize_user(runtime.user_service.remove_user(actor, user_id, client))


# Files ----------------------------------------------------------------------


@app.get("/files")
async def list_files(path: str = "/", include_deleted: bool = False, actor: User = Depends(get_actor)):
    entries = runtime.metadata_service.list_files(actor, path, include_deleted=include_deleted)
    return {"path": path, "files": [_serialize_file(entry) for entry in entries]}


@app.post("/folders", status_code=201)
async def create_folder(
    payload: FolderCreateRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    folder = runtime.metadata_service.create_folder(actor, payload.name, payload.parent_path, client)
    return _serialize_file(folder)


@app.get("/files/{file_id}")
async def get_file(file_id: str, link_token: Optional[str] = None, actor: User = Depends(get_actor)):
    return _serialize_file(runtime.metadata_service.get_file(actor, file_id, link_token=link_token))


@app.patch("/files/{file_id}")
async def update_file(
    file_id: str,
    payload: FileUpdateRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    entry = runtime.metadata_service.update_file(
        actor,
        file_id,
        payload.expected_version,
        name=payload.name,
        size_bytes=payload.size_bytes,
        content_type=payload.content_type,
        checksum=payload.checksum,
        client=client,
    )
    return _serialize_file(entry)


@app.delete("/files/{file_id}")
async def delete_file(
    file_id: str,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    entry = runtime.metadata_service.delete_file(actor, file_id, client)
    return {"message": "File deleted", "file": _serialize_file(entry)}


@app.get("/files/{file_id}/download")
async def download_file(file_id: str, link_token: Optional[str] = None, actor: User = Depends(get_actor)):
    return _serialize_download(runtime.metadata_service.issue_download(actor, file_id, link_token=link_token))


@app.get("/links/{token}/download")
async def download_by_link(token: str):
    return _serialize_download(runtime.sharing_service.issue_link_download(token))


# Uploads --------------------------------------------------------------------


@app.post("/uploads:sessions", status_code=201)
async def initiate_upload(
    payload: UploadInitRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    org = runtime.metadata_service.load_org(actor.org_id)
    plan = runtime.upload_service.initiate(
        org,
        actor,
        payload.file_name,
        payload.size_bytes,
        payload.content_type,
        payload.parent_path,
        client,
    )
    return _serialize_plan(plan)


@app.get("/uploads:sessions/{session_id}")
async def get_upload_status(session_id: str, actor: User = Depends(get_actor)):
    return runtime.upload_service.describe(session_id, actor)


@app.post("/uploads:complete/{session_id}")
async def complete_upload(
    session_id: str,
    payload: UploadCompleteRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    session = runtime.upload_service.complete(session_id, actor, payload.parts, client)
    return _serialize_session(session)


@app.post("/uploads:abort/{session_id}")
async def abort_upload(
    session_id: str,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    return _serialize_session(runtime.upload_service.abort(session_id, actor, client))


# Shares ---------------------------------------------------------------------


@app.post("/files/{file_id}:share", status_code=201)
async def share_file(
    file_id: str,
    payload: ShareRequest,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    share = runtime.sharing_service.create_share(
        actor,
        file_id,
        payload.type,
        permissions=payload.permissions,
        target_role=payload.target_role,
        target_actor_id=payload.target_actor_id,
        expires_at=_as_utc(payload.expires_at),
        client=client,
    )
    return _serialize_share(share, include_token=True)


@app.get("/files/{file_id}/shares")
async def list_shares(file_id: str, actor: User = Depends(get_actor)):
    return {"shares": [_serialize_share(share) for share in runtime.sharing_service.list_shares(actor, file_id)]}


@app.delete("/files/{file_id}/shares/{share_id}")
async def revoke_share(
    file_id: str,
    share_id: str,
    actor: User = Depends(get_actor),
    client: ClientInfo = Depends(get_client_info),
):
    return _serialize_share(runtime.sharing_service.revoke_share(actor, file_id, share_id, client))


# Audit, activity and ops ----------------------------------------------------


@app.get("/audit")
async def query_audit(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=0),
    actor: User = Depends(get_actor),
):
    records = runtime.audit.query(actor, _as_utc(start), _as_utc(end), limit=limit)
    return {"records": [_serialize_audit(record) for record in records]}


@app.get("/activity")
async def list_activity(limit: int = Query(50, ge=0), actor: User = Depends(get_actor)):
    events = runtime.activity_service.feed(actor, limit=limit)
    return {"events": [_serialize_activity_event(envelope) for envelope in events]}


@app.get("/ops/metrics")
async def ops_metrics(actor: User = Depends(get_actor)):
    runtime.authorizer.require(actor, "audit", "read")
    return runtime.get_metrics_snapshot()


@app.post("/webhooks/billing")
async def billing_webhook(payload: BillingEventRequest, request: Request):
    secret = runtime.config.auth.webhook_secret
    if secret:
        presented = request.headers.get("x-docvault-webhook-secret", "")
        if not hmac.compare_digest(secret.encode(), presented.encode()):
            raise Unauthenticated()
    if not payload.id:
        raise InvalidInput("Event id is required")
    result = runtime.org_service.apply_billing_event(
        payload.id,
        payload.type,
        payload.customer,
        subscription_ref=payload.subscription,
        subscription_status=payload.subscription_status,
        invoice_ref=payload.invoice,
    )
    return {
        "received": True,
        "applied": result.applied,
        "event_type": result.event_type,
        "status": result.status.value if result.status else None,
        "reason": result.reason,
    }


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


# Serializers ----------------------------------------------------------------


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_org(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "domain": org.domain,
        "created_at": org.created_at.isoformat(),
        "storage": {
            "quota_bytes": org.storage.quota_bytes,
            "isolation_mode": org.storage.isolation_mode.value,
            "prefix": org.storage.prefix,
            "bucket": org.storage.bucket,
            "encryption_mode": org.storage.encryption_mode.value,
            "kms_key_id": org.storage.kms_key_id,
        },
        "billing": {
            "plan": org.billing.plan,
            "status": org.billing.status.value,
            "customer_ref": org.billing.customer_ref,
            "subscription_ref": org.billing.subscription_ref,
        },
    }


def _serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "org_id": user.org_id,
        "email": user.email,
        "role": user.role.value,
        "status": user.status.value,
        "created_at": user.created_at.isoformat(),
        "invite_expires_at": _iso(user.invite_expires_at),
        "last_login_at": _iso(user.last_login_at),
    }


def _serialize_file(entry: FileRecord) -> dict:
    return {
        "id": entry.id,
        "org_id": entry.org_id,
        "name": entry.name,
        "path": entry.path,
        "type": entry.type.value,
        "size_bytes": entry.size_bytes,
        "content_type": entry.content_type,
        "checksum": entry.checksum,
        "status": entry.status.value,
        "version": entry.version,
        "storage_key": entry.storage_key,
        "created_by": entry.created_by,
        "created_at": entry.created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
        "is_deleted": entry.is_deleted,
        "deleted_at": _iso(entry.deleted_at),
    }


def _serialize_share(share: Share, *, include_token: bool = False) -> dict:
    body = {
        "share_id": share.id,
        "file_id": share.file_id,
        "type": share.type.value,
        "permissions": sorted(permission.value for permission in share.permissions),
        "target_role": share.target_role.value if share.target_role else None,
        "target_actor_id": share.target_actor_id,
        "created_by": share.created_by,
        "created_at": share.created_at.isoformat(),
        "expires_at": _iso(share.expires_at),
        "revoked_at": _iso(share.revoked_at),
    }
    if include_token and share.token:
        body["link_token"] = share.token
    return body


def _serialize_plan(plan: UploadPlan) -> dict:
    return {
        "session_id": plan.session_id,
        "file_id": plan.file_id,
        "bucket": plan.bucket,
        "storage_key": plan.storage_key,
        "part_size": plan.part_size,
        "parts": [
            {"part_number": part.part_number, "url": part.url, "expires_at": part.expires_at.isoformat()}
            for part in plan.parts
        ],
    }


def _serialize_session(session: UploadSession) -> dict:
    return {
        "session_id": session.id,
        "file_id": session.file_id,
        "state": session.state.value,
        "part_count": len(session.expected_parts),
        "completed_parts": sorted(session.completed_parts),
        "updated_at": session.updated_at.isoformat(),
    }


def _serialize_download(reference: DownloadReference) -> dict:
    return {"file_id": reference.file_id, "url": reference.url, "expires_at": reference.expires_at.isoformat()}


def _serialize_audit(record: AuditRecord) -> dict:
    return {
        "id": record.id,
        "org_id": record.org_id,
        "actor_id": record.actor_id,
        "action": record.action,
        "resource_type": record.resource_type,
        "resource_id": record.resource_id,
        "metadata": record.metadata,
        "timestamp": record.timestamp.isoformat(),
        "ip_address": record.client.ip_address,
        "user_agent": record.client.user_agent,
    }


def _serialize_activity_event(envelope) -> dict:
    payload = getattr(envelope, "payload", {}) or {}
    return {
        "topic": envelope.topic,
        "actor": payload.get("actor_id") or "system",
        "action": payload.get("action") or envelope.topic,
        "target": str(payload.get("resource_id") or payload.get("file_id") or payload.get("session_id") or "n/a"),
        "timestamp": payload.get("timestamp"),
    }


def main() -> None:
    import uvicorn

    level = runtime.config.observability.log_level
    logging.basicConfig(level=level, format="[%(asctime)s] %(levelname)s %(name)s %(message)s")
    uvicorn.run(
        app,
        host=os.environ.get("DOCVAULT_HOST", "127.0.0.1"),
        port=int(os.environ.get("DOCVAULT_PORT", "8000")),
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
