"""Organizations: signup, settings, usage and billing-provider transitions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from ..errors import Conflict, InvalidInput
from ..models import (
    BillingEventReceipt,
    BillingState,
    BillingStatus,
    ClientInfo,
    EncryptionMode,
    Organization,
    Role,
    StorageConfig,
    User,
    UserStatus,
    utcnow,
)
from ..storage.document_store import BILLING_EVENTS, ORGANIZATIONS, USERS, DocumentStore
from .audit_service import SYSTEM_ACTOR, AuditSink
from .authorization import AuthorizationEngine
from .base import BaseService
from .metadata_service import MetadataService
from .role_model import Action, ResourceClass

logger = logging.getLogger(__name__)

BILLING_EVENT_TYPES = ("invoice-paid", "invoice-payment-failed", "subscription-updated", "subscription-deleted")

# Provider-native names accepted as aliases.
_BILLING_EVENT_ALIASES = {
    "invoice.paid": "invoice-paid",
    "invoice.payment_failed": "invoice-payment-failed",
    "customer.subscription.updated": "subscription-updated",
    "customer.subscription.deleted": "subscription-deleted",
}

_IMMUTABLE_STORAGE_FIELDS = ("prefix", "bucket", "isolation_mode")


@dataclass(frozen=True)
class BillingEventResult:
    event_id: str
    event_type: str
    applied: bool
    org_id: Optional[str] = None
    status: Optional[BillingStatus] = None
    reason: Optional[str] = None


@dataclass
class OrganizationService(BaseService):
    store: DocumentStore
    authorizer: AuthorizationEngine
    audit: AuditSink
    metadata: MetadataService

    def signup(
        self,
        org_name: str,
        email: str,
        subject: str,
        *,
        domain: Optional[str] = None,
        customer_ref: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[Organization, User]:
        if not org_name or not org_name.strip():
            raise InvalidInput("Organization name is required")
        if not email or "@" not in email:
            raise InvalidInput("A valid email is required")
        if not subject:
            raise InvalidInput("An identity subject is required")
        if self.store.query(USERS, "subject", subject):
            raise Conflict("This identity is already registered")
        tenancy = self.config.tenancy
        now = utcnow()
        org_id = str(uuid.uuid4())
        org = Organization(
            id=org_id,
            name=org_name.strip(),
            domain=domain,
            storage=StorageConfig(
                quota_bytes=tenancy.default_quota_bytes,
                isolation_mode=tenancy.default_isolation_mode,
                prefix=f"org-{uuid.uuid4().hex}",
                kms_key_id=self.config.object_storage.kms_key_id,
            ),
            billing=BillingState(plan=tenancy.default_plan, customer_ref=customer_ref),
            created_at=now,
        )
        owner = User(
            id=str(uuid.uuid4()),
            org_id=org_id,
            email=email.strip(),
            role=Role.OWNER,
            status=UserStatus.ACTIVE,
            created_at=now,
            subject=subject,
        )
        self.store.insert(ORGANIZATIONS, org)
        self.store.insert(USERS, owner)
        self.audit.record(
            org_id,
            owner.id,
            "org.created",
            "org",
            org_id,
            {"orgName": org.name, "email": owner.email},
            client,
        )
        logger.info("Created organization %s (%s)", org_id, org.storage.isolation_mode.value)
        self.emit_event("org_created", org_id=org_id)
        return org, owner

    def get_org(self, actor: User) -> Organization:
        self.authorizer.require(actor, ResourceClass.ORG, Action.READ)
        return self.metadata.load_org(actor.org_id)

    def update_org(
        self,
        actor: User,
        *,
        name: Optional[str] = None,
        quota_bytes: Optional[int] = None,
        encryption_mode: Optional[EncryptionMode | str] = None,
        kms_key_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        **immutable: Any,
    ) -> Organization:
        self.authorizer.require(actor, ResourceClass.ORG, Action.UPDATE)
        blocked = sorted(key for key, value in immutable.items() if value is not None)
        if blocked:
            unknown = [key for key in blocked if key not in _IMMUTABLE_STORAGE_FIELDS]
            if unknown:
                raise InvalidInput(f"Unknown settings: {', '.join(unknown)}")
            raise InvalidInput(f"Settings cannot be changed: {', '.join(blocked)}")
        org = self.metadata.load_org(actor.org_id)
        changed = []
        storage = org.storage
        if name is not None:
            if not name.strip():
                raise InvalidInput("Organization name is required")
            org = replace(org, name=name.strip())
            changed.append("name")
        if quota_bytes is not None:
            if quota_bytes <= 0:
                raise InvalidInput("Quota must be positive")
            storage = replace(storage, quota_bytes=quota_bytes)
            changed.append("quota_bytes")
        if encryption_mode is not None:
            try:
                storage = replace(storage, encryption_mode=EncryptionMode(encryption_mode))
            except ValueError as exc:
                raise InvalidInput(f"Unknown encryption mode: {encryption_mode!r}") from exc
            changed.append("encryption_mode")
        if kms_key_id is not None:
            storage = replace(storage, kms_key_id=kms_key_id or None)
            changed.append("kms_key_id")
        if not changed:
            return org
        org = replace(org, storage=storage)
        self.store.update(ORGANIZATIONS, org)
        self.audit.record(org.id, actor.id, "org.settings.updated", "org", org.id, {"fields": changed}, client)
        return org

    def link_billing_customer(
        self,
        actor: User,
        customer_ref: str,
        client: Optional[ClientInfo] = None,
    ) -> Organization:
        self.authorizer.require(actor, ResourceClass.BILLING, Action.UPDATE)
        if not customer_ref:
            raise InvalidInput("customer_ref is required")
        org = self.metadata.load_org(actor.org_id)
        org = replace(org, billing=replace(org.billing, customer_ref=customer_ref))
        self.store.update(ORGANIZATIONS, org)
        self.audit.record(org.id, actor.id, "billing.customer.linked", "org", org.id, {"customerRef": customer_ref}, client)
        return org

    def usage(self, actor: User) -> Dict[str, Any]:
        self.authorizer.require(actor, ResourceClass.ORG, Action.READ)
        org = self.metadata.load_org(actor.org_id)
        summary = self.metadata.storage_summary(org.id)
        active_users = sum(1 for user in self.store.query(USERS, "org_id", org.id) if user.is_active)
        quota = org.storage.quota_bytes
        return {
            "storage_used_bytes": summary["bytes_used"],
            "storage_quota_bytes": quota,
            "storage_used_percent": round(summary["bytes_used"] / quota * 100, 2) if quota else 0.0,
            "files_count": summary["files_count"],
            "active_users": active_users,
            "recent_activity": self.audit.recent(org.id, limit=10),
        }

    def apply_billing_event(
        self,
        event_id: str,
        event_type: str,
        customer_ref: str,
        *,
        subscription_ref: Optional[str] = None,
        subscription_status: Optional[str] = None,
        invoice_ref: Optional[str] = None,
    ) -> BillingEventResult:
        kind = _BILLING_EVENT_ALIASES.get(event_type, event_type)
        if kind not in BILLING_EVENT_TYPES:
            raise InvalidInput(f"Unsupported billing event: {event_type!r}")
        if not event_id or not customer_ref:
            raise InvalidInput("Billing events need an event id and a customer reference")
        if self.store.get(BILLING_EVENTS, event_id) is not None:
            return BillingEventResult(event_id, kind, applied=False, reason="duplicate")

        matches = self.store.query(ORGANIZATIONS, "customer_ref", customer_ref)
        if not matches:
            logger.info("Ignoring billing event %s for unknown customer", event_id)
            self._record_receipt(event_id, kind, customer_ref, None)
            return BillingEventResult(event_id, kind, applied=False, reason="unknown-customer")

        org = matches[0]
        billing = org.billing
        if kind == "invoice-paid":
            billing = replace(billing, status=BillingStatus.ACTIVE)
        elif kind == "invoice-payment-failed":
            billing = replace(billing, status=BillingStatus.PAST_DUE)
        elif kind == "subscription-updated":
            status = BillingStatus.ACTIVE if subscription_status == "active" else BillingStatus.CANCELED
            billing = replace(billing, status=status, subscription_ref=subscription_ref or billing.subscription_ref)
        else:
            billing = replace(billing, status=BillingStatus.CANCELED)
        self.store.update(ORGANIZATIONS, replace(org, billing=billing))

        metadata = {"eventId": event_id, "status": billing.status.value}
        if invoice_ref:
            metadata["invoiceRef"] = invoice_ref
        if subscription_ref:
            metadata["subscriptionRef"] = subscription_ref
        self.audit.record(org.id, SYSTEM_ACTOR, f"billing.{kind}", "org", org.id, metadata)
        self._record_receipt(event_id, kind, customer_ref, org.id)
        self.emit_metric("billing.events", 1, event_type=kind)
        return BillingEventResult(event_id, kind, applied=True, org_id=org.id, status=billing.status)

    def _record_receipt(self, event_id: str, kind: str, customer_ref: str, org_id: Optional[str]) -> None:
        receipt = BillingEventReceipt(
            id=event_id,
            event_type=kind,
            customer_ref=customer_ref,
            received_at=utcnow(),
            org_id=org_id,
        )
        self.store.insert(BILLING_EVENTS, receipt)
