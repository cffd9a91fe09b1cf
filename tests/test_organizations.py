from __future__ import annotations

import pytest

from conftest import audit_actions
from docvault.errors import Conflict, Forbidden, InvalidInput
from docvault.models import BillingStatus, EncryptionMode, IsolationMode, Role, UserStatus


def test_signup_creates_org_and_owner(runtime, tenant):
    org, owner = tenant
    assert owner.role == Role.OWNER
    assert owner.status == UserStatus.ACTIVE
    assert org.storage.isolation_mode == IsolationMode.SHARED_PREFIX
    assert org.storage.prefix.startswith("org-")
    assert org.billing.status == BillingStatus.TRIALING
    assert audit_actions(runtime, org.id) == ["org.created"]


def test_signup_rejects_a_registered_identity(runtime, tenant):
    with pytest.raises(Conflict):
        runtime.org_service.signup("Second Org", "again@acme.test", "subject-owner")


def test_prefixes_are_unique_per_org(runtime, tenant):
    org, _ = tenant
    other, _ = runtime.org_service.signup("Other LLP", "owner@other.test", "subject-other")
    assert other.storage.prefix != org.storage.prefix


def test_update_settings(runtime, tenant):
    org, owner = tenant
    updated = runtime.org_service.update_org(owner, name="Acme Legal LLP", encryption_mode="zero-knowledge")
    assert updated.name == "Acme Legal LLP"
    assert updated.storage.encryption_mode == EncryptionMode.ZERO_KNOWLEDGE
    assert updated.storage.prefix == org.storage.prefix
    assert "org.settings.updated" in audit_actions(runtime, org.id)


def test_storage_layout_is_immutable(runtime, tenant):
    _, owner = tenant
    with pytest.raises(InvalidInput):
        runtime.org_service.update_org(owner, prefix="org-hijack")
    with pytest.raises(InvalidInput):
        runtime.org_service.update_org(owner, isolation_mode="dedicated-bucket")


def test_managers_cannot_change_settings(runtime, tenant, add_member):
    manager = add_member(Role.MANAGER)
    with pytest.raises(Forbidden):
        runtime.org_service.update_org(manager, name="Nope")


def test_usage_summarizes_finalized_files(runtime, tenant, upload_file, add_member):
    org, owner = tenant
    add_member(Role.MEMBER)
    upload_file(owner, "a.pdf", size=1000)
    upload_file(owner, "b.pdf", size=500)
    runtime.upload_service.initiate(org, owner, "pending.pdf", 999)

    usage = runtime.org_service.usage(owner)
    assert usage["storage_used_bytes"] == 1500
    assert usage["files_count"] == 2
    assert usage["active_users"] == 2
    assert usage["recent_activity"][0].action == "file.upload.initiated"


class TestBillingEvents:
    def _linked(self, runtime, tenant):
        org, owner = tenant
        runtime.org_service.link_billing_customer(owner, "cus_123")
        return org

    def test_invoice_paid_activates(self, runtime, tenant):
        org = self._linked(runtime, tenant)
        result = runtime.org_service.apply_billing_event("evt_1", "invoice-paid", "cus_123")
        assert result.applied and result.status == BillingStatus.ACTIVE
        assert runtime.metadata_service.load_org(org.id).billing.status == BillingStatus.ACTIVE
        assert "billing.invoice-paid" in audit_actions(runtime, org.id)

    def test_redelivery_is_a_no_op(self, runtime, tenant):
        org = self._linked(runtime, tenant)
        runtime.org_service.apply_billing_event("evt_1", "invoice.payment_failed", "cus_123")
        runtime.org_service.apply_billing_event("evt_2", "invoice.paid", "cus_123")
        repeat = runtime.org_service.apply_billing_event("evt_1", "invoice.payment_failed", "cus_123")
        assert not repeat.applied and repeat.reason == "duplicate"
        assert runtime.metadata_service.load_org(org.id).billing.status == BillingStatus.ACTIVE
        assert audit_actions(runtime, org.id).count("billing.invoice-payment-failed") == 1

    def test_subscription_lifecycle(self, runtime, tenant):
        org = self._linked(runtime, tenant)
        runtime.org_service.apply_billing_event(
            "evt_1", "subscription-updated", "cus_123", subscription_ref="sub_9", subscription_status="active"
        )
        billing = runtime.metadata_service.load_org(org.id).billing
        assert billing.status == BillingStatus.ACTIVE and billing.subscription_ref == "sub_9"
        runtime.org_service.apply_billing_event("evt_2", "customer.subscription.deleted", "cus_123")
        assert runtime.metadata_service.load_org(org.id).billing.status == BillingStatus.CANCELED

    def test_unknown_customer_is_acknowledged(self, runtime, tenant):
        result = runtime.org_service.apply_billing_event("evt_1", "invoice-paid", "cus_missing")
        assert not result.applied and result.reason == "unknown-customer"

    def test_unsupported_event_type(self, runtime, tenant):
        with pytest.raises(InvalidInput):
            runtime.org_service.apply_billing_event("evt_1", "charge.refunded", "cus_123")

    def test_customer_reference_is_unique(self, runtime, tenant):
        self._linked(runtime, tenant)
        _, outsider = runtime.org_service.signup("Other LLP", "owner@other.test", "subject-other")
        with pytest.raises(Conflict):
            runtime.org_service.link_billing_customer(outsider, "cus_123")
