"""Signup through upload, share-based delete and audit review in one flow."""

from __future__ import annotations

import pytest

from conftest import audit_actions
from docvault.config import MIB
from docvault.errors import Forbidden
from docvault.models import Role


def test_member_delete_requires_an_explicit_grant(runtime, tenant, add_member):
    org, owner = tenant
    member = add_member(Role.MEMBER)

    plan = runtime.upload_service.initiate(org, member, "engagement-letter.pdf", 6 * MIB, "application/pdf", "/clients")
    runtime.upload_service.complete(plan.session_id, member, {1: "etag-1", 2: "etag-2"})

    with pytest.raises(Forbidden):
        runtime.metadata_service.delete_file(member, plan.file_id)
    assert "file.deleted" not in audit_actions(runtime, org.id)

    runtime.sharing_service.create_share(
        owner, plan.file_id, "user-grant", permissions=["delete"], target_actor_id=member.id
    )
    deleted = runtime.metadata_service.delete_file(member, plan.file_id)

    assert deleted.is_deleted
    assert deleted.deleted_by == member.id
    assert audit_actions(runtime, org.id).count("file.deleted") == 1

    trail = runtime.audit.query(owner)
    assert [record.action for record in trail][-1] == "file.deleted"
    assert trail[-1].actor_id == member.id
    assert trail[-1].metadata["fileName"] == "engagement-letter.pdf"


def test_every_mutation_is_audited(runtime, tenant, add_member, upload_file):
    org, owner = tenant
    member = add_member(Role.MEMBER)
    record = upload_file(member)
    runtime.metadata_service.update_file(member, record.id, 1, name="renamed.pdf")
    runtime.sharing_service.create_share(owner, record.id, "link-grant", permissions=["read"])
    runtime.user_service.change_role(owner, member.id, Role.MANAGER)

    actions = audit_actions(runtime, org.id)
    for expected in (
        "org.created",
        "user.invited",
        "user.invite.accepted",
        "file.upload.initiated",
        "file.upload.completed",
        "file.updated",
        "file.shared",
        "user.role.updated",
    ):
        assert expected in actions


def test_activity_feed_follows_the_audit_trail(runtime, tenant, upload_file):
    org, owner = tenant
    record = upload_file(owner)
    events = runtime.activity_service.feed(owner, limit=5)
    assert events[0].payload["org_id"] == org.id
    assert any(envelope.payload.get("resource_id") == record.id for envelope in events)

    _, outsider = runtime.org_service.signup("Other LLP", "owner@other.test", "subject-other")
    assert all(envelope.payload["org_id"] == outsider.org_id for envelope in runtime.activity_service.feed(outsider))
