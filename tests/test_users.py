from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import audit_actions
from docvault.errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthenticated
from docvault.models import Role, UserStatus, utcnow
from docvault.storage.document_store import USERS


def test_invite_stores_only_a_token_digest(runtime, tenant):
    org, owner = tenant
    invited, token = runtime.user_service.invite(owner, "Associate@Acme.test", "Member")
    stored = runtime.store.get(USERS, invited.id)
    assert stored.status == UserStatus.INVITED
    assert stored.invite_token and stored.invite_token != token
    assert stored.invite_expires_at > utcnow() + timedelta(days=6)
    assert "user.invited" in audit_actions(runtime, org.id)


def test_invite_rejects_duplicates_and_bad_roles(runtime, tenant):
    _, owner = tenant
    runtime.user_service.invite(owner, "associate@acme.test", Role.MEMBER)
    with pytest.raises(Conflict):
        runtime.user_service.invite(owner, "ASSOCIATE@acme.test", Role.GUEST)
    with pytest.raises(InvalidInput):
        runtime.user_service.invite(owner, "second@acme.test", Role.OWNER)
    with pytest.raises(InvalidInput):
        runtime.user_service.invite(owner, "not-an-email", Role.GUEST)


def test_inviter_cannot_outrank_itself(runtime, tenant, add_member):
    admin = add_member(Role.ADMIN)
    runtime.user_service.invite(admin, "peer@acme.test", Role.ADMIN)
    manager = add_member(Role.MANAGER)
    with pytest.raises(Forbidden):
        runtime.user_service.invite(manager, "guest@acme.test", Role.GUEST)


def test_accept_activates_and_authenticates(runtime, tenant):
    _, owner = tenant
    invited, token = runtime.user_service.invite(owner, "associate@acme.test", Role.MEMBER)
    verifier = runtime.identity.verifier
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate(verifier.issue("subject-associate"))

    active = runtime.user_service.accept_invite(token, "subject-associate")
    assert active.status == UserStatus.ACTIVE
    assert runtime.identity.authenticate(verifier.issue("subject-associate")).id == invited.id
    with pytest.raises(NotFound):
        runtime.user_service.accept_invite(token, "subject-someone-else")


def test_expired_invites_cannot_be_accepted(runtime, tenant):
    _, owner = tenant
    invited, token = runtime.user_service.invite(owner, "late@acme.test", Role.GUEST)
    stored = runtime.store.get(USERS, invited.id)
    stored.invite_expires_at = utcnow() - timedelta(minutes=1)
    runtime.store.update(USERS, stored)
    with pytest.raises(NotFound):
        runtime.user_service.accept_invite(token, "subject-late")


def test_role_changes_follow_rank(runtime, tenant, add_member):
    org, owner = tenant
    admin = add_member(Role.ADMIN)
    member = add_member(Role.MEMBER)

    promoted = runtime.user_service.change_role(admin, member.id, Role.MANAGER)
    assert promoted.role == Role.MANAGER
    with pytest.raises(Forbidden):
        runtime.user_service.change_role(admin, member.id, Role.ADMIN)
    with pytest.raises(Forbidden):
        runtime.user_service.change_role(admin, owner.id, Role.GUEST)
    assert audit_actions(runtime, org.id).count("user.role.updated") == 1


def test_removed_users_can_no_longer_authenticate(runtime, tenant, add_member):
    _, owner = tenant
    member = add_member(Role.MEMBER)
    token = runtime.identity.verifier.issue(member.subject)
    assert runtime.identity.authenticate(token).id == member.id

    removed = runtime.user_service.remove_user(owner, member.id)
    assert removed.status == UserStatus.SUSPENDED
    assert runtime.user_service.remove_user(owner, member.id).status == UserStatus.SUSPENDED
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate(token)


def test_members_cannot_manage_users(runtime, tenant, add_member):
    _, owner = tenant
    member = add_member(Role.MEMBER)
    with pytest.raises(Forbidden):
        runtime.user_service.remove_user(member, owner.id)
    with pytest.raises(Forbidden):
        runtime.user_service.list_users(member)


def test_users_of_other_orgs_are_not_found(runtime, tenant):
    _, owner = tenant
    _, outsider = runtime.org_service.signup("Other LLP", "owner@other.test", "subject-other")
    with pytest.raises(NotFound):
        runtime.user_service.remove_user(owner, outsider.id)


def test_rejects_forged_and_expired_credentials(runtime, tenant):
    _, owner = tenant
    verifier = runtime.identity.verifier
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate(None)
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate("not.a.jwt")
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate(verifier.issue(owner.subject, ttl_seconds=-10))
    forged = verifier.issue(owner.subject)[:-2] + "xx"
    with pytest.raises(Unauthenticated):
        runtime.identity.authenticate(forged)
