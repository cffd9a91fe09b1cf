from __future__ import annotations

import itertools
import os

import pytest

# The API module bootstraps from the environment at import time.
os.environ.setdefault("DOCVAULT_AUTH_SECRET", "docvault-test-secret")
os.environ.setdefault("DOCVAULT_SIGNING_SECRET", "docvault-test-signing-secret")

from docvault.config import DocVaultConfig  # noqa: E402
from docvault.runtime import DocVaultRuntime  # noqa: E402
from docvault.storage.document_store import AUDIT_RECORDS  # noqa: E402

_subjects = itertools.count(1)


def make_config() -> DocVaultConfig:
    cfg = DocVaultConfig.default()
    cfg.auth.shared_secret = "docvault-test-secret"
    cfg.object_storage.signing_secret = "docvault-test-signing-secret"
    return cfg


@pytest.fixture
def runtime():
    return DocVaultRuntime.bootstrap(make_config())


@pytest.fixture
def tenant(runtime):
    """A freshly signed-up organization and its Owner."""
    return runtime.org_service.signup("Acme Legal", "owner@acme.test", "subject-owner")


@pytest.fixture
def add_member(runtime, tenant):
    _, owner = tenant

    def _add(role, email=None):
        number = next(_subjects)
        _, token = runtime.user_service.invite(owner, email or f"user{number}@acme.test", role)
        return runtime.user_service.accept_invite(token, f"subject-{number}")

    return _add


@pytest.fixture
def upload_file(runtime, tenant):
    org, _ = tenant

    def _upload(actor, name="brief.pdf", size=1024, path="/"):
        plan = runtime.upload_service.initiate(org, actor, name, size, "application/pdf", path)
        tags = {part.part_number: f"etag-{part.part_number}" for part in plan.parts}
        runtime.upload_service.complete(plan.session_id, actor, tags)
        return runtime.metadata_service.load_file(org.id, plan.file_id)

    return _upload


def audit_actions(runtime, org_id):
    records = sorted(runtime.store.query(AUDIT_RECORDS, "org_id", org_id), key=lambda record: record.timestamp)
    return [record.action for record in records]
