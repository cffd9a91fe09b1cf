from __future__ import annotations

import pytest

from docvault.errors import InvalidInput
from docvault.models import BillingState, IsolationMode, Organization, StorageConfig, utcnow
from docvault.services.tenant_keys import derive_key, normalize_path

SHARED = "docvault-shared"


def _org(org_id="org-a", mode=IsolationMode.SHARED_PREFIX, prefix="org-aaaa", bucket=None) -> Organization:
    return Organization(
        id=org_id,
        name=org_id,
        storage=StorageConfig(quota_bytes=1024, isolation_mode=mode, prefix=prefix, bucket=bucket),
        billing=BillingState(),
        created_at=utcnow(),
    )


@pytest.mark.parametrize(
    "raw,expected",
    [(None, "/"), ("", "/"), ("/", "/"), ("docs", "/docs"), ("//docs//2024/", "/docs/2024")],
)
def test_normalize_path(raw, expected):
    assert normalize_path(raw) == expected


def test_shared_prefix_keys_live_under_the_org_prefix():
    org = _org()
    assert derive_key(org, "a.pdf", "/", shared_bucket=SHARED).key == "org-aaaa/a.pdf"
    address = derive_key(org, "a.pdf", "/docs/2024", shared_bucket=SHARED)
    assert address.bucket == SHARED
    assert address.key == "org-aaaa/docs/2024/a.pdf"


def test_derivation_is_deterministic():
    org = _org()
    first = derive_key(org, "a.pdf", "docs", shared_bucket=SHARED)
    second = derive_key(org, "a.pdf", "/docs/", shared_bucket=SHARED)
    assert first == second


def test_distinct_orgs_never_collide():
    left = derive_key(_org("org-a", prefix="org-aaaa"), "a.pdf", "/docs", shared_bucket=SHARED)
    right = derive_key(_org("org-b", prefix="org-bbbb"), "a.pdf", "/docs", shared_bucket=SHARED)
    assert left != right
    assert not right.key.startswith("org-aaaa/")


def test_distinct_paths_yield_distinct_keys():
    org = _org()
    assert derive_key(org, "a.pdf", "/x", shared_bucket=SHARED) != derive_key(org, "a.pdf", "/y", shared_bucket=SHARED)


def test_dedicated_bucket_defaults_to_org_scoped_name():
    org = _org("org-d", mode=IsolationMode.DEDICATED_BUCKET)
    address = derive_key(org, "a.pdf", "/ignored", shared_bucket=SHARED)
    assert address.bucket == "docvault-shared-org-org-d"
    assert address.key == "a.pdf"


def test_dedicated_bucket_uses_configured_bucket():
    org = _org("org-d", mode=IsolationMode.DEDICATED_BUCKET, bucket="acme-vault")
    assert derive_key(org, "a.pdf", "/", shared_bucket=SHARED).bucket == "acme-vault"


@pytest.mark.parametrize("name", ["", "   ", "nested/a.pdf"])
def test_rejects_unusable_file_names(name):
    with pytest.raises(InvalidInput):
        derive_key(_org(), name, "/", shared_bucket=SHARED)
