from __future__ import annotations

import threading

import pytest

from conftest import audit_actions, make_config
from docvault.config import MIB
from docvault.errors import Conflict, DependencyFailure, Forbidden, IncompleteUpload, InvalidUploadSize, NotFound
from docvault.models import FileStatus, Role, UploadState
from docvault.runtime import DocVaultRuntime
from docvault.storage.document_store import AUDIT_RECORDS, FILES, UPLOAD_SESSIONS, InMemoryDocumentStore
from docvault.storage.object_store import LocalSignedObjectStore, ObjectStoreError


def _tags(plan):
    return {part.part_number: f"etag-{part.part_number}" for part in plan.parts}


def test_initiate_plans_one_reference_per_part(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB, "video/mp4", "/evidence")
    assert [part.part_number for part in plan.parts] == [1, 2, 3]
    assert plan.part_size == 5 * MIB
    assert plan.storage_key == f"{org.storage.prefix}/evidence/deposition.mp4"
    assert all(runtime.objects.verify(part.url) for part in plan.parts)

    session = runtime.store.get(UPLOAD_SESSIONS, plan.session_id)
    assert session.state == UploadState.PARTS_PENDING
    record = runtime.metadata_service.load_file(org.id, plan.file_id)
    assert record.status == FileStatus.PENDING
    assert runtime.metadata_service.list_files(owner, "/evidence") == []
    assert "file.upload.initiated" in audit_actions(runtime, org.id)


def test_exact_multiple_of_part_size(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "exact.bin", 10 * MIB)
    assert len(plan.parts) == 2


@pytest.mark.parametrize("size", [0, -1])
def test_rejects_non_positive_sizes(runtime, tenant, size):
    org, owner = tenant
    with pytest.raises(InvalidUploadSize):
        runtime.upload_service.initiate(org, owner, "empty.bin", size)
    assert runtime.store.count(FILES) == 0


def test_rejects_uploads_needing_too_many_parts():
    cfg = make_config()
    cfg.object_storage.max_part_count = 2
    runtime = DocVaultRuntime.bootstrap(cfg)
    org, owner = runtime.org_service.signup("Acme", "owner@acme.test", "subject-owner")
    with pytest.raises(InvalidUploadSize):
        runtime.upload_service.initiate(org, owner, "large.bin", 12 * MIB)
    assert runtime.store.count(UPLOAD_SESSIONS) == 0


def test_guest_cannot_initiate(runtime, tenant, add_member):
    org, _ = tenant
    guest = add_member(Role.GUEST)
    with pytest.raises(Forbidden):
        runtime.upload_service.initiate(org, guest, "nope.txt", 10)


def test_two_of_three_parts_then_all_three_then_a_repeat(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB)
    with pytest.raises(IncompleteUpload) as excinfo:
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1", 2: "etag-2"})
    assert excinfo.value.missing_parts == (3,)
    assert runtime.store.get(UPLOAD_SESSIONS, plan.session_id).state == UploadState.PARTS_PENDING
    assert "file.upload.completed" not in audit_actions(runtime, org.id)

    first = runtime.upload_service.complete(plan.session_id, owner, _tags(plan))
    repeat = runtime.upload_service.complete(plan.session_id, owner, _tags(plan))
    assert first.state == repeat.state == UploadState.COMPLETED
    assert repeat.completed_parts == {1: "etag-1", 2: "etag-2", 3: "etag-3"}
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1


def test_blank_tags_count_as_missing(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB)
    with pytest.raises(IncompleteUpload) as excinfo:
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1", 2: "etag-2", 3: " "})
    assert excinfo.value.missing_parts == (3,)


def test_complete_is_idempotent(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB)
    results = [runtime.upload_service.complete(plan.session_id, owner, _tags(plan)) for _ in range(3)]

    assert {result.state for result in results} == {UploadState.COMPLETED}
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1
    assert runtime.telemetry.counter("uploads.completed") == 1
    record = runtime.metadata_service.load_file(org.id, plan.file_id)
    assert record.status == FileStatus.FINALIZED
    assert [entry.id for entry in runtime.metadata_service.list_files(owner, "/")] == [plan.file_id]


def test_complete_accepts_string_part_numbers(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    session = runtime.upload_service.complete(plan.session_id, owner, {"1": "etag-1"})
    assert session.completed_parts == {1: "etag-1"}


def test_complete_with_different_tags_after_completion_conflicts(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    with pytest.raises(Conflict):
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-other"})


def test_abort_hides_the_file_and_is_idempotent(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    first = runtime.upload_service.abort(plan.session_id, owner)
    second = runtime.upload_service.abort(plan.session_id, owner)
    assert first.state == second.state == UploadState.ABORTED
    assert audit_actions(runtime, org.id).count("file.upload.aborted") == 1
    with pytest.raises(NotFound):
        runtime.metadata_service.load_file(org.id, plan.file_id)
    with pytest.raises(Conflict):
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})


def test_abort_after_completion_conflicts(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    with pytest.raises(Conflict):
        runtime.upload_service.abort(plan.session_id, owner)


def test_sessions_are_invisible_to_other_orgs(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    _, outsider = runtime.org_service.signup("Other LLP", "owner@other.test", "subject-other")
    with pytest.raises(NotFound):
        runtime.upload_service.complete(plan.session_id, outsider, {1: "etag-1"})
    with pytest.raises(NotFound):
        runtime.upload_service.initiate(org, outsider, "memo.txt", 100)


def test_completion_events_reach_the_bus(runtime, tenant):
    org, owner = tenant
    received = []
    runtime.bus.subscribe("uploads.completed", received.append)
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert [envelope.payload["session_id"] for envelope in received] == [plan.session_id]


class _FlakyObjectStore(LocalSignedObjectStore):
    def __init__(self, config):
        super().__init__(config)
        self.failures = 1

    def complete_multipart(self, address, upload_id, parts):
        if self.failures:
            self.failures -= 1
            raise ObjectStoreError("storage unavailable")
        super().complete_multipart(address, upload_id, parts)


def test_object_store_failure_surfaces_as_dependency_failure():
    cfg = make_config()
    runtime = DocVaultRuntime.bootstrap(cfg, objects=_FlakyObjectStore(cfg.object_storage))
    org, owner = runtime.org_service.signup("Acme", "owner@acme.test", "subject-owner")
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)

    with pytest.raises(DependencyFailure):
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert runtime.store.get(UPLOAD_SESSIONS, plan.session_id).state == UploadState.PARTS_PENDING

    session = runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert session.state == UploadState.COMPLETED


def test_describe_reports_progress(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB)
    status = runtime.upload_service.describe(plan.session_id, owner)
    assert status["state"] == "parts-pending"
    assert status["part_count"] == 3
    assert status["missing_parts"] == [1, 2, 3]


class _OutageStore(InMemoryDocumentStore):
    """Fails the next write to ``collection`` once armed."""

    def __init__(self):
        super().__init__()
        self.fail_next = None

    def _maybe_fail(self, collection):
        if collection == self.fail_next:
            self.fail_next = None
            raise DependencyFailure(f"{collection} unavailable")

    def insert(self, collection, entity):
        self._maybe_fail(collection)
        super().insert(collection, entity)

    def update(self, collection, entity, *, condition=None):
        self._maybe_fail(collection)
        super().update(collection, entity, condition=condition)


@pytest.mark.parametrize("failing_collection", [FILES, AUDIT_RECORDS])
def test_retry_after_partial_completion_finalizes_the_file(failing_collection):
    store = _OutageStore()
    runtime = DocVaultRuntime.bootstrap(make_config(), store=store)
    org, owner = runtime.org_service.signup("Acme", "owner@acme.test", "subject-owner")
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)

    store.fail_next = failing_collection
    with pytest.raises(DependencyFailure):
        runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert runtime.store.get(UPLOAD_SESSIONS, plan.session_id).state == UploadState.COMPLETED

    session = runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert session.state == UploadState.COMPLETED
    assert runtime.metadata_service.load_file(org.id, plan.file_id).status == FileStatus.FINALIZED
    assert [entry.id for entry in runtime.metadata_service.list_files(owner, "/")] == [plan.file_id]
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1

    runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1
    assert runtime.telemetry.counter("uploads.completed") == 1


def test_concurrent_duplicate_completions_both_succeed(runtime, tenant):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "deposition.mp4", 12 * MIB)
    barrier = threading.Barrier(2)
    results, errors = [], []

    def _complete():
        barrier.wait()
        try:
            results.append(runtime.upload_service.complete(plan.session_id, owner, _tags(plan)))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    workers = [threading.Thread(target=_complete) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert errors == []
    assert [result.state for result in results] == [UploadState.COMPLETED, UploadState.COMPLETED]
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1
    assert runtime.metadata_service.load_file(org.id, plan.file_id).status == FileStatus.FINALIZED
    assert runtime.store.get(UPLOAD_SESSIONS, plan.session_id).revision == 2


def test_losing_a_completion_race_still_reports_success(runtime, tenant, monkeypatch):
    org, owner = tenant
    plan = runtime.upload_service.initiate(org, owner, "memo.txt", 100)
    stale = runtime.store.get(UPLOAD_SESSIONS, plan.session_id)
    runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})

    # Replays the session snapshot read before the winner committed.
    monkeypatch.setattr(runtime.upload_service, "_load", lambda session_id, actor: stale)
    session = runtime.upload_service.complete(plan.session_id, owner, {1: "etag-1"})
    assert session.state == UploadState.COMPLETED
    assert audit_actions(runtime, org.id).count("file.upload.completed") == 1
