from __future__ import annotations

from docvault.config import ObservabilityConfig
from docvault.telemetry import TelemetryCollector


def test_totals_outlive_the_sample_buffer():
    telemetry = TelemetryCollector(ObservabilityConfig(metric_history=2))
    for org_id in ("org-a", "org-a", "org-b"):
        telemetry.emit_metric("uploads.completed", 1, {"org_id": org_id})

    assert len(telemetry.samples) == 2
    assert telemetry.counter("uploads.completed") == 3
    assert telemetry.counter("uploads.completed", org_id="org-b") == 1
    assert telemetry.snapshot(["uploads.completed", "audit.records"]) == {
        "uploads.completed": 3.0,
        "audit.records": 0.0,
    }


def test_service_events_carry_their_source(runtime, tenant):
    org, _ = tenant
    created = [event for event in runtime.telemetry.events if event.message == "org_created"]
    assert [(event.event_type, event.attributes["org_id"]) for event in created] == [("OrganizationService", org.id)]


def test_runtime_snapshot_reports_upload_counters(runtime, tenant, upload_file):
    _, owner = tenant
    upload_file(owner)
    snapshot = runtime.get_metrics_snapshot()
    assert snapshot["uploads.initiated"] == snapshot["uploads.completed"] == 1
    assert snapshot["store.files"] == 1
    assert snapshot["bus.delivery_failures"] == 0
