"""Tests for CollectionMonitor health reporting."""

from datetime import timedelta

from collection.recorder import CollectionRecorder
from inventory.schemas.collection import DataSource, SourceRegion
from monitoring.pipeline_monitor import CollectionMonitor, HealthReport

from conftest import T0


def make_source(source_id: str, status: str) -> DataSource:
    return DataSource(
        id=source_id,
        name=f"Source {source_id}",
        region=SourceRegion(state="AL"),
        collector_type="json-file",
        status=status,
    )


def test_health_report_defaults() -> None:
    r = HealthReport()
    assert r.total_sources == 0
    assert r.last_collection_time is None


def test_empty_store(store) -> None:
    report = CollectionMonitor(store).get_collection_health(now=T0)
    assert report.total_sources == 0
    assert report.avg_success_rate == 0.0


def test_health_over_sources(store, clock) -> None:
    for source_id, status in [("a", "active"), ("b", "active"), ("c", "inactive")]:
        store.save_data_source(make_source(source_id, status))
    recorder = CollectionRecorder(store, clock=clock)
    recorder.record_run("a", ["p1"], 10.0, True)
    recorder.record_run("a", [], 10.0, True)
    clock.advance(hours=2)
    recorder.record_run("b", [], 10.0, False, "HTTP 500")

    monitor = CollectionMonitor(store, recorder=recorder, clock=clock)
    report = monitor.get_collection_health(now=T0 + timedelta(hours=3))

    assert report.total_sources == 3
    assert report.active_sources == 1
    assert report.error_sources == 1
    assert report.inactive_sources == 1
    assert report.failing_source_ids == ["b"]
    assert report.avg_success_rate == 50.0
    assert report.last_collection_time == (T0 + timedelta(hours=2)).isoformat()
    # a collected at T0 and b at T0+2h, both daily: neither due yet
    assert report.due_sources == 0

    later = monitor.get_collection_health(now=T0 + timedelta(days=2))
    assert later.due_sources == 2
