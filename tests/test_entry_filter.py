from datetime import timedelta

import pytest

from conftest import NOW, FakeAssessor, FakeTracker, carrier_benchmark, days_ago, make_lookup, make_shipment, make_ticket, status_of
from transit_watch.config import Settings
from transit_watch.engine.checkpoints import CheckpointStore
from transit_watch.engine.entry_filter import run_monitoring_entry
from transit_watch.errors import AssessmentError, TrackingError
from transit_watch.schemas import BenchmarkKind, EligibilityStatus, StatusBadge


@pytest.fixture
def stocked(repo):
    repo.benchmarks[(BenchmarkKind.CARRIER_SERVICE, "CarrierX")] = carrier_benchmark(avg=6.0, count=50)
    repo.add_shipment(make_shipment("S1", label_days=20))
    return repo


def run(repo, tracker, settings, **kw):
    return run_monitoring_entry(repo, tracker, settings=settings, now=NOW, **kw)


def test_old_silent_shipment_enrolls_as_eligible(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup()})

    summary = run(stocked, tracker, settings)

    assert summary.success is True
    assert summary.counts["candidates"] == 1
    assert summary.counts["added"] == 1
    record = stocked.record("S1")
    assert record.claim_eligibility_status == EligibilityStatus.ELIGIBLE
    assert record.external_tracking_id == "tm-1"
    assert record.days_in_transit == 20
    assert record.days_since_last_update == 16
    assert record.eligible_after == (days_ago(16) + timedelta(days=15)).date()
    assert record.next_check_at > NOW
    assert record.assessment.status_badge == StatusBadge.LOST
    assert record.first_checked_at == NOW
    # First lookup for a shipment carries no stored provider id.
    assert tracker.calls == [("TRKS1", "CarrierX", None)]


def test_existing_claim_enrolls_as_claim_filed(stocked, settings):
    stocked.add_ticket(make_ticket(shipment_id="S1"))
    run(stocked, FakeTracker({"TRKS1": make_lookup()}), settings)
    assert status_of(stocked, "S1") == EligibilityStatus.CLAIM_FILED


def test_recent_scan_enrolls_at_risk(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup(scans=[(5, "Departed facility")])})
    run(stocked, tracker, settings)
    assert status_of(stocked, "S1") == EligibilityStatus.AT_RISK


def test_loss_admission_enrolls_eligible(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup(scans=[(3, "Unable to locate package")])})
    run(stocked, tracker, settings)
    assert status_of(stocked, "S1") == EligibilityStatus.ELIGIBLE


def test_rerun_does_not_duplicate(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup()})
    run(stocked, tracker, settings)
    second = run(stocked, tracker, settings)

    assert second.counts.get("added", 0) == 0
    assert second.counts["skipped"] == 1
    assert len(stocked.monitoring) == 1
    assert len(tracker.calls) == 1


def test_checkpoints_are_stored_once(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup()})
    run(stocked, tracker, settings)
    stocked.monitoring.clear()
    run(stocked, tracker, settings)
    assert len(stocked.checkpoints) == 2


def test_stored_delivery_skips_provider(stocked, settings):
    CheckpointStore(stocked).record(make_shipment("S1"), make_lookup(scans=[(2, "Delivered, In/At Mailbox")]))
    tracker = FakeTracker()

    summary = run(stocked, tracker, settings)

    assert summary.counts["delivered"] == 1
    assert tracker.calls == []
    assert "S1" not in stocked.monitoring


def test_delivered_lookup_is_not_enrolled(stocked, settings):
    tracker = FakeTracker({"TRKS1": make_lookup(status="delivered", scans=[(1, "Delivered")])})

    summary = run(stocked, tracker, settings)

    assert summary.counts["delivered"] == 1
    assert "S1" not in stocked.monitoring
    assert stocked.checkpoints


def test_below_threshold_is_left_alone(repo, settings):
    repo.benchmarks[(BenchmarkKind.CARRIER_SERVICE, "CarrierX")] = carrier_benchmark(avg=6.0)
    repo.add_shipment(make_shipment("S1", label_days=5))
    repo.add_shipment(make_shipment("S2", label_days=2))
    tracker = FakeTracker()

    summary = run(repo, tracker, settings)

    assert summary.counts["candidates"] == 1
    assert summary.counts["below_threshold"] == 1
    assert tracker.calls == []
    assert repo.monitoring == {}


def test_fallback_threshold_without_benchmarks(repo, settings):
    repo.add_shipment(make_shipment("S1", label_days=9))
    repo.add_shipment(make_shipment("S2", label_days=7))
    tracker = FakeTracker({"TRKS1": make_lookup(scans=[(4, "Departed facility")])})

    summary = run(repo, tracker, settings)

    assert summary.counts["added"] == 1
    assert summary.counts["below_threshold"] == 1
    assert set(repo.monitoring) == {"S1"}


def test_tracking_failure_is_isolated(stocked, settings):
    stocked.add_shipment(make_shipment("S2", label_days=19))
    tracker = FakeTracker({
        "TRKS1": TrackingError("trackings/get rejected: 4101 invalid courier"),
        "TRKS2": make_lookup(tracking_number="TRKS2"),
    })

    summary = run(stocked, tracker, settings)

    assert summary.success is True
    assert summary.error_count == 1
    assert summary.errors[0].startswith("S1:")
    assert summary.counts["added"] == 1
    assert set(stocked.monitoring) == {"S2"}


def test_checkpoint_storage_failure_only_warns(stocked, settings):
    stocked.fail_on.add("insert_checkpoints")
    summary = run(stocked, FakeTracker({"TRKS1": make_lookup()}), settings)
    assert summary.counts["added"] == 1
    assert summary.warnings


def test_failing_assessor_falls_back_to_rules(stocked, settings):
    ai = FakeAssessor(error=AssessmentError("rate limited"))
    summary = run(stocked, FakeTracker({"TRKS1": make_lookup()}), settings, assessor=ai)
    assert summary.counts["added"] == 1
    assert len(ai.calls) == 1
    assert stocked.record("S1").assessment.source == "rules"


def test_candidate_query_failure_fails_sweep(stocked, settings):
    stocked.fail_on.add("fetch_monitoring_candidates")
    summary = run(stocked, FakeTracker(), settings)
    assert summary.success is False
    assert summary.error_count == 1


def test_spent_budget_stops_early(stocked):
    summary = run(stocked, FakeTracker({"TRKS1": make_lookup()}), Settings(sweep_budget_seconds=0.0))
    assert summary.stopped_early is True
    assert stocked.monitoring == {}
