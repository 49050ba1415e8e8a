from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from transit_watch.config import Settings
from transit_watch.errors import NotificationError, PersistenceError
from transit_watch.schemas import (
    BenchmarkEntry,
    BenchmarkKind,
    Checkpoint,
    ClaimStatus,
    ClaimTicket,
    EligibilityStatus,
    MonitoringRecord,
    ShipmentRecord,
    TERMINAL_STATUSES,
)
from transit_watch.services.trackingmore import ProviderCheckpoint, TrackingLookup
from transit_watch.timeutils import parse_ts

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def days_ago(n: float) -> datetime:
    return NOW - timedelta(days=n)


def make_shipment(shipment_id="S1", label_days=20, **kw) -> ShipmentRecord:
    data = {
        "shipment_id": shipment_id,
        "tracking_number": f"TRK{shipment_id}",
        "carrier": "CarrierX",
        "client_id": "C1",
        "ship_option": "146",
        "origin_country": "US",
        "destination_country": "US",
        "zone": 5,
        "label_created_at": days_ago(label_days),
        "delivered_at": None,
    }
    data.update(kw)
    return ShipmentRecord(**data)


def make_lookup(
    tracking_number="TRKS1",
    scans: Optional[list] = None,
    status="transit",
    external_id="tm-1",
    created=False,
) -> TrackingLookup:
    """`scans` is a list of (days_ago, description) newest first."""
    scans = scans if scans is not None else [(16, "Departed USPS Regional Facility"), (18, "Accepted at USPS Origin Facility")]
    cps = [ProviderCheckpoint(checkpoint_time=days_ago(d), description=desc, location="Paramount, CA, US") for d, desc in scans]
    return TrackingLookup(
        tracking_number=tracking_number,
        courier_code="usps",
        external_id=external_id,
        status=status,
        latest_event=scans[0][1] if scans else None,
        latest_checkpoint_time=days_ago(scans[0][0]) if scans else None,
        checkpoints=cps,
        created=created,
    )


def make_ticket(ticket_id="T1", status=ClaimStatus.UNDER_REVIEW, minutes_old=30, shipment_id="S1", **kw) -> ClaimTicket:
    created = NOW - timedelta(minutes=minutes_old)
    data = {
        "id": ticket_id,
        "ticket_number": 101,
        "issue_type": "Loss",
        "status": status,
        "shipment_id": shipment_id,
        "client_id": "C1",
        "created_at": created,
        # Events are stored the way the merchant portal writes them.
        "events": [{"status": ClaimStatus.UNDER_REVIEW, "note": "Submitted", "createdAt": created.isoformat(), "createdBy": "Merchant"}],
    }
    data.update(kw)
    return ClaimTicket(**data)


def carrier_benchmark(carrier="CarrierX", zone=5, avg=6.0, count=50) -> BenchmarkEntry:
    return BenchmarkEntry(
        kind=BenchmarkKind.CARRIER_SERVICE,
        key=carrier,
        display_name=carrier,
        zone_averages={zone: avg},
        zone_counts={zone: count},
        calculated_at=NOW,
    )


class FakeRepository:
    """In-memory stand-in for SupabaseRepository with the same guard semantics."""

    def __init__(self):
        self.shipments: dict[str, ShipmentRecord] = {}
        self.benchmarks: dict[tuple, BenchmarkEntry] = {}
        self.monitoring: dict[str, dict] = {}
        self.checkpoints: dict[str, Checkpoint] = {}
        self.tickets: dict[str, ClaimTicket] = {}
        self.clients: dict[str, str] = {}
        self.fail_on: set[str] = set()
        self.deleted: list[str] = []

    def _maybe_fail(self, name):
        if name in self.fail_on:
            raise PersistenceError(f"{name} failed: simulated")

    # ---- shipments ----

    def add_shipment(self, shipment: ShipmentRecord):
        self.shipments[shipment.shipment_id] = shipment

    def fetch_delivered_shipments(self, since):
        self._maybe_fail("fetch_delivered_shipments")
        return [
            s for s in self.shipments.values()
            if s.label_created_at and s.delivered_at and s.delivered_at >= since
        ]

    def fetch_monitoring_candidates(self, label_before, limit):
        self._maybe_fail("fetch_monitoring_candidates")
        rows = [
            s for s in self.shipments.values()
            if s.delivered_at is None and s.tracking_number and s.label_created_at and s.label_created_at <= label_before
        ]
        rows.sort(key=lambda s: s.label_created_at)
        return rows[:limit]

    def fetch_shipments(self, shipment_ids):
        return {i: self.shipments[i] for i in shipment_ids if i in self.shipments}

    def client_name(self, client_id):
        return self.clients.get(client_id)

    # ---- benchmarks ----

    def list_benchmarks(self):
        return list(self.benchmarks.values())

    def upsert_benchmark(self, entry: BenchmarkEntry):
        self._maybe_fail(f"upsert_benchmark:{entry.key}")
        self.benchmarks[(entry.kind, entry.key)] = entry

    # ---- monitoring ----

    def existing_monitored_ids(self, shipment_ids):
        return {i for i in shipment_ids if i in self.monitoring}

    def record(self, shipment_id) -> MonitoringRecord:
        return MonitoringRecord.from_row(self.monitoring[shipment_id])

    def put_record(self, record: MonitoringRecord):
        self.monitoring[record.shipment_id] = record.to_row()

    def insert_monitoring_record(self, record: MonitoringRecord) -> bool:
        self._maybe_fail("insert_monitoring_record")
        if record.shipment_id in self.monitoring:
            return False
        self.monitoring[record.shipment_id] = record.to_row()
        return True

    def update_monitoring_record(self, record: MonitoringRecord):
        self._maybe_fail("update_monitoring_record")
        row = record.to_row()
        row["first_checked_at"] = self.monitoring.get(record.shipment_id, {}).get("first_checked_at")
        self.monitoring[record.shipment_id] = row

    def delete_monitoring_record(self, shipment_id):
        self.monitoring.pop(shipment_id, None)
        self.deleted.append(shipment_id)

    def fetch_due_records(self, now, limit):
        terminal = {s.value for s in TERMINAL_STATUSES}
        rows = [
            r for r in self.monitoring.values()
            if r.get("ai_next_check_at") and parse_ts(r["ai_next_check_at"]) <= now
            and r.get("claim_eligibility_status") not in terminal
        ]
        rows.sort(key=lambda r: parse_ts(r["ai_next_check_at"]))
        return [dict(r) for r in rows[:limit]]

    def mirror_claim_resolution(self, shipment_id, new_status, guard):
        row = self.monitoring.get(shipment_id)
        if row is None or row.get("claim_eligibility_status") not in {g.value for g in guard}:
            return 0
        row["claim_eligibility_status"] = new_status.value
        return 1

    # ---- checkpoints ----

    def insert_checkpoints(self, checkpoints):
        self._maybe_fail("insert_checkpoints")
        new = 0
        for cp in checkpoints:
            if cp.content_hash not in self.checkpoints:
                self.checkpoints[cp.content_hash] = cp
                new += 1
        return new

    def get_checkpoints(self, shipment_id):
        self._maybe_fail("get_checkpoints")
        cps = [c for c in self.checkpoints.values() if c.shipment_id == shipment_id]
        return sorted(cps, key=lambda c: c.checkpoint_time, reverse=True)

    # ---- tickets ----

    def add_ticket(self, ticket: ClaimTicket):
        self.tickets[ticket.id] = ticket

    def has_open_claim(self, shipment_id):
        return any(
            t.shipment_id == shipment_id and t.ticket_type == "Claim" and t.deleted_at is None
            for t in self.tickets.values()
        )

    def fetch_claims_to_advance(self, created_before):
        return [
            t.to_row() for t in self.tickets.values()
            if t.ticket_type == "Claim" and t.status == ClaimStatus.UNDER_REVIEW
            and t.deleted_at is None and t.created_at <= created_before
        ]

    def transition_claim(self, ticket_id, from_status, to_status, events, now):
        self._maybe_fail("transition_claim")
        t = self.tickets.get(ticket_id)
        if t is None or t.status != from_status:
            return False
        self.tickets[ticket_id] = t.model_copy(update={"status": to_status, "events": list(events)})
        return True

    def fetch_resolved_claims(self):
        return [
            t.to_row() for t in self.tickets.values()
            if t.ticket_type == "Claim" and t.status in (ClaimStatus.RESOLVED, ClaimStatus.CREDIT_DENIED) and t.shipment_id
        ]


class FakeTracker:
    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def lookup(self, tracking_number, carrier, external_id=None):
        self.calls.append((tracking_number, carrier, external_id))
        result = self.results[tracking_number]
        if isinstance(result, Exception):
            raise result
        return result


class FakeAssessor:
    def __init__(self, result=None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls = []

    def assess(self, ctx):
        self.calls.append(ctx)
        if self.error:
            raise self.error
        return self.result


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def notify(self, recipients, subject, body, attachments=None):
        if self.fail:
            raise NotificationError("smtp down")
        self.sent.append((list(recipients), subject, body))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(
        cron_secret="s3cret",
        partner_emails=("claims@fulfillment.example",),
        sweep_budget_seconds=1000.0,
    )


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def tracker():
    return FakeTracker()


def status_of(repo: FakeRepository, shipment_id: str) -> Optional[EligibilityStatus]:
    row = repo.monitoring.get(shipment_id)
    if row is None:
        return None
    return EligibilityStatus(row["claim_eligibility_status"])
