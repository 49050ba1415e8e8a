from unittest.mock import MagicMock

import pytest

from conftest import NOW, days_ago
from transit_watch.engine.eligibility import MIRROR_GUARD
from transit_watch.errors import PersistenceError
from transit_watch.schemas import (
    ClaimEvent,
    ClaimStatus,
    ClaimTicket,
    EligibilityStatus,
    MonitoringRecord,
    RiskAssessment,
    RiskLevel,
    StatusBadge,
)
from transit_watch.services.repository import PAGE_SIZE, SupabaseRepository

CHAIN = ("select", "eq", "in_", "is_", "gte", "lte", "order", "range", "limit", "update", "upsert", "delete", "or_")


def query(*pages):
    """A query builder whose every filter returns itself; execute() yields `pages` in turn."""
    q = MagicMock()
    for name in CHAIN:
        getattr(q, name).return_value = q
    q.not_ = q
    q.execute.side_effect = [MagicMock(data=p) for p in pages]
    return q


def repo_for(q):
    db = MagicMock()
    db.table.return_value = q
    return SupabaseRepository(db), db


def shipment_row(i):
    return {
        "shipment_id": i, "tracking_id": f"TRK{i}", "carrier": "USPS", "ship_option": 146, "zone_used": 4,
        "event_labeled": "2025-05-01T10:00:00+00:00", "event_delivered": "2025-05-05T10:00:00+00:00",
    }


def test_delivered_shipments_are_paged():
    q = query([shipment_row(i) for i in range(PAGE_SIZE)], [shipment_row(PAGE_SIZE)])
    repo, db = repo_for(q)

    shipments = repo.fetch_delivered_shipments(NOW)

    assert len(shipments) == PAGE_SIZE + 1
    assert shipments[0].shipment_id == "0"
    assert shipments[0].ship_option == "146"
    assert shipments[0].zone == 4
    assert [c.args for c in q.range.call_args_list] == [(0, PAGE_SIZE - 1), (PAGE_SIZE, 2 * PAGE_SIZE - 1)]
    db.table.assert_called_with("shipments")


def test_transition_is_guarded_on_current_status():
    q = query([])
    repo, db = repo_for(q)
    event = ClaimEvent(status=ClaimStatus.CREDIT_REQUESTED, created_at=NOW)

    moved = repo.transition_claim("T1", ClaimStatus.UNDER_REVIEW, ClaimStatus.CREDIT_REQUESTED, [event], NOW)

    assert moved is False
    db.table.assert_called_with("care_tickets")
    assert [c.args for c in q.eq.call_args_list] == [("id", "T1"), ("status", ClaimStatus.UNDER_REVIEW)]
    update = q.update.call_args.args[0]
    assert update["status"] == ClaimStatus.CREDIT_REQUESTED
    assert update["events"][0]["createdBy"] == "System"
    assert "createdAt" in update["events"][0]


def test_mirror_is_guarded_and_counts_rows():
    q = query([{"shipment_id": "S1"}])
    repo, _ = repo_for(q)

    assert repo.mirror_claim_resolution("S1", EligibilityStatus.APPROVED, MIRROR_GUARD) == 1
    column, allowed = q.in_.call_args.args
    assert column == "claim_eligibility_status"
    assert sorted(allowed) == ["at_risk", "claim_filed", "eligible"]


def test_insert_if_absent_reports_existing_row():
    q = query([])
    repo, _ = repo_for(q)
    assert repo.insert_monitoring_record(MonitoringRecord(shipment_id="S1")) is False
    assert q.upsert.call_args.kwargs == {"on_conflict": "shipment_id", "ignore_duplicates": True}


def test_empty_checkpoint_batch_skips_the_store():
    q = query()
    repo, db = repo_for(q)
    assert repo.insert_checkpoints([]) == 0
    db.table.assert_not_called()


def test_store_failure_becomes_persistence_error():
    q = query()
    q.execute.side_effect = RuntimeError("JWT expired")
    repo, _ = repo_for(q)

    with pytest.raises(PersistenceError, match="fetch due records failed: JWT expired"):
        repo.fetch_due_records(NOW, 100)


def test_platform_ticket_row_parses_and_writes_back_camel_case():
    row = {
        "id": 42, "ticket_number": 7, "ticket_type": "Claim", "issue_type": "Loss", "status": "Under Review",
        "shipment_id": 9001, "client_id": "C1", "created_at": "2025-06-01T11:00:00+00:00", "deleted_at": None,
        "events": [{"status": "Under Review", "note": "Submitted", "createdAt": "2025-06-01T11:00:00.000Z", "createdBy": "Merchant"}],
    }
    q = query([row], [{"id": 42}])
    repo, _ = repo_for(q)

    rows = repo.fetch_claims_to_advance(NOW)
    ticket = ClaimTicket.from_row(rows[0])
    event = ClaimEvent(status=ClaimStatus.CREDIT_REQUESTED, created_at=NOW)
    assert repo.transition_claim(ticket.id, ticket.status, ClaimStatus.CREDIT_REQUESTED, [event] + ticket.events, NOW)

    assert ticket.id == "42"
    assert ticket.shipment_id == "9001"
    assert ticket.events[0].created_by == "Merchant"
    written = q.update.call_args.args[0]["events"]
    assert [e["createdBy"] for e in written] == ["System", "Merchant"]
    assert set(written[1]) == {"status", "note", "createdAt", "createdBy"}


def test_monitoring_record_uses_stored_column_names():
    assessment = RiskAssessment(
        status_badge=StatusBadge.STALLED, risk_level=RiskLevel.HIGH, reshipment_urgency=64,
        confidence=70, narrative="Stalled", assessed_at=NOW,
    )
    record = MonitoringRecord(
        shipment_id="S1",
        external_tracking_id="tm-1",
        claim_eligibility_status=EligibilityStatus.AT_RISK,
        last_scan_at=days_ago(9),
        assessment=assessment,
        next_check_at=NOW,
    )

    row = record.to_row()

    assert row["trackingmore_tracking_id"] == "tm-1"
    assert row["ai_status_badge"] == "STALLED"
    assert row["ai_risk_level"] == "high"
    assert row["ai_reshipment_urgency"] == 64
    assert row["ai_assessment"]["narrative"] == "Stalled"
    assert row["ai_assessed_at"] == row["ai_assessment"]["assessed_at"]
    assert {"ai_next_check_at", "last_scan_date"} <= set(row)
    assert not {"external_tracking_id", "last_scan_at", "next_check_at", "assessment"} & set(row)
    assert MonitoringRecord.from_row({**row, "id": 17}).model_dump() == record.model_dump()


def test_due_records_filter_on_ai_next_check_at():
    q = query([])
    repo, _ = repo_for(q)
    repo.fetch_due_records(NOW, 10)
    assert q.lte.call_args.args[0] == "ai_next_check_at"
    assert q.order.call_args.args == ("ai_next_check_at",)
