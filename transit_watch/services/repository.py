import logging
from datetime import datetime
from typing import Iterable, Optional

from supabase import Client

from transit_watch.errors import PersistenceError
from transit_watch.schemas import (
    CLAIM_TICKET_TYPE,
    BenchmarkEntry,
    Checkpoint,
    ClaimEvent,
    ClaimStatus,
    EligibilityStatus,
    MonitoringRecord,
    ShipmentRecord,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

SHIPMENTS = "shipments"
BENCHMARKS = "transit_benchmarks"
MONITORING = "lost_in_transit_checks"
CHECKPOINTS = "tracking_checkpoints"
TICKETS = "care_tickets"
CLIENTS = "clients"

SHIPMENT_COLUMNS = (
    "shipment_id, tracking_id, carrier, client_id, ship_option, origin_country, "
    "destination_country, zone_used, event_labeled, event_delivered"
)

PAGE_SIZE = 1000
ID_CHUNK = 200


def _get_single(rowset):
    return rowset[0] if rowset else None


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _execute(query, what: str):
    try:
        return query.execute()
    except Exception as e:
        raise PersistenceError(f"{what} failed: {e}") from e


class SupabaseRepository:
    """All reads and writes the engine performs against the store."""

    def __init__(self, db: Client):
        self.db = db

    # ---- shipments (read-only) ----

    def fetch_delivered_shipments(self, since: datetime) -> list[ShipmentRecord]:
        rows = []
        start = 0
        while True:
            resp = _execute(
                self.db.table(SHIPMENTS)
                .select(SHIPMENT_COLUMNS)
                .not_.is_("event_labeled", "null")
                .not_.is_("event_delivered", "null")
                .gte("event_delivered", _iso(since))
                .order("event_delivered")
                .range(start, start + PAGE_SIZE - 1),
                "fetch delivered shipments",
            )
            batch = resp.data or []
            rows.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            start += PAGE_SIZE
        return [ShipmentRecord.from_row(r) for r in rows]

    def fetch_monitoring_candidates(self, label_before: datetime, limit: int) -> list[ShipmentRecord]:
        resp = _execute(
            self.db.table(SHIPMENTS)
            .select(SHIPMENT_COLUMNS)
            .is_("event_delivered", "null")
            .lte("event_labeled", _iso(label_before))
            .not_.is_("tracking_id", "null")
            .order("event_labeled")
            .limit(limit),
            "fetch monitoring candidates",
        )
        return [ShipmentRecord.from_row(r) for r in resp.data or []]

    def fetch_shipments(self, shipment_ids: Iterable[str]) -> dict[str, ShipmentRecord]:
        out: dict[str, ShipmentRecord] = {}
        for chunk in _chunks(list(shipment_ids), ID_CHUNK):
            resp = _execute(
                self.db.table(SHIPMENTS).select(SHIPMENT_COLUMNS).in_("shipment_id", chunk),
                "fetch shipments",
            )
            for row in resp.data or []:
                rec = ShipmentRecord.from_row(row)
                out[rec.shipment_id] = rec
        return out

    def client_name(self, client_id: Optional[str]) -> Optional[str]:
        if not client_id:
            return None
        resp = _execute(
            self.db.table(CLIENTS).select("company_name").eq("id", client_id).limit(1),
            "fetch client",
        )
        row = _get_single(resp.data)
        return row["company_name"] if row else None

    # ---- benchmarks ----

    def list_benchmarks(self) -> list[BenchmarkEntry]:
        resp = _execute(self.db.table(BENCHMARKS).select("*"), "list benchmarks")
        return [BenchmarkEntry.from_row(r) for r in resp.data or []]

    def upsert_benchmark(self, entry: BenchmarkEntry) -> None:
        _execute(
            self.db.table(BENCHMARKS).upsert(entry.to_row(), on_conflict="benchmark_type,benchmark_key"),
            f"upsert benchmark {entry.kind.value}/{entry.key}",
        )

    # ---- monitoring records ----

    def existing_monitored_ids(self, shipment_ids: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(list(shipment_ids), ID_CHUNK):
            resp = _execute(
                self.db.table(MONITORING).select("shipment_id").in_("shipment_id", chunk),
                "fetch monitored ids",
            )
            found.update(str(r["shipment_id"]) for r in resp.data or [])
        return found

    def insert_monitoring_record(self, record: MonitoringRecord) -> bool:
        """Insert-if-absent on shipment_id. Returns False when a row already existed."""
        resp = _execute(
            self.db.table(MONITORING).upsert(record.to_row(), on_conflict="shipment_id", ignore_duplicates=True),
            f"insert monitoring record {record.shipment_id}",
        )
        return bool(resp.data)

    def update_monitoring_record(self, record: MonitoringRecord) -> None:
        row = record.to_row()
        row.pop("first_checked_at", None)
        _execute(
            self.db.table(MONITORING).update(row).eq("shipment_id", record.shipment_id),
            f"update monitoring record {record.shipment_id}",
        )

    def delete_monitoring_record(self, shipment_id: str) -> None:
        _execute(
            self.db.table(MONITORING).delete().eq("shipment_id", shipment_id),
            f"delete monitoring record {shipment_id}",
        )

    def fetch_due_records(self, now: datetime, limit: int) -> list[dict]:
        """
        Raw rows due for re-assessment, oldest due first.
        Rows with a null status are included so the caller can flag them.
        """
        terminal = ",".join(sorted(s.value for s in TERMINAL_STATUSES))
        resp = _execute(
            self.db.table(MONITORING)
            .select("*")
            .lte("ai_next_check_at", _iso(now))
            .or_(f"claim_eligibility_status.is.null,claim_eligibility_status.not.in.({terminal})")
            .order("ai_next_check_at")
            .limit(limit),
            "fetch due records",
        )
        return resp.data or []

    def mirror_claim_resolution(
        self, shipment_id: str, new_status: EligibilityStatus, guard: Iterable[EligibilityStatus]
    ) -> int:
        resp = _execute(
            self.db.table(MONITORING)
            .update({"claim_eligibility_status": new_status.value})
            .eq("shipment_id", shipment_id)
            .in_("claim_eligibility_status", [s.value for s in guard]),
            f"mirror claim resolution {shipment_id}",
        )
        return len(resp.data or [])

    # ---- checkpoints ----

    def insert_checkpoints(self, checkpoints: list[Checkpoint]) -> int:
        if not checkpoints:
            return 0
        resp = _execute(
            self.db.table(CHECKPOINTS).upsert(
                [c.to_row() for c in checkpoints], on_conflict="content_hash", ignore_duplicates=True
            ),
            "insert checkpoints",
        )
        return len(resp.data or [])

    def get_checkpoints(self, shipment_id: str) -> list[Checkpoint]:
        resp = _execute(
            self.db.table(CHECKPOINTS)
            .select("*")
            .eq("shipment_id", shipment_id)
            .order("checkpoint_date", desc=True),
            "fetch checkpoints",
        )
        return [Checkpoint.from_row(r) for r in resp.data or []]

    # ---- claim tickets ----

    def has_open_claim(self, shipment_id: str) -> bool:
        resp = _execute(
            self.db.table(TICKETS)
            .select("id")
            .eq("ticket_type", CLAIM_TICKET_TYPE)
            .eq("shipment_id", shipment_id)
            .is_("deleted_at", "null")
            .limit(1),
            "fetch claim tickets",
        )
        return bool(resp.data)

    def fetch_claims_to_advance(self, created_before: datetime) -> list[dict]:
        """Raw ticket rows, parsed one at a time by the caller."""
        resp = _execute(
            self.db.table(TICKETS)
            .select("*")
            .eq("ticket_type", CLAIM_TICKET_TYPE)
            .eq("status", ClaimStatus.UNDER_REVIEW)
            .is_("deleted_at", "null")
            .lte("created_at", _iso(created_before))
            .order("created_at"),
            "fetch claims to advance",
        )
        return resp.data or []

    def transition_claim(
        self, ticket_id: str, from_status: str, to_status: str, events: list[ClaimEvent], now: datetime
    ) -> bool:
        """Status update guarded by the current status. False when another writer got there first."""
        resp = _execute(
            self.db.table(TICKETS)
            .update({
                "status": to_status,
                "events": [e.model_dump(mode="json", by_alias=True) for e in events],
                "updated_at": _iso(now),
            })
            .eq("id", ticket_id)
            .eq("status", from_status),
            f"transition claim {ticket_id}",
        )
        return bool(resp.data)

    def fetch_resolved_claims(self) -> list[dict]:
        resp = _execute(
            self.db.table(TICKETS)
            .select("*")
            .eq("ticket_type", CLAIM_TICKET_TYPE)
            .in_("status", [ClaimStatus.RESOLVED, ClaimStatus.CREDIT_DENIED])
            .not_.is_("shipment_id", "null"),
            "fetch resolved claims",
        )
        return resp.data or []
