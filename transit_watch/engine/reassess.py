import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from transit_watch.config import Settings, get_settings
from transit_watch.engine.benchmarks import BenchmarkSnapshot
from transit_watch.engine.eligibility import eligible_after, next_status
from transit_watch.engine.risk import assess, build_context
from transit_watch.engine.scheduler import next_check_at
from transit_watch.engine.sweep import SweepRun, TrackingDeps
from transit_watch.errors import DataIntegrityError, PersistenceError
from transit_watch.schemas import EligibilityStatus, MonitoringRecord, ShipmentRecord, SweepSummary
from transit_watch.timeutils import utcnow, whole_days

logger = logging.getLogger(__name__)

SWEEP_NAME = "reassess"

CLAIM_CHECK_STATUSES = (EligibilityStatus.AT_RISK, EligibilityStatus.ELIGIBLE)


def _load_record(row: dict) -> MonitoringRecord:
    try:
        record = MonitoringRecord.from_row(row)
    except ValidationError as e:
        raise DataIntegrityError(f"unreadable monitoring record: {e.error_count()} validation error(s)") from e
    if record.claim_eligibility_status is None:
        raise DataIntegrityError("missing claim_eligibility_status")
    return record


def _reassess_one(
    record: MonitoringRecord,
    shipment: ShipmentRecord,
    deps: TrackingDeps,
    snapshot: BenchmarkSnapshot,
    now: datetime,
    run: SweepRun,
) -> str:
    repo, store = deps.repo, deps.store

    deps.limiter.acquire()
    lookup = deps.tracker.lookup(
        record.tracking_number or shipment.tracking_number,
        record.carrier or shipment.carrier,
        external_id=record.external_tracking_id,
    )

    try:
        store.record(shipment, lookup)
    except PersistenceError as e:
        run.warn(record.shipment_id, f"checkpoint storage failed: {e}")

    if lookup.is_delivered():
        repo.delete_monitoring_record(record.shipment_id)
        logger.info("[%s] %s delivered, monitoring removed", SWEEP_NAME, record.shipment_id)
        return "removed_delivered"

    try:
        checkpoints = store.history(record.shipment_id) or store.build(shipment, lookup)
    except PersistenceError as e:
        run.warn(record.shipment_id, f"checkpoint history unavailable: {e}")
        checkpoints = store.build(shipment, lookup)

    last_scan_at = lookup.last_scan_at or record.last_scan_at
    days_since_update = whole_days(last_scan_at or shipment.label_created_at, now)
    days_in_transit = whole_days(shipment.label_created_at, now)
    loss_admitted = lookup.admits_loss()
    intl = record.is_international or shipment.is_international

    ctx = build_context(
        shipment,
        checkpoints,
        now,
        last_scan_at=last_scan_at,
        latest_event=lookup.latest_event,
        typical_transit_days=snapshot.typical_transit_days(shipment),
        loss_admitted=loss_admitted,
    )
    outcome = assess(ctx, deps.assessor, now)
    if outcome.delivered:
        repo.delete_monitoring_record(record.shipment_id)
        return "removed_delivered"

    current = record.claim_eligibility_status
    has_claim = repo.has_open_claim(record.shipment_id) if current in CLAIM_CHECK_STATUSES else False
    status = next_status(
        current,
        days_since_update,
        intl,
        loss_admitted=loss_admitted,
        has_claim=has_claim,
        filing_window=deps.settings.filing_window(intl),
    )
    if status != current:
        run.count("transitions")
        logger.info("[%s] %s %s -> %s", SWEEP_NAME, record.shipment_id, current.value, status.value)

    latest = lookup.latest_checkpoint
    updated = record.model_copy(update={
        "external_tracking_id": lookup.external_id or record.external_tracking_id,
        "is_international": intl,
        "claim_eligibility_status": status,
        "eligible_after": eligible_after(last_scan_at, shipment.label_created_at, intl),
        "last_scan_at": last_scan_at,
        "last_scan_description": lookup.latest_event or (latest.description if latest else record.last_scan_description),
        "last_scan_location": latest.location if latest else record.last_scan_location,
        "days_in_transit": days_in_transit,
        "days_since_last_update": days_since_update,
        "assessment": outcome.assessment,
        "next_check_at": next_check_at(outcome.assessment, days_since_update, days_in_transit, now),
        "last_recheck_at": now,
    })
    repo.update_monitoring_record(updated)
    if outcome.used_provider:
        run.count("ai_assessed")
    return "reassessed"


def run_reassessment(
    repo,
    tracker,
    assessor=None,
    limiter=None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    run: Optional[SweepRun] = None,
) -> SweepSummary:
    """Re-checks monitored shipments whose next check time has passed."""
    settings = settings or get_settings()
    now = now or utcnow()
    run = run or SweepRun(SWEEP_NAME, settings.sweep_budget_seconds, settings.max_reported_errors)
    deps = TrackingDeps.build(repo, tracker, assessor, limiter, settings)

    try:
        snapshot = BenchmarkSnapshot.load(repo)
        rows = repo.fetch_due_records(now, settings.reassess_batch_size)
        run.count("due", len(rows))
        shipments = repo.fetch_shipments([str(r["shipment_id"]) for r in rows if r.get("shipment_id") is not None])

        for row in rows:
            if run.out_of_time():
                break
            shipment_id = str(row.get("shipment_id"))
            try:
                record = _load_record(row)
                shipment = shipments.get(record.shipment_id)
                if shipment is None:
                    raise DataIntegrityError("shipment record not found")
            except DataIntegrityError as e:
                run.warn(shipment_id, f"skipped: {e}")
                run.count("anomalies")
                continue

            try:
                run.count(_reassess_one(record, shipment, deps, snapshot, now, run))
            except Exception as e:
                run.error(shipment_id, f"{type(e).__name__}: {e}")
    except Exception as e:
        run.fail(e)
    return run.summary()
