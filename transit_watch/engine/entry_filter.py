import logging
from datetime import datetime, timedelta
from typing import Optional

from transit_watch.config import Settings, get_settings
from transit_watch.engine.benchmarks import BenchmarkSnapshot
from transit_watch.engine.eligibility import eligible_after, next_status
from transit_watch.engine.risk import assess, build_context
from transit_watch.engine.scheduler import next_check_at
from transit_watch.engine.sweep import SweepRun, TrackingDeps
from transit_watch.errors import PersistenceError
from transit_watch.schemas import MonitoringRecord, ShipmentRecord, SweepSummary
from transit_watch.timeutils import utcnow, whole_days

logger = logging.getLogger(__name__)

SWEEP_NAME = "monitoring-entry"
MIN_LABEL_AGE_DAYS = 3


def _enroll(shipment: ShipmentRecord, deps: TrackingDeps, snapshot: BenchmarkSnapshot, now: datetime, run: SweepRun) -> str:
    """Enrolls one shipment already past its threshold. Returns the counter to bump."""
    repo, store = deps.repo, deps.store

    # A stored delivery is final; no provider call.
    if store.has_delivery(shipment.shipment_id):
        return "delivered"

    deps.limiter.acquire()
    lookup = deps.tracker.lookup(shipment.tracking_number, shipment.carrier)

    try:
        store.record(shipment, lookup)
    except PersistenceError as e:
        run.warn(shipment.shipment_id, f"checkpoint storage failed: {e}")

    if lookup.is_delivered():
        return "delivered"

    checkpoints = store.build(shipment, lookup)
    last_scan_at = lookup.last_scan_at
    days_since_update = whole_days(last_scan_at or shipment.label_created_at, now)
    loss_admitted = lookup.admits_loss()
    intl = shipment.is_international

    status = next_status(
        None,
        days_since_update,
        intl,
        loss_admitted=loss_admitted,
        has_claim=repo.has_open_claim(shipment.shipment_id),
        filing_window=deps.settings.filing_window(intl),
    )

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
        return "delivered"

    days_in_transit = whole_days(shipment.label_created_at, now)
    latest = lookup.latest_checkpoint
    record = MonitoringRecord(
        shipment_id=shipment.shipment_id,
        tracking_number=shipment.tracking_number,
        carrier=shipment.carrier,
        client_id=shipment.client_id,
        is_international=intl,
        external_tracking_id=lookup.external_id,
        claim_eligibility_status=status,
        eligible_after=eligible_after(last_scan_at, shipment.label_created_at, intl),
        last_scan_at=last_scan_at,
        last_scan_description=lookup.latest_event or (latest.description if latest else None),
        last_scan_location=latest.location if latest else None,
        days_in_transit=days_in_transit,
        days_since_last_update=days_since_update,
        assessment=outcome.assessment,
        next_check_at=next_check_at(outcome.assessment, days_since_update, days_in_transit, now),
        first_checked_at=now,
        last_recheck_at=now,
    )
    if not repo.insert_monitoring_record(record):
        return "skipped"
    logger.info(
        "[%s] Enrolled %s (%s days, status %s, badge %s)",
        SWEEP_NAME, shipment.shipment_id, days_in_transit, status.value, outcome.assessment.status_badge.value,
    )
    return "added"


def run_monitoring_entry(
    repo,
    tracker,
    assessor=None,
    limiter=None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    run: Optional[SweepRun] = None,
) -> SweepSummary:
    """Scans old undelivered shipments and enrolls the ones past their expected transit time."""
    settings = settings or get_settings()
    now = now or utcnow()
    run = run or SweepRun(SWEEP_NAME, settings.sweep_budget_seconds, settings.max_reported_errors)
    deps = TrackingDeps.build(repo, tracker, assessor, limiter, settings)

    try:
        snapshot = BenchmarkSnapshot.load(repo)
        candidates = repo.fetch_monitoring_candidates(now - timedelta(days=MIN_LABEL_AGE_DAYS), settings.entry_batch_size)
        run.count("candidates", len(candidates))
        existing = repo.existing_monitored_ids([s.shipment_id for s in candidates])
        logger.info("[%s] %d candidates, %d already monitored, %d benchmarks", SWEEP_NAME, len(candidates), len(existing), len(snapshot))

        for shipment in candidates:
            if run.out_of_time():
                break
            if shipment.shipment_id in existing:
                run.count("skipped")
                continue

            decision = snapshot.threshold_for(shipment)
            days_in_transit = whole_days(shipment.label_created_at, now)
            if days_in_transit is None or days_in_transit < decision.threshold:
                run.count("below_threshold")
                continue

            try:
                run.count(_enroll(shipment, deps, snapshot, now, run))
            except Exception as e:
                run.error(shipment.shipment_id, f"{type(e).__name__}: {e}")
    except Exception as e:
        run.fail(e)
    return run.summary()
