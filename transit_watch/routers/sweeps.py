from fastapi import APIRouter, Depends

from transit_watch.config import Settings, get_settings
from transit_watch.engine.benchmarks import run_benchmark_recompute
from transit_watch.engine.claims import run_claim_advancement, run_claim_sync
from transit_watch.engine.entry_filter import run_monitoring_entry
from transit_watch.engine.reassess import run_reassessment
from transit_watch.routers.deps import (
    get_assessor,
    get_limiter,
    get_notifier,
    get_repository,
    get_tracker,
    require_cron_secret,
)
from transit_watch.schemas import SweepSummary

router = APIRouter(prefix="/cron", tags=["Sweeps"], dependencies=[Depends(require_cron_secret)])

METHODS = ["GET", "POST"]


@router.api_route("/calculate-benchmarks", methods=METHODS, response_model=SweepSummary)
def calculate_benchmarks(repo=Depends(get_repository), settings: Settings = Depends(get_settings)):
    return run_benchmark_recompute(repo, settings=settings)


@router.api_route("/monitoring-entry", methods=METHODS, response_model=SweepSummary)
def monitoring_entry(
    repo=Depends(get_repository),
    tracker=Depends(get_tracker),
    assessor=Depends(get_assessor),
    limiter=Depends(get_limiter),
    settings: Settings = Depends(get_settings),
):
    return run_monitoring_entry(repo, tracker, assessor=assessor, limiter=limiter, settings=settings)


@router.api_route("/reassess", methods=METHODS, response_model=SweepSummary)
def reassess(
    repo=Depends(get_repository),
    tracker=Depends(get_tracker),
    assessor=Depends(get_assessor),
    limiter=Depends(get_limiter),
    settings: Settings = Depends(get_settings),
):
    return run_reassessment(repo, tracker, assessor=assessor, limiter=limiter, settings=settings)


@router.api_route("/advance-claims", methods=METHODS, response_model=SweepSummary)
def advance_claims(
    repo=Depends(get_repository),
    notifier=Depends(get_notifier),
    settings: Settings = Depends(get_settings),
):
    return run_claim_advancement(repo, notifier=notifier, settings=settings)


@router.api_route("/sync-claims", methods=METHODS, response_model=SweepSummary)
def sync_claims(repo=Depends(get_repository), settings: Settings = Depends(get_settings)):
    return run_claim_sync(repo, settings=settings)
