import json
import logging
import sys

from transit_watch.config import get_settings
from transit_watch.engine.benchmarks import run_benchmark_recompute
from transit_watch.engine.claims import run_claim_advancement, run_claim_sync
from transit_watch.engine.entry_filter import run_monitoring_entry
from transit_watch.engine.reassess import run_reassessment
from transit_watch.services.assessor import OpenAIAssessor
from transit_watch.services.notifier import EmailNotifier
from transit_watch.services.rate_limit import RateLimiter
from transit_watch.services.repository import SupabaseRepository
from transit_watch.services.supabase_client import get_supabase
from transit_watch.services.trackingmore import TrackingMoreService

SWEEPS = ["calculate-benchmarks", "monitoring-entry", "reassess", "advance-claims", "sync-claims"]


def execute_sweep(name: str):
    settings = get_settings()
    repo = SupabaseRepository(get_supabase())

    if name == "calculate-benchmarks":
        return run_benchmark_recompute(repo, settings=settings)
    if name == "advance-claims":
        return run_claim_advancement(repo, notifier=EmailNotifier(settings), settings=settings)
    if name == "sync-claims":
        return run_claim_sync(repo, settings=settings)

    tracker = TrackingMoreService(settings)
    assessor = OpenAIAssessor(settings) if settings.openai_api_key else None
    limiter = RateLimiter(settings.tracking_calls_per_second)
    if name == "monitoring-entry":
        return run_monitoring_entry(repo, tracker, assessor=assessor, limiter=limiter, settings=settings)
    return run_reassessment(repo, tracker, assessor=assessor, limiter=limiter, settings=settings)


if __name__ == "__main__":
    if len(sys.argv) != 2 or sys.argv[1] not in SWEEPS:
        print(f"usage: python run_sweeps.py [{' | '.join(SWEEPS)}]")
        sys.exit(2)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print(f"🚀 [INITIATING] {sys.argv[1]} sweep...")
    summary = execute_sweep(sys.argv[1])
    print(json.dumps(summary.model_dump(), indent=2))
    sys.exit(0 if summary.success else 1)
