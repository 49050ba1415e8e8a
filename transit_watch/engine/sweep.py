import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Optional

from transit_watch.config import Settings
from transit_watch.engine.checkpoints import CheckpointStore
from transit_watch.schemas import SweepSummary
from transit_watch.services.rate_limit import NoopLimiter

logger = logging.getLogger(__name__)


class SweepRun:
    """
    Bookkeeping for one bounded sweep: a wall-clock budget, counters,
    and a capped list of error strings for the JSON summary.
    """

    def __init__(
        self,
        name: str,
        budget_seconds: float = 270.0,
        max_errors: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.budget_seconds = budget_seconds
        self.max_errors = max_errors
        self._clock = clock
        self._started = clock()
        self.counts: Counter = Counter()
        self.errors: list[str] = []
        self.error_count = 0
        self.warnings: list[str] = []
        self.stopped_early = False
        self.failed = False

    def elapsed(self) -> float:
        return self._clock() - self._started

    def out_of_time(self) -> bool:
        """True once the budget is spent; marks the run as stopped early."""
        if self.elapsed() >= self.budget_seconds:
            if not self.stopped_early:
                logger.warning("[%s] Budget of %.0fs spent, stopping early", self.name, self.budget_seconds)
            self.stopped_early = True
        return self.stopped_early

    def count(self, key: str, n: int = 1) -> None:
        self.counts[key] += n

    def error(self, item: Optional[str], message: str) -> None:
        self.error_count += 1
        text = f"{item}: {message}" if item else message
        logger.error("[%s] %s", self.name, text)
        if len(self.errors) < self.max_errors:
            self.errors.append(text)

    def warn(self, item: Optional[str], message: str) -> None:
        text = f"{item}: {message}" if item else message
        logger.warning("[%s] %s", self.name, text)
        if len(self.warnings) < self.max_errors:
            self.warnings.append(text)

    def fail(self, exc: BaseException) -> None:
        """Sweep-level failure. Recorded in the summary instead of raised."""
        self.failed = True
        logger.exception("[%s] Sweep failed: %s", self.name, exc)
        self.error_count += 1
        if len(self.errors) < self.max_errors:
            self.errors.append(f"sweep failed: {exc}")

    def summary(self) -> SweepSummary:
        s = SweepSummary(
            sweep=self.name,
            success=not self.failed,
            counts=dict(self.counts),
            error_count=self.error_count,
            errors=list(self.errors),
            warnings=list(self.warnings),
            stopped_early=self.stopped_early,
            duration_ms=int(self.elapsed() * 1000),
        )
        logger.info(
            "[%s] Completed in %dms: %s, %d errors%s",
            self.name,
            s.duration_ms,
            ", ".join(f"{v} {k}" for k, v in sorted(s.counts.items())) or "nothing to do",
            s.error_count,
            " (stopped early)" if s.stopped_early else "",
        )
        return s


@dataclass(frozen=True)
class TrackingDeps:
    """Collaborators for the sweeps that poll the carrier and assess risk."""
    repo: Any
    store: CheckpointStore
    tracker: Any
    assessor: Any
    limiter: Any
    settings: Settings

    @classmethod
    def build(cls, repo, tracker, assessor, limiter, settings: Settings) -> "TrackingDeps":
        return cls(
            repo=repo,
            store=CheckpointStore(repo),
            tracker=tracker,
            assessor=assessor,
            limiter=limiter or NoopLimiter(),
            settings=settings,
        )
