from datetime import datetime, timedelta
from typing import Optional

from transit_watch.schemas import RiskAssessment, RiskLevel
from transit_watch.timeutils import to_utc

URGENT_INTERVAL = timedelta(hours=1)
ELEVATED_INTERVAL = timedelta(hours=4)
DEFAULT_INTERVAL = timedelta(hours=12)

URGENT_SILENCE_DAYS = 15
ELEVATED_TRANSIT_DAYS = 8


def recheck_interval(
    assessment: Optional[RiskAssessment],
    days_since_last_scan: Optional[int],
    days_in_transit: Optional[int] = None,
) -> timedelta:
    level = assessment.risk_level if assessment else None
    if (days_since_last_scan or 0) >= URGENT_SILENCE_DAYS or level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        return URGENT_INTERVAL
    if (days_in_transit or 0) >= ELEVATED_TRANSIT_DAYS or level == RiskLevel.MEDIUM:
        return ELEVATED_INTERVAL
    return DEFAULT_INTERVAL


def next_check_at(
    assessment: Optional[RiskAssessment],
    days_since_last_scan: Optional[int],
    days_in_transit: Optional[int],
    now: datetime,
) -> datetime:
    """Always in the future: `now` plus the interval for the current risk."""
    return to_utc(now) + recheck_interval(assessment, days_since_last_scan, days_in_transit)
