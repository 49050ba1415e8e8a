"""
Claim-eligibility state machine for monitored shipments.

    at_risk -> eligible -> claim_filed -> approved | denied

`missed_window` is a side state reached only when a filing window is
configured. Delivery is not a state: callers delete the record.
"""

from datetime import date, datetime
from typing import Optional

from transit_watch.schemas import ClaimStatus, EligibilityStatus
from transit_watch.timeutils import add_days

DOMESTIC_THRESHOLD_DAYS = 15
INTERNATIONAL_THRESHOLD_DAYS = 20

HELD_STATUSES = frozenset({
    EligibilityStatus.CLAIM_FILED,
    EligibilityStatus.APPROVED,
    EligibilityStatus.DENIED,
    EligibilityStatus.MISSED_WINDOW,
})

# Monitoring statuses a claim resolution may overwrite.
MIRROR_GUARD = frozenset({
    EligibilityStatus.AT_RISK,
    EligibilityStatus.ELIGIBLE,
    EligibilityStatus.CLAIM_FILED,
})

RESOLUTIONS = {
    ClaimStatus.RESOLVED: EligibilityStatus.APPROVED,
    ClaimStatus.CREDIT_DENIED: EligibilityStatus.DENIED,
}


def eligibility_threshold(is_international: bool) -> int:
    return INTERNATIONAL_THRESHOLD_DAYS if is_international else DOMESTIC_THRESHOLD_DAYS


def next_status(
    current: Optional[EligibilityStatus],
    days_since_last_update: Optional[int],
    is_international: bool,
    loss_admitted: bool = False,
    has_claim: bool = False,
    filing_window: Optional[int] = None,
) -> EligibilityStatus:
    """
    Applies every transition that holds right now, in order. `current=None`
    means a fresh enrollment, which starts at at_risk.
    """
    status = current or EligibilityStatus.AT_RISK
    if status in HELD_STATUSES:
        return status

    silence = days_since_last_update
    if filing_window is not None and silence is not None and silence > filing_window:
        return EligibilityStatus.MISSED_WINDOW

    if status == EligibilityStatus.AT_RISK:
        if loss_admitted or (silence is not None and silence >= eligibility_threshold(is_international)):
            status = EligibilityStatus.ELIGIBLE

    if status == EligibilityStatus.ELIGIBLE and has_claim:
        status = EligibilityStatus.CLAIM_FILED

    return status


def eligible_after(last_scan_at: Optional[datetime], label_at: Optional[datetime], is_international: bool) -> Optional[date]:
    """Date the silence threshold is reached, anchored on the last scan (else the label)."""
    anchor = last_scan_at or label_at
    if anchor is None:
        return None
    return add_days(anchor, eligibility_threshold(is_international))


def resolution_for(ticket_status: str) -> Optional[EligibilityStatus]:
    return RESOLUTIONS.get(ticket_status)
