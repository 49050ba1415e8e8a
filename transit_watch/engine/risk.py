import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from transit_watch.engine.checkpoints import FORWARD_TYPES, time_in_states
from transit_watch.engine.eligibility import eligibility_threshold
from transit_watch.errors import ProviderError
from transit_watch.schemas import (
    AIAssessment,
    AssessmentContext,
    Checkpoint,
    CheckpointType,
    RiskAssessment,
    RiskLevel,
    ShipmentRecord,
    StatusBadge,
)
from transit_watch.services.trackingmore import mentions_loss
from transit_watch.timeutils import to_utc, whole_days

logger = logging.getLogger(__name__)

DEFAULT_TYPICAL_DAYS = 5.0

# Forward-movement ladder by days of silence; the last rung is reached at the eligibility threshold.
SILENCE_LADDER = [
    (2, StatusBadge.MOVING),
    (5, StatusBadge.DELAYED),
    (8, StatusBadge.WATCHLIST),
    (12, StatusBadge.STALLED),
]
FORWARD_LADDER = [
    StatusBadge.MOVING,
    StatusBadge.DELAYED,
    StatusBadge.WATCHLIST,
    StatusBadge.STALLED,
    StatusBadge.STUCK,
    StatusBadge.LOST,
]

BUMP_TYPES = frozenset({CheckpointType.EXCEPTION, CheckpointType.ATTEMPT, CheckpointType.HOLD})
SEVERE_TYPES = frozenset({CheckpointType.EXCEPTION, CheckpointType.ATTEMPT, CheckpointType.RETURN})

BADGE_LABELS = {
    StatusBadge.MOVING: "Still moving",
    StatusBadge.DELAYED: "Delayed",
    StatusBadge.WATCHLIST: "On the watchlist",
    StatusBadge.STALLED: "Stalled",
    StatusBadge.STUCK: "Stuck",
    StatusBadge.RETURNING: "Returning to sender",
    StatusBadge.LOST: "Likely lost",
}


@dataclass
class RiskOutcome:
    delivered: bool = False
    assessment: Optional[RiskAssessment] = None
    used_provider: bool = False


def build_context(
    shipment: ShipmentRecord,
    checkpoints: list[Checkpoint],
    now: datetime,
    last_scan_at: Optional[datetime] = None,
    latest_event: Optional[str] = None,
    typical_transit_days: Optional[float] = None,
    delivered: bool = False,
    loss_admitted: bool = False,
) -> AssessmentContext:
    """Assembles the assessment input from stored history and the latest lookup."""
    checkpoints = sorted(checkpoints, key=lambda c: c.checkpoint_time, reverse=True)
    if last_scan_at is None and checkpoints:
        last_scan_at = checkpoints[0].checkpoint_time
    if latest_event is None and checkpoints:
        latest_event = checkpoints[0].raw_description
    anchor = last_scan_at or shipment.label_created_at

    return AssessmentContext(
        shipment_id=shipment.shipment_id,
        tracking_number=shipment.tracking_number,
        carrier=shipment.carrier,
        origin_country=shipment.origin_country,
        destination_country=shipment.destination_country,
        is_international=shipment.is_international,
        label_created_at=shipment.label_created_at,
        days_since_label=whole_days(shipment.label_created_at, now),
        first_scan_at=checkpoints[-1].checkpoint_time if checkpoints else None,
        last_scan_at=last_scan_at,
        days_since_last_scan=whole_days(anchor, now),
        latest_event=latest_event,
        checkpoints=checkpoints,
        typical_transit_days=typical_transit_days,
        eligibility_threshold_days=eligibility_threshold(shipment.is_international),
        delivered=delivered,
        loss_admitted=loss_admitted or any(mentions_loss(c.raw_description) for c in checkpoints[:5]),
        time_in_states=time_in_states(checkpoints, now),
    )


def _silence(ctx: AssessmentContext) -> int:
    if ctx.days_since_last_scan is not None:
        return max(0, ctx.days_since_last_scan)
    return max(0, ctx.days_since_label or 0)


def badge_for_silence(days: int, threshold: int) -> StatusBadge:
    if days >= threshold:
        return StatusBadge.LOST
    for limit, badge in SILENCE_LADDER:
        if days < limit:
            return badge
    return StatusBadge.STUCK


def _bump(badge: StatusBadge) -> StatusBadge:
    # A negative scan moves one rung up but never reaches LOST on its own.
    stuck = FORWARD_LADDER.index(StatusBadge.STUCK)
    i = FORWARD_LADDER.index(badge)
    return FORWARD_LADDER[min(i + 1, stuck)] if i < stuck else badge


def _max_badge(a: StatusBadge, b: StatusBadge) -> StatusBadge:
    return a if a.severity >= b.severity else b


def _max_level(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if a.severity >= b.severity else b


def _level_from_index(i: int) -> RiskLevel:
    levels = list(RiskLevel)
    return levels[max(0, min(len(levels) - 1, i))]


def is_returning(checkpoints: list[Checkpoint]) -> bool:
    return any(c.normalized_type == CheckpointType.RETURN for c in checkpoints)


def classify(ctx: AssessmentContext, now: datetime) -> RiskAssessment:
    """Deterministic classification from silence, benchmark and scan history."""
    silence = _silence(ctx)
    threshold = ctx.eligibility_threshold_days
    typical = ctx.typical_transit_days or DEFAULT_TYPICAL_DAYS
    latest = ctx.checkpoints[0] if ctx.checkpoints else None
    latest_type = latest.normalized_type if latest else None
    returning = is_returning(ctx.checkpoints)

    # Badge
    badge = badge_for_silence(silence, threshold)
    if latest_type in BUMP_TYPES and badge != StatusBadge.LOST:
        badge = _bump(badge)
    if returning:
        badge = _max_badge(badge, StatusBadge.RETURNING)
    if ctx.loss_admitted:
        badge = StatusBadge.LOST

    # Level
    pressure = silence / typical
    if pressure < 0.5:
        level_i = 0
    elif pressure < 1.0:
        level_i = 1
    elif pressure < 2.0:
        level_i = 2
    else:
        level_i = 3
    if latest_type in SEVERE_TYPES:
        level_i += 1
    elif latest_type in FORWARD_TYPES and silence < 2:
        level_i -= 1
    level = _level_from_index(level_i)
    if badge == StatusBadge.LOST:
        level = RiskLevel.CRITICAL

    # Urgency
    urgency = min(80.0, 80.0 * silence / threshold) if threshold else 80.0
    if latest_type in SEVERE_TYPES:
        urgency += 10
    if returning:
        urgency += 10
    if ctx.loss_admitted:
        urgency = max(urgency, 95)
    urgency = int(round(max(0.0, min(100.0, urgency))))

    # Confidence
    confidence = 50
    if ctx.checkpoints:
        confidence += 20
    if ctx.typical_transit_days:
        confidence += 15
    if ctx.loss_admitted:
        confidence += 10

    return RiskAssessment(
        status_badge=badge,
        risk_level=level,
        reshipment_urgency=urgency,
        confidence=min(confidence, 95),
        narrative=_narrative(badge, silence, ctx.typical_transit_days, latest, ctx.loss_admitted),
        key_insight=latest.raw_description if latest else None,
        source="rules",
        assessed_at=to_utc(now),
    )


def _narrative(badge, silence, typical, latest, loss_admitted) -> str:
    parts = [f"{BADGE_LABELS[badge]}: no carrier scan for {silence} day{'s' if silence != 1 else ''}"]
    if typical:
        parts[0] += f" (typical transit {typical:g} days)"
    if latest:
        where = f" at {latest.raw_location}" if latest.raw_location else ""
        parts.append(f"Last scan: {latest.display_title or latest.raw_description}{where}.")
    if loss_admitted:
        parts.append("Carrier has admitted it cannot locate the package.")
    return ". ".join(p.rstrip(".") for p in parts) + "."


def in_final_mile(ctx: AssessmentContext) -> bool:
    """Out for delivery within the last day, with no exception since."""
    if not ctx.checkpoints:
        return False
    latest = ctx.checkpoints[0]
    if latest.normalized_type != CheckpointType.OUT_FOR_DELIVERY:
        return False
    return _silence(ctx) <= 1 and not ctx.loss_admitted


def merge(rules: RiskAssessment, ai: AIAssessment) -> RiskAssessment:
    """Provider output may escalate the rule result, never soften it."""
    return rules.model_copy(update={
        "status_badge": _max_badge(rules.status_badge, ai.statusBadge),
        "risk_level": _max_level(rules.risk_level, ai.riskLevel),
        "reshipment_urgency": max(rules.reshipment_urgency, ai.reshipmentUrgency),
        "confidence": ai.confidence,
        "customer_sentiment": ai.customerSentiment,
        "key_insight": ai.keyInsight or rules.key_insight,
        "next_milestone": ai.nextMilestone,
        "merchant_action": ai.merchantAction,
        "source": "ai",
    })


def assess(ctx: AssessmentContext, assessor, now: datetime) -> RiskOutcome:
    latest = ctx.checkpoints[0] if ctx.checkpoints else None
    if ctx.delivered or (latest is not None and latest.normalized_type == CheckpointType.DELIVERED):
        return RiskOutcome(delivered=True)

    rules = classify(ctx, now)
    if assessor is None or in_final_mile(ctx):
        return RiskOutcome(assessment=rules)

    try:
        ai = assessor.assess(ctx)
    except ProviderError as e:
        logger.warning("Assessment provider failed for %s, using rules: %s", ctx.shipment_id, e)
        return RiskOutcome(assessment=rules)
    if ai is None:
        return RiskOutcome(assessment=rules)
    return RiskOutcome(assessment=merge(rules, ai), used_provider=True)
