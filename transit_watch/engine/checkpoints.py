import hashlib
import logging
from datetime import datetime
from typing import Optional

from transit_watch.schemas import Checkpoint, CheckpointType, Sentiment, ShipmentRecord
from transit_watch.services.trackingmore import TrackingLookup, mentions_loss
from transit_watch.timeutils import SECONDS_PER_DAY, to_utc

logger = logging.getLogger(__name__)

# (type, display title, sentiment), checked in order after the loss and delivery rules.
KEYWORD_RULES = [
    (("out for delivery",), CheckpointType.OUT_FOR_DELIVERY, "Out for delivery", Sentiment.POSITIVE),
    (("delivery attempt", "notice left", "no access"), CheckpointType.ATTEMPT, "Delivery attempted", Sentiment.CONCERNING),
    (("return", "rts", "refused"), CheckpointType.RETURN, "Returning to sender", Sentiment.CRITICAL),
    (("customs", "import", "export"), CheckpointType.CUSTOMS, "In customs", Sentiment.NEUTRAL),
    (("held", "available for pickup", "will call"), CheckpointType.HOLD, "Held at facility", Sentiment.CONCERNING),
    (("label created", "shipping label", "electronic info"), CheckpointType.LABEL, "Label created", Sentiment.NEUTRAL),
    (("picked up", "accepted", "origin scan"), CheckpointType.PICKUP, "Picked up", Sentiment.POSITIVE),
    (("local", "post office", "destination"), CheckpointType.LOCAL, "At local facility", Sentiment.POSITIVE),
    (("arrived", "facility", "hub", "distribution"), CheckpointType.HUB, "At hub", Sentiment.NEUTRAL),
]

FORWARD_TYPES = frozenset({CheckpointType.HUB, CheckpointType.LOCAL, CheckpointType.OUT_FOR_DELIVERY})
NEGATIVE_TYPES = frozenset({CheckpointType.EXCEPTION, CheckpointType.ATTEMPT, CheckpointType.HOLD, CheckpointType.RETURN})


def _normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def content_hash(shipment_id: str, checkpoint_time: datetime, raw_description: Optional[str]) -> str:
    content = "|".join([
        str(shipment_id).strip(),
        to_utc(checkpoint_time).isoformat(),
        _normalize_text(raw_description),
    ])
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def is_delivery(description: Optional[str], status: Optional[str] = None) -> bool:
    desc = _normalize_text(description)
    if (status or "").strip().lower() == "delivered":
        return True
    return "delivered" in desc and "undelivered" not in desc


def normalize_checkpoint(description: Optional[str], status: Optional[str] = None) -> tuple[CheckpointType, str, Sentiment]:
    """Rule-based mapping of a raw carrier scan to (type, display title, sentiment)."""
    desc = _normalize_text(description)
    stat = (status or "").strip().lower()

    if mentions_loss(desc) or "cannot be found" in desc or " lost" in f" {desc}":
        return CheckpointType.EXCEPTION, "Carrier cannot locate package", Sentiment.CRITICAL

    if is_delivery(desc, stat):
        return CheckpointType.DELIVERED, "Delivered", Sentiment.POSITIVE

    if stat == "outfordelivery":
        return CheckpointType.OUT_FOR_DELIVERY, "Out for delivery", Sentiment.POSITIVE

    if stat in ("exception", "undelivered", "expired") or "undelivered" in desc or "exception" in desc:
        return CheckpointType.EXCEPTION, "Exception", Sentiment.CRITICAL

    for needles, ctype, title, sentiment in KEYWORD_RULES:
        if any(n in desc for n in needles):
            return ctype, title, sentiment

    if stat == "inforeceived":
        return CheckpointType.LABEL, "Label created", Sentiment.NEUTRAL
    return CheckpointType.INTRANSIT, "In transit", Sentiment.NEUTRAL


def time_in_states(checkpoints: list[Checkpoint], now: datetime) -> dict[str, float]:
    """
    Days spent in each normalized state. Each checkpoint's state lasts until
    the next checkpoint (or `now` for the latest one).
    """
    ordered = sorted(checkpoints, key=lambda c: c.checkpoint_time)
    totals: dict[str, float] = {}
    for i, cp in enumerate(ordered):
        end = ordered[i + 1].checkpoint_time if i + 1 < len(ordered) else to_utc(now)
        seconds = max(0.0, (end - cp.checkpoint_time).total_seconds())
        key = cp.normalized_type.value
        totals[key] = totals.get(key, 0.0) + seconds / SECONDS_PER_DAY
    return {k: round(v, 2) for k, v in totals.items()}


class CheckpointStore:
    """Append-only, de-duplicated scan history backed by the repository."""

    def __init__(self, repo):
        self.repo = repo

    def build(self, shipment: ShipmentRecord, lookup: TrackingLookup) -> list[Checkpoint]:
        seen = set()
        out = []
        for cp in lookup.checkpoints:
            h = content_hash(shipment.shipment_id, cp.checkpoint_time, cp.description)
            if h in seen:
                continue
            seen.add(h)
            ctype, title, sentiment = normalize_checkpoint(cp.description, cp.status)
            out.append(Checkpoint(
                shipment_id=shipment.shipment_id,
                tracking_number=shipment.tracking_number,
                carrier=shipment.carrier,
                checkpoint_time=cp.checkpoint_time,
                raw_description=cp.description,
                raw_location=cp.location,
                raw_status=cp.status,
                raw_substatus=cp.substatus,
                normalized_type=ctype,
                display_title=title,
                sentiment=sentiment,
                content_hash=h,
            ))
        return out

    def record(self, shipment: ShipmentRecord, lookup: TrackingLookup) -> int:
        """Stores the lookup's checkpoints. Returns how many were new."""
        stored = self.repo.insert_checkpoints(self.build(shipment, lookup))
        if stored:
            logger.info("Stored %d new checkpoints for %s", stored, shipment.shipment_id)
        return stored

    def history(self, shipment_id: str) -> list[Checkpoint]:
        return self.repo.get_checkpoints(shipment_id)

    def latest(self, shipment_id: str) -> Optional[Checkpoint]:
        h = self.history(shipment_id)
        return h[0] if h else None

    def has_delivery(self, shipment_id: str) -> bool:
        return any(c.normalized_type == CheckpointType.DELIVERED for c in self.history(shipment_id))
