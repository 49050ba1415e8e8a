# schemas.py
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from transit_watch.timeutils import parse_ts

ZONES = range(1, 11)
DEFAULT_ZONE = 5


class EligibilityStatus(str, Enum):
    AT_RISK = "at_risk"
    ELIGIBLE = "eligible"
    CLAIM_FILED = "claim_filed"
    APPROVED = "approved"
    DENIED = "denied"
    MISSED_WINDOW = "missed_window"


TERMINAL_STATUSES = frozenset({EligibilityStatus.APPROVED, EligibilityStatus.DENIED})


class StatusBadge(str, Enum):
    # Declared in ascending severity.
    MOVING = "MOVING"
    DELAYED = "DELAYED"
    WATCHLIST = "WATCHLIST"
    STALLED = "STALLED"
    STUCK = "STUCK"
    RETURNING = "RETURNING"
    LOST = "LOST"

    @property
    def severity(self) -> int:
        return list(StatusBadge).index(self)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return list(RiskLevel).index(self)


class CheckpointType(str, Enum):
    LABEL = "LABEL"
    PICKUP = "PICKUP"
    INTRANSIT = "INTRANSIT"
    HUB = "HUB"
    LOCAL = "LOCAL"
    CUSTOMS = "CUSTOMS"
    HOLD = "HOLD"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    ATTEMPT = "ATTEMPT"
    EXCEPTION = "EXCEPTION"
    RETURN = "RETURN"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    CONCERNING = "concerning"
    CRITICAL = "critical"


class BenchmarkKind(str, Enum):
    CARRIER_SERVICE = "carrier_service"
    SHIP_OPTION = "ship_option"
    INTERNATIONAL_ROUTE = "international_route"


class ClaimStatus:
    UNDER_REVIEW = "Under Review"
    CREDIT_REQUESTED = "Credit Requested"
    CREDIT_APPROVED = "Credit Approved"
    CREDIT_DENIED = "Credit Denied"
    RESOLVED = "Resolved"


CLAIM_TICKET_TYPE = "Claim"


# ============================================================================
# External records (read-only to the engine)
# ============================================================================

class ShipmentRecord(BaseModel):
    shipment_id: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    client_id: Optional[str] = None
    ship_option: Optional[str] = None
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    zone: Optional[int] = None
    label_created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @field_validator("label_created_at", "delivered_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)

    @property
    def is_international(self) -> bool:
        return bool(
            self.origin_country
            and self.destination_country
            and self.origin_country != self.destination_country
        )

    @classmethod
    def from_row(cls, row: dict) -> "ShipmentRecord":
        ship_option = row.get("ship_option")
        return cls(
            shipment_id=str(row["shipment_id"]),
            tracking_number=row.get("tracking_id"),
            carrier=row.get("carrier"),
            client_id=row.get("client_id"),
            ship_option=str(ship_option) if ship_option is not None else None,
            origin_country=row.get("origin_country"),
            destination_country=row.get("destination_country"),
            zone=row.get("zone_used"),
            label_created_at=row.get("event_labeled"),
            delivered_at=row.get("event_delivered"),
        )


class ClaimEvent(BaseModel):
    # Stored camelCase inside care_tickets.events; the merchant timeline reads it that way.
    model_config = ConfigDict(populate_by_name=True)

    status: str
    note: str = ""
    created_at: datetime = Field(alias="createdAt")
    created_by: str = Field("System", alias="createdBy")

    @field_validator("note", mode="before")
    @classmethod
    def _note(cls, v):
        return v or ""

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)


class ClaimTicket(BaseModel):
    id: str
    ticket_number: Optional[int] = None
    ticket_type: str = CLAIM_TICKET_TYPE
    issue_type: Optional[str] = None
    status: str
    shipment_id: Optional[str] = None
    client_id: Optional[str] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    events: list[ClaimEvent] = Field(default_factory=list)

    @field_validator("created_at", "deleted_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)

    @field_validator("events", mode="before")
    @classmethod
    def _events(cls, v):
        return v or []

    @classmethod
    def from_row(cls, row: dict) -> "ClaimTicket":
        data = dict(row)
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        if data.get("shipment_id") is not None:
            data["shipment_id"] = str(data["shipment_id"])
        return cls.model_validate(data)

    def to_row(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ============================================================================
# Engine-owned records
# ============================================================================

class BenchmarkEntry(BaseModel):
    kind: BenchmarkKind
    key: str
    display_name: str
    zone_averages: dict[int, Optional[float]] = Field(default_factory=dict)
    zone_counts: dict[int, int] = Field(default_factory=dict)
    calculated_at: Optional[datetime] = None

    def average_for(self, zone: int) -> Optional[float]:
        """Trusted average for a zone, or None when the zone has no samples."""
        if not self.zone_counts.get(zone):
            return None
        return self.zone_averages.get(zone)

    def to_row(self) -> dict:
        row: dict[str, Any] = {
            "benchmark_type": self.kind.value,
            "benchmark_key": self.key,
            "display_name": self.display_name,
            "last_calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
        }
        for zone in ZONES:
            row[f"zone_{zone}_avg"] = self.zone_averages.get(zone)
            row[f"zone_{zone}_count"] = self.zone_counts.get(zone, 0)
        return row

    @classmethod
    def from_row(cls, row: dict) -> "BenchmarkEntry":
        return cls(
            kind=BenchmarkKind(row["benchmark_type"]),
            key=row["benchmark_key"],
            display_name=row.get("display_name") or row["benchmark_key"],
            zone_averages={z: row.get(f"zone_{z}_avg") for z in ZONES if row.get(f"zone_{z}_avg") is not None},
            zone_counts={z: row.get(f"zone_{z}_count") or 0 for z in ZONES},
            calculated_at=parse_ts(row.get("last_calculated_at")),
        )


class Checkpoint(BaseModel):
    shipment_id: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    checkpoint_time: datetime
    raw_description: str = ""
    raw_location: Optional[str] = None
    raw_status: Optional[str] = None
    raw_substatus: Optional[str] = None
    normalized_type: CheckpointType = CheckpointType.INTRANSIT
    display_title: Optional[str] = None
    sentiment: Sentiment = Sentiment.NEUTRAL
    content_hash: str

    @field_validator("checkpoint_time", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)

    def to_row(self) -> dict:
        return {
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "checkpoint_date": self.checkpoint_time.isoformat(),
            "raw_description": self.raw_description,
            "raw_location": self.raw_location,
            "raw_status": self.raw_status,
            "raw_substatus": self.raw_substatus,
            "normalized_type": self.normalized_type.value,
            "display_title": self.display_title,
            "sentiment": self.sentiment.value,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Checkpoint":
        return cls(
            shipment_id=str(row["shipment_id"]),
            tracking_number=row.get("tracking_number"),
            carrier=row.get("carrier"),
            checkpoint_time=row["checkpoint_date"],
            raw_description=row.get("raw_description") or "",
            raw_location=row.get("raw_location"),
            raw_status=row.get("raw_status"),
            raw_substatus=row.get("raw_substatus"),
            normalized_type=row.get("normalized_type") or CheckpointType.INTRANSIT,
            display_title=row.get("display_title"),
            sentiment=row.get("sentiment") or Sentiment.NEUTRAL,
            content_hash=row["content_hash"],
        )


class RiskAssessment(BaseModel):
    status_badge: StatusBadge
    risk_level: RiskLevel
    reshipment_urgency: int = Field(ge=0, le=100)
    confidence: int = Field(ge=0, le=100)
    narrative: str
    customer_sentiment: Optional[str] = None
    key_insight: Optional[str] = None
    next_milestone: Optional[str] = None
    merchant_action: Optional[str] = None
    source: str = "rules"
    assessed_at: datetime


class MonitoringRecord(BaseModel):
    """One row of lost_in_transit_checks. Aliases are the stored column names."""
    model_config = ConfigDict(populate_by_name=True)

    shipment_id: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    client_id: Optional[str] = None
    is_international: bool = False
    external_tracking_id: Optional[str] = Field(None, alias="trackingmore_tracking_id")
    claim_eligibility_status: Optional[EligibilityStatus] = None
    eligible_after: Optional[date] = None
    last_scan_at: Optional[datetime] = Field(None, alias="last_scan_date")
    last_scan_description: Optional[str] = None
    last_scan_location: Optional[str] = None
    days_in_transit: Optional[int] = None
    days_since_last_update: Optional[int] = None
    assessment: Optional[RiskAssessment] = Field(None, alias="ai_assessment")
    next_check_at: Optional[datetime] = Field(None, alias="ai_next_check_at")
    first_checked_at: Optional[datetime] = None
    last_recheck_at: Optional[datetime] = None

    @field_validator("last_scan_at", "next_check_at", "first_checked_at", "last_recheck_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)

    def to_row(self) -> dict:
        row = self.model_dump(mode="json", by_alias=True)
        a = self.assessment
        # Flattened for filtering and sorting in the dashboard.
        row["ai_assessed_at"] = row["ai_assessment"]["assessed_at"] if a else None
        row["ai_status_badge"] = a.status_badge.value if a else None
        row["ai_risk_level"] = a.risk_level.value if a else None
        row["ai_reshipment_urgency"] = a.reshipment_urgency if a else None
        return row

    @classmethod
    def from_row(cls, row: dict) -> "MonitoringRecord":
        data = dict(row)
        if data.get("shipment_id") is not None:
            data["shipment_id"] = str(data["shipment_id"])
        return cls.model_validate(data)


# ============================================================================
# Sweep output
# ============================================================================

class SweepSummary(BaseModel):
    sweep: str
    success: bool = True
    counts: dict[str, int] = Field(default_factory=dict)
    error_count: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    stopped_early: bool = False
    duration_ms: int = 0


# ============================================================================
# Assessment boundary
# ============================================================================

class AssessmentContext(BaseModel):
    """Everything the risk engine (rules or AI) sees for one shipment."""
    shipment_id: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    is_international: bool = False
    label_created_at: Optional[datetime] = None
    days_since_label: Optional[int] = None
    first_scan_at: Optional[datetime] = None
    last_scan_at: Optional[datetime] = None
    days_since_last_scan: Optional[int] = None
    latest_event: Optional[str] = None
    checkpoints: list[Checkpoint] = Field(default_factory=list)  # newest first
    typical_transit_days: Optional[float] = None
    eligibility_threshold_days: int = 15
    delivered: bool = False
    loss_admitted: bool = False
    time_in_states: dict[str, float] = Field(default_factory=dict)


def _clamp(v, default: int) -> int:
    try:
        n = int(round(float(v)))
    except (TypeError, ValueError):
        return default
    return max(0, min(100, n))


class AIAssessment(BaseModel):
    statusBadge: StatusBadge
    riskLevel: RiskLevel
    customerSentiment: Optional[str] = None
    merchantAction: Optional[str] = None
    reshipmentUrgency: int = 0
    keyInsight: Optional[str] = None
    nextMilestone: Optional[str] = None
    confidence: int = 50

    @field_validator("statusBadge", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("riskLevel", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("reshipmentUrgency", mode="before")
    @classmethod
    def _clamp_urgency(cls, v):
        return _clamp(v, 0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        return _clamp(v, 50)
