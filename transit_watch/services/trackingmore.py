import logging
import re
from datetime import datetime
from typing import Optional

import requests
from pydantic import BaseModel, Field, field_validator

from transit_watch.config import Settings, get_settings
from transit_watch.errors import TrackingError
from transit_watch.timeutils import parse_ts

logger = logging.getLogger(__name__)

# Carrier wording that admits the parcel is gone.
LOSS_PATTERNS = [
    re.compile(r"^lost,"),
    re.compile(r"unable to locate"),
    re.compile(r"cannot be located"),
    re.compile(r"missing mail search"),
    re.compile(r"package is lost"),
    re.compile(r"declared lost"),
    re.compile(r"presumed lost"),
]

OK_CODES = (200, 201)

# Ordered: more specific patterns first.
TRACKING_PATTERNS = [
    ("ups", re.compile(r"^1Z[0-9A-Z]{16}$")),
    ("usps", re.compile(r"^(94|93|92|91|70|01|02)\d{18,20}$")),
    ("fedex", re.compile(r"^\d{12}$")),
    ("fedex", re.compile(r"^\d{15}$")),
    ("fedex", re.compile(r"^(7|96)\d{19,21}$")),
    ("usps", re.compile(r"^\d{20,22}$")),
    ("dhl", re.compile(r"^\d{10}$")),
    ("ontrac", re.compile(r"^[CD]\d{13,14}$")),
]

# (substring, provider code); first match wins.
CARRIER_CODES = [
    ("usps", "usps"),
    ("upsmi", "ups-mi"),
    ("mail innovations", "ups-mi"),
    ("ups", "ups"),
    ("smartpost", "fedex"),
    ("fedex", "fedex"),
    ("dhl ecommerce", "dhl-ecommerce"),
    ("dhl", "dhl"),
    ("ontrac", "ontrac"),
    ("amazon", "amazon-us"),
    ("veho", "veho"),
    ("lasership", "lasership"),
    ("spee-dee", "speedee"),
    ("speedee", "speedee"),
    ("cirro", "gofoexpress"),
    ("gofo", "gofoexpress"),
    ("bettertrucks", "bettertrucks"),
    ("better trucks", "bettertrucks"),
    ("osm", "osmworldwide"),
    ("uniuni", "uniuni"),
    ("passport", "passport"),
    ("apc", "apc"),
]

# Internal or freight methods with nothing to track.
UNTRACKABLE = ("shipbob", "prepaid", "kitting")


def mentions_loss(text: Optional[str]) -> bool:
    t = (text or "").strip().lower()
    return any(p.search(t) for p in LOSS_PATTERNS)


def carrier_code_for(carrier: Optional[str]) -> Optional[str]:
    c = (carrier or "").strip().lower()
    if not c or any(u in c for u in UNTRACKABLE):
        return None
    for needle, code in CARRIER_CODES:
        if needle in c:
            return code
    return None


def detect_carrier(tracking_number: Optional[str]) -> Optional[str]:
    t = (tracking_number or "").strip().upper()
    if not t:
        return None
    for code, pattern in TRACKING_PATTERNS:
        if pattern.match(t):
            return code
    return None


def _is_delivery_text(text: str) -> bool:
    t = text.lower()
    if "delivered" in t and "undelivered" not in t:
        return True
    return "delivery has been arranged" in t


class ProviderCheckpoint(BaseModel):
    checkpoint_time: datetime
    description: str = ""
    location: Optional[str] = None
    status: Optional[str] = None
    substatus: Optional[str] = None

    @field_validator("checkpoint_time", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)


class TrackingLookup(BaseModel):
    tracking_number: str
    courier_code: str
    external_id: Optional[str] = None
    status: Optional[str] = None
    latest_event: Optional[str] = None
    latest_checkpoint_time: Optional[datetime] = None
    checkpoints: list[ProviderCheckpoint] = Field(default_factory=list)  # newest first
    created: bool = False

    @field_validator("latest_checkpoint_time", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_ts(v)

    @property
    def latest_checkpoint(self) -> Optional[ProviderCheckpoint]:
        return self.checkpoints[0] if self.checkpoints else None

    @property
    def last_scan_at(self) -> Optional[datetime]:
        if self.latest_checkpoint_time:
            return self.latest_checkpoint_time
        cp = self.latest_checkpoint
        return cp.checkpoint_time if cp else None

    def is_delivered(self) -> bool:
        if (self.status or "").lower() == "delivered":
            return True
        if _is_delivery_text(self.latest_event or ""):
            return True
        for cp in self.checkpoints:
            if (cp.status or "").lower() == "delivered":
                return True
            if _is_delivery_text(cp.description):
                return True
        return False

    def admits_loss(self) -> bool:
        if mentions_loss(self.latest_event):
            return True
        return any(mentions_loss(cp.description) for cp in self.checkpoints)


def parse_tracking(item: dict, created: bool = False) -> TrackingLookup:
    """Maps one provider tracking object to a TrackingLookup."""
    raw = []
    for section in ("origin_info", "destination_info"):
        raw.extend(((item.get(section) or {}).get("trackinfo")) or [])

    checkpoints = []
    for cp in raw:
        if not cp.get("checkpoint_date"):
            continue
        try:
            checkpoints.append(ProviderCheckpoint(
                checkpoint_time=cp["checkpoint_date"],
                description=cp.get("tracking_detail") or "",
                location=_location(cp),
                status=cp.get("checkpoint_delivery_status"),
                substatus=cp.get("checkpoint_delivery_substatus"),
            ))
        except (ValueError, OverflowError) as e:
            logger.warning("Unparseable checkpoint date %r: %s", cp.get("checkpoint_date"), e)
    checkpoints.sort(key=lambda c: c.checkpoint_time, reverse=True)

    return TrackingLookup(
        tracking_number=item.get("tracking_number") or "",
        courier_code=item.get("courier_code") or item.get("carrier_code") or "",
        external_id=item.get("id"),
        status=item.get("delivery_status") or item.get("status"),
        latest_event=item.get("latest_event"),
        latest_checkpoint_time=item.get("latest_checkpoint_time") or None,
        checkpoints=checkpoints,
        created=created,
    )


def _location(cp: dict) -> Optional[str]:
    if cp.get("location"):
        return cp["location"]
    parts = [cp.get(k) for k in ("city", "state", "country_iso2")]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


class TrackingMoreService:
    """
    Carrier tracking over the TrackingMore v4 API.
    GET /trackings/get is free; POST /trackings/realtime registers a new
    tracking and is billed, so it is only used when nothing exists yet.
    """

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        settings = settings or get_settings()
        self.api_key = settings.trackingmore_api_key
        self.base_url = settings.trackingmore_base_url.rstrip("/")
        self.timeout = settings.tracking_timeout_seconds
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "Tracking-Api-Key": self.api_key}

    def _call(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TrackingError(f"{method} {path} failed: {e}") from e
        try:
            body = resp.json()
        except ValueError as e:
            raise TrackingError(f"{method} {path} returned non-JSON (HTTP {resp.status_code})") from e
        return body

    def _get_existing(self, tracking_number: str, courier_code: str) -> Optional[dict]:
        body = self._call(
            "GET",
            "/trackings/get",
            params={"tracking_numbers": tracking_number, "courier_code": courier_code},
        )
        meta = body.get("meta") or {}
        if meta.get("code") not in OK_CODES:
            raise TrackingError(f"trackings/get rejected: {meta.get('code')} {meta.get('message')}")
        data = body.get("data") or []
        return data[0] if data else None

    def _create_realtime(self, tracking_number: str, courier_code: str) -> dict:
        body = self._call(
            "POST",
            "/trackings/realtime",
            json={"tracking_number": tracking_number, "courier_code": courier_code},
        )
        # The provider answers HTTP 200 for errors too; meta.code is authoritative.
        meta = body.get("meta") or {}
        if meta.get("code") not in OK_CODES or not body.get("data"):
            raise TrackingError(f"trackings/realtime rejected: {meta.get('code')} {meta.get('message')}")
        return body["data"]

    def lookup(self, tracking_number: str, carrier: Optional[str], external_id: Optional[str] = None) -> TrackingLookup:
        if not self.api_key:
            raise TrackingError("TrackingMore API key not configured")
        if not tracking_number:
            raise TrackingError("Missing tracking number")

        courier_code = carrier_code_for(carrier) or detect_carrier(tracking_number)
        if not courier_code:
            raise TrackingError(f"Unable to determine carrier for {tracking_number} ({carrier})")

        existing = self._get_existing(tracking_number, courier_code)
        if existing:
            return parse_tracking(existing)

        if external_id:
            # Already registered once; never pay for a second registration.
            raise TrackingError(f"Tracking {external_id} not returned for {tracking_number}")

        logger.info("Registering tracking %s (%s)", tracking_number, courier_code)
        return parse_tracking(self._create_realtime(tracking_number, courier_code), created=True)
